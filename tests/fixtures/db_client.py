"""Database fixtures for tests."""
import sqlite3
from typing import Optional

import pytest

from storage_api.database.local import (
    add_resource,
    create_user,
    init_db,
    mark_upload_confirmed,
)


@pytest.fixture
def db_path(tmp_path) -> str:
    path = str(tmp_path / "test_storage.db")
    init_db(path)
    return path


@pytest.fixture
def user_id(db_path) -> int:
    return create_user("alice", db_path=db_path)


def add_confirmed_resource(db_path: str, uploader_id: int, object_key: str, size_bytes: int,
                           file_name: Optional[str] = None) -> int:
    resource_id = add_resource(
        uploader_id, file_name or object_key.rsplit("/", 1)[-1], object_key, size_bytes, db_path=db_path
    )
    mark_upload_confirmed(resource_id, db_path=db_path)
    return resource_id


def insert_resource_with_id(db_path: str, resource_id: int, uploader_id: int,
                            object_key: str, size_bytes: int) -> int:
    """Insert a confirmed resource under a fixed id."""
    conn = sqlite3.connect(db_path)
    try:
        conn.execute('''
            INSERT INTO resources
            (resource_id, uploader_id, file_name, file_path, file_size, uploaded_at, upload_confirmed)
            VALUES (?, ?, ?, ?, ?, CURRENT_TIMESTAMP, 1)
        ''', (resource_id, uploader_id, object_key.rsplit("/", 1)[-1], object_key, size_bytes))
        conn.commit()
    finally:
        conn.close()
    return resource_id
