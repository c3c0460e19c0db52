import logging
import sqlite3
from datetime import datetime, timezone
from typing import List, Optional

from storage_api.backup_status import (
    BackupStatus,
    is_noop,
    resolve_transition,
    truncate_error,
)

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = "storage.db"

RESOURCE_COLUMNS = '''
    resource_id, uploader_id, file_name, file_path, file_size, content_type,
    uploaded_at, upload_confirmed, is_deleted, deleted_at,
    backup_status, backup_at, backup_error
'''


def _connect(db_path: str, **kwargs) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path, timeout=30, **kwargs)
    conn.row_factory = sqlite3.Row
    return conn


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def init_db(db_path: str = DEFAULT_DB_PATH) -> None:
    """Initialize database with all required tables."""
    conn = _connect(db_path)
    try:
        cursor = conn.cursor()

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS users (
                user_id INTEGER PRIMARY KEY AUTOINCREMENT,
                username VARCHAR(100) UNIQUE NOT NULL,
                storage_quota INTEGER NULL,               -- NULL falls back to the configured default
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS resources (
                resource_id INTEGER PRIMARY KEY AUTOINCREMENT,
                uploader_id INTEGER NOT NULL,
                file_name VARCHAR(255) NOT NULL,
                file_path VARCHAR(500) UNIQUE NOT NULL,   -- object key in primary storage
                file_size INTEGER NOT NULL,
                content_type VARCHAR(255) NULL,
                uploaded_at TIMESTAMP NOT NULL,
                upload_confirmed BOOLEAN DEFAULT 0,
                is_deleted BOOLEAN DEFAULT 0,
                deleted_at TIMESTAMP NULL,
                backup_status VARCHAR(20) DEFAULT 'NONE', -- NONE, PENDING, PENDING_SYNC, COMPLETED, FAILED
                backup_at TIMESTAMP NULL,                 -- last status transition
                backup_error VARCHAR(512) NULL,
                FOREIGN KEY (uploader_id) REFERENCES users(user_id)
            )
        ''')

        cursor.execute('''
            CREATE INDEX IF NOT EXISTS idx_resources_uploader
            ON resources (uploader_id, upload_confirmed, is_deleted)
        ''')

        conn.commit()
    finally:
        conn.close()


def create_user(username: str, storage_quota: Optional[int] = None, db_path: str = DEFAULT_DB_PATH) -> int:
    """Create a user and return its id."""
    conn = _connect(db_path)
    try:
        cursor = conn.cursor()
        cursor.execute(
            'INSERT INTO users (username, storage_quota) VALUES (?, ?)',
            (username, storage_quota)
        )
        conn.commit()
        return cursor.lastrowid
    finally:
        conn.close()


def get_user(user_id: int, db_path: str = DEFAULT_DB_PATH) -> Optional[dict]:
    conn = _connect(db_path)
    try:
        row = conn.execute('SELECT * FROM users WHERE user_id = ?', (user_id,)).fetchone()
        return dict(row) if row else None
    finally:
        conn.close()


def add_resource(uploader_id: int,
                 file_name: str,
                 file_path: str,
                 file_size: int,
                 content_type: Optional[str] = None,
                 db_path: str = DEFAULT_DB_PATH) -> int:
    """Add the metadata row for an upload that has been requested but not yet confirmed."""
    conn = _connect(db_path)
    try:
        cursor = conn.cursor()
        cursor.execute('''
            INSERT INTO resources
            (uploader_id, file_name, file_path, file_size, content_type, uploaded_at)
            VALUES (?, ?, ?, ?, ?, ?)
        ''', (uploader_id, file_name, file_path, file_size, content_type, _now()))
        conn.commit()
        return cursor.lastrowid
    finally:
        conn.close()


def get_resource(resource_id: int, db_path: str = DEFAULT_DB_PATH) -> Optional[dict]:
    """Retrieve resource metadata from database."""
    conn = _connect(db_path)
    try:
        row = conn.execute(
            f'SELECT {RESOURCE_COLUMNS} FROM resources WHERE resource_id = ?',
            (resource_id,)
        ).fetchone()
        return dict(row) if row else None
    finally:
        conn.close()


def get_resources_by_ids(resource_ids: List[int], uploader_id: int, db_path: str = DEFAULT_DB_PATH) -> List[dict]:
    """Resources from ``resource_ids`` owned by ``uploader_id``; other ids are ignored."""
    if not resource_ids:
        return []
    placeholders = ", ".join("?" for _ in resource_ids)
    conn = _connect(db_path)
    try:
        rows = conn.execute(
            f'SELECT {RESOURCE_COLUMNS} FROM resources '
            f'WHERE resource_id IN ({placeholders}) AND uploader_id = ? AND is_deleted = 0',
            (*resource_ids, uploader_id)
        ).fetchall()
        return [dict(row) for row in rows]
    finally:
        conn.close()


def mark_upload_confirmed(resource_id: int,
                          content_type: Optional[str] = None,
                          db_path: str = DEFAULT_DB_PATH) -> None:
    conn = _connect(db_path)
    try:
        conn.execute('''
            UPDATE resources
            SET upload_confirmed = 1,
                content_type = COALESCE(?, content_type)
            WHERE resource_id = ?
        ''', (content_type, resource_id))
        conn.commit()
    finally:
        conn.close()


def delete_resource(resource_id: int, db_path: str = DEFAULT_DB_PATH) -> bool:
    conn = _connect(db_path)
    try:
        cursor = conn.execute('DELETE FROM resources WHERE resource_id = ?', (resource_id,))
        conn.commit()
        return cursor.rowcount > 0
    finally:
        conn.close()


def get_total_storage_used(user_id: int, db_path: str = DEFAULT_DB_PATH) -> int:
    """Authoritative byte total over the user's confirmed, non-deleted resources."""
    conn = _connect(db_path)
    try:
        row = conn.execute('''
            SELECT COALESCE(SUM(file_size), 0) AS used
            FROM resources
            WHERE uploader_id = ? AND upload_confirmed = 1 AND is_deleted = 0
        ''', (user_id,)).fetchone()
        return int(row["used"])
    finally:
        conn.close()


def update_backup_status(resource_id: int,
                         status: BackupStatus,
                         error_message: Optional[str] = None,
                         db_path: str = DEFAULT_DB_PATH) -> Optional[dict]:
    """
    Atomically overwrite backup_status, backup_at and backup_error.

    Returns the stored record with an ``applied`` flag, or None when the
    resource no longer exists. Writes refused by the state machine (a
    COMPLETED record being pushed backwards) and identical rewrites leave the
    row untouched and come back with ``applied`` False.
    """
    # Explicit transaction control so the read and the write share one lock.
    conn = _connect(db_path, isolation_level=None)
    try:
        conn.execute('BEGIN IMMEDIATE')
        row = conn.execute(
            'SELECT resource_id, file_path, backup_status, backup_at, backup_error '
            'FROM resources WHERE resource_id = ?',
            (resource_id,)
        ).fetchone()
        if row is None:
            conn.execute('ROLLBACK')
            return None

        record = dict(row)
        current = BackupStatus(record["backup_status"] or BackupStatus.NONE.value)

        if is_noop(current, record["backup_error"], status, error_message) or \
                not resolve_transition(current, status):
            conn.execute('ROLLBACK')
            if current is not status:
                logger.info(
                    "Ignoring backup status %s for resource %s: already %s",
                    status.value, resource_id, current.value
                )
            record["applied"] = False
            return record

        backup_at = _now()
        error = truncate_error(error_message)
        conn.execute('''
            UPDATE resources
            SET backup_status = ?,
                backup_at = ?,
                backup_error = ?
            WHERE resource_id = ?
        ''', (status.value, backup_at, error, resource_id))
        conn.execute('COMMIT')

        record.update(backup_status=status.value, backup_at=backup_at, backup_error=error, applied=True)
        return record
    except Exception:
        if conn.in_transaction:
            conn.execute('ROLLBACK')
        raise
    finally:
        conn.close()


def get_backup_status(resource_id: int, db_path: str = DEFAULT_DB_PATH) -> Optional[dict]:
    conn = _connect(db_path)
    try:
        row = conn.execute(
            'SELECT resource_id, file_path, backup_status, backup_at, backup_error '
            'FROM resources WHERE resource_id = ?',
            (resource_id,)
        ).fetchone()
        return dict(row) if row else None
    finally:
        conn.close()
