import json

import pytest

from backup_workers import lambda_handler
from backup_workers.replicator import BackupReplicator
from storage_api.adapters.status_store import LocalStatusStore
from storage_api.database.local import get_backup_status
from tests.consts import (
    EXAMPLE_OBJECT_KEY,
    TEST_BACKUP_BUCKET_NAME,
    TEST_BUCKET_NAME,
)
from tests.fixtures.db_client import add_confirmed_resource


class FlakyStatusStore(LocalStatusStore):
    """Status writes for ``broken_ids`` never reach the store."""

    def __init__(self, db_path, broken_ids=()):
        super().__init__(db_path)
        self.broken_ids = set(broken_ids)

    def set_status(self, resource_id, status, error=None):
        if resource_id in self.broken_ids:
            raise ConnectionError("status API unreachable")
        return super().set_status(resource_id, status, error)


@pytest.fixture
def wire_components(monkeypatch, settings, mocked_aws, recording_metrics):
    def wire(status_store):
        replicator = BackupReplicator(
            mocked_aws["s3"], TEST_BUCKET_NAME, mocked_aws["s3"], TEST_BACKUP_BUCKET_NAME
        )
        monkeypatch.setattr(
            lambda_handler, "_components", lambda: (settings, replicator, status_store, recording_metrics)
        )
    return wire


def sqs_record(message_id, body):
    return {"messageId": message_id, "body": body if isinstance(body, str) else json.dumps(body)}


def stored_object(db_path, user_id, mocked_aws, name):
    key = f"user-{user_id}/{name}"
    resource_id = add_confirmed_resource(db_path, user_id, key, 3)
    mocked_aws["s3"].put_object(Bucket=TEST_BUCKET_NAME, Key=key, Body=b"abc")
    return {"resourceId": resource_id, "objectKey": key, "fileSize": 3}


def test_batch_with_all_outcomes_recorded(wire_components, db_path, user_id, mocked_aws):
    wire_components(LocalStatusStore(db_path))
    good = stored_object(db_path, user_id, mocked_aws, "a_1700000000_00000001.txt")
    missing = {"resourceId": good["resourceId"] + 1, "objectKey": EXAMPLE_OBJECT_KEY, "fileSize": 3}
    add_confirmed_resource(db_path, user_id, EXAMPLE_OBJECT_KEY, 3)

    response = lambda_handler.handler({"Records": [
        sqs_record("m-1", good),
        sqs_record("m-2", missing),
        sqs_record("m-3", "{broken"),
        sqs_record("m-4", {"objectKey": "no-resource-id"}),
    ]})

    assert response == {"batchItemFailures": []}
    assert get_backup_status(good["resourceId"], db_path=db_path)["backup_status"] == "COMPLETED"
    assert get_backup_status(missing["resourceId"], db_path=db_path)["backup_status"] == "FAILED"


def test_unrecorded_outcomes_are_redelivered(wire_components, db_path, user_id, mocked_aws):
    first = stored_object(db_path, user_id, mocked_aws, "a_1700000000_00000001.txt")
    second = stored_object(db_path, user_id, mocked_aws, "b_1700000000_00000002.txt")
    wire_components(FlakyStatusStore(db_path, broken_ids={second["resourceId"]}))

    response = lambda_handler.lambda_handler({"Records": [
        sqs_record("m-1", first),
        sqs_record("m-2", second),
    ]}, None)

    assert response == {"batchItemFailures": [{"itemIdentifier": "m-2"}]}


def test_empty_event(wire_components, db_path):
    wire_components(LocalStatusStore(db_path))
    assert lambda_handler.handler({}) == {"batchItemFailures": []}
