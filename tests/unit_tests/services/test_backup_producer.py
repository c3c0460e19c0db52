import sqlite3

import pytest

from storage_api.adapters.status_store import LocalStatusStore
from storage_api.backup_status import BackupStatus
from storage_api.database.local import get_backup_status
from storage_api.errors import ResourceNotFoundError
from storage_api.services.backup import ENQUEUE_ERROR_PREFIX, BackupProducer
from tests.consts import EXAMPLE_OBJECT_KEY
from tests.fixtures.db_client import add_confirmed_resource
from tests.fixtures.doubles import FailingQueue, HangingQueue, RecordingQueue


@pytest.fixture
def resource_id(db_path, user_id):
    return add_confirmed_resource(db_path, user_id, EXAMPLE_OBJECT_KEY, 2048)


def make_producer(queue, db_path, metrics, **kwargs):
    return BackupProducer(queue, LocalStatusStore(db_path), metrics, db_path=db_path, **kwargs)


async def test_enqueue_publishes_job_and_marks_pending(db_path, resource_id, recording_queue, recording_metrics):
    producer = make_producer(recording_queue, db_path, recording_metrics)

    status = await producer.enqueue(resource_id, EXAMPLE_OBJECT_KEY, 2048)

    assert status is BackupStatus.PENDING
    assert len(recording_queue.tasks) == 1
    message = recording_queue.tasks[0]
    assert message["resourceId"] == resource_id
    assert message["objectKey"] == EXAMPLE_OBJECT_KEY
    assert message["fileSize"] == 2048
    assert message["timestamp"] > 0
    assert get_backup_status(resource_id, db_path=db_path)["backup_status"] == "PENDING"
    [sample] = recording_metrics.named("BackupSuccess")
    assert sample["value"] == 0.0
    assert sample["dimensions"] == {"Status": "PENDING", "ObjectKey": EXAMPLE_OBJECT_KEY}


async def test_publish_failure_marks_failed(db_path, resource_id, recording_metrics):
    queue = FailingQueue("SQS endpoint unreachable")
    producer = make_producer(queue, db_path, recording_metrics)

    status = await producer.enqueue(resource_id, EXAMPLE_OBJECT_KEY, 2048)

    assert status is BackupStatus.FAILED
    assert queue.attempts == 1
    stored = get_backup_status(resource_id, db_path=db_path)
    assert stored["backup_status"] == "FAILED"
    assert stored["backup_error"] == ENQUEUE_ERROR_PREFIX + "SQS endpoint unreachable"
    [sample] = recording_metrics.named("BackupSuccess")
    assert sample["dimensions"]["Status"] == "FAILED"


async def test_publish_timeout_marks_failed(db_path, resource_id, recording_metrics):
    producer = make_producer(HangingQueue(), db_path, recording_metrics, enqueue_timeout_seconds=0.05)

    status = await producer.enqueue(resource_id, EXAMPLE_OBJECT_KEY, 2048)

    assert status is BackupStatus.FAILED
    stored = get_backup_status(resource_id, db_path=db_path)
    assert stored["backup_error"].startswith(ENQUEUE_ERROR_PREFIX)
    assert "timed out" in stored["backup_error"]


async def test_missing_queue_marks_failed(db_path, resource_id, recording_metrics):
    producer = make_producer(None, db_path, recording_metrics)

    assert await producer.enqueue(resource_id, EXAMPLE_OBJECT_KEY, 2048) is BackupStatus.FAILED
    assert get_backup_status(resource_id, db_path=db_path)["backup_error"] == \
        ENQUEUE_ERROR_PREFIX + "job queue not configured"


async def test_disabled_backup_does_nothing(db_path, resource_id, recording_queue, recording_metrics):
    producer = make_producer(recording_queue, db_path, recording_metrics, enabled=False)

    assert await producer.enqueue(resource_id, EXAMPLE_OBJECT_KEY, 2048) is BackupStatus.NONE
    assert recording_queue.tasks == []
    assert recording_metrics.samples == []
    assert get_backup_status(resource_id, db_path=db_path)["backup_status"] == "NONE"


async def test_deleted_resource_is_not_enqueued(db_path, recording_queue, recording_metrics):
    producer = make_producer(recording_queue, db_path, recording_metrics)

    assert await producer.enqueue(31337, EXAMPLE_OBJECT_KEY, 2048) is BackupStatus.NONE
    assert recording_queue.tasks == []


async def test_retry_requeues_failed_backup(db_path, resource_id, recording_queue, recording_metrics):
    store = LocalStatusStore(db_path)
    store.set_status(resource_id, BackupStatus.FAILED, "copy failed")
    producer = make_producer(recording_queue, db_path, recording_metrics)

    assert await producer.retry(resource_id) is BackupStatus.PENDING

    stored = get_backup_status(resource_id, db_path=db_path)
    assert stored["backup_status"] == "PENDING"
    assert stored["backup_error"] is None
    assert recording_queue.tasks[0]["fileSize"] == 2048


async def test_retry_of_unknown_resource(db_path, recording_queue, recording_metrics):
    producer = make_producer(recording_queue, db_path, recording_metrics)
    with pytest.raises(ResourceNotFoundError):
        await producer.retry(555)


async def test_locked_database_does_not_break_enqueue(db_path, resource_id, recording_queue, recording_metrics,
                                                      monkeypatch):
    def locked(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr("storage_api.adapters.status_store.update_backup_status", locked)
    producer = make_producer(recording_queue, db_path, recording_metrics)

    status = await producer.enqueue(resource_id, EXAMPLE_OBJECT_KEY, 2048)

    assert status is BackupStatus.PENDING
    assert len(recording_queue.tasks) == 1


async def test_locked_database_after_publish_failure(db_path, resource_id, recording_metrics, monkeypatch):
    def locked(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr("storage_api.adapters.status_store.update_backup_status", locked)
    producer = make_producer(FailingQueue("SQS endpoint unreachable"), db_path, recording_metrics)

    assert await producer.enqueue(resource_id, EXAMPLE_OBJECT_KEY, 2048) is BackupStatus.FAILED
    [sample] = recording_metrics.named("BackupSuccess")
    assert sample["dimensions"]["Status"] == "FAILED"
