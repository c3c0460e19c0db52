import asyncio

import pytest

from backup_workers.replicator import BackupReplicator
from backup_workers.retry import RetryPolicy
from backup_workers.worker import ReplicationWorker, create_worker
from storage_api.adapters.queue import LocalQueue
from storage_api.adapters.status_store import LocalStatusStore
from storage_api.backup_status import BackupStatus
from storage_api.database.local import delete_resource, get_backup_status
from storage_api.errors import StatusUpdateError
from tests.consts import (
    EXAMPLE_JOB,
    EXAMPLE_OBJECT_KEY,
    TEST_BACKUP_BUCKET_NAME,
    TEST_BUCKET_NAME,
)
from tests.fixtures.db_client import add_confirmed_resource, insert_resource_with_id


class FlakyReplicator(BackupReplicator):
    """Raises the queued copy errors before falling through to the real copy."""

    def __init__(self, *args, copy_errors=(), **kwargs):
        super().__init__(*args, **kwargs)
        self.copy_errors = list(copy_errors)

    def copy_to_backup(self, source):
        if self.copy_errors:
            raise self.copy_errors.pop(0)
        return super().copy_to_backup(source)


class UnreachableStatusStore(LocalStatusStore):
    def set_status(self, resource_id, status, error=None):
        raise StatusUpdateError("Status API call failed: connection refused")


def make_replicator(mocked_aws, copy_errors=()):
    return FlakyReplicator(
        mocked_aws["s3"], TEST_BUCKET_NAME, mocked_aws["s3"], TEST_BACKUP_BUCKET_NAME,
        copy_errors=copy_errors,
    )


def make_worker(mocked_aws, db_path, metrics, queue=None, copy_errors=(), status_store=None, concurrency=4,
                retry_policy=None):
    return ReplicationWorker(
        queue=queue,
        replicator=make_replicator(mocked_aws, copy_errors),
        status_store=status_store or LocalStatusStore(db_path),
        metrics=metrics,
        retry_policy=retry_policy or RetryPolicy(max_attempts=3, backoff_millis=0),
        concurrency=concurrency,
        poll_interval=0.01,
    )


@pytest.fixture
def stored_job(db_path, user_id, mocked_aws):
    """Resource 42 with its 2048 byte object in the primary bucket."""
    insert_resource_with_id(db_path, 42, user_id, EXAMPLE_OBJECT_KEY, 2048)
    mocked_aws["s3"].put_object(Bucket=TEST_BUCKET_NAME, Key=EXAMPLE_OBJECT_KEY, Body=b"b" * 2048)
    return dict(EXAMPLE_JOB)


def backup_object(mocked_aws, key=EXAMPLE_OBJECT_KEY):
    return mocked_aws["s3"].get_object(Bucket=TEST_BACKUP_BUCKET_NAME, Key=key)["Body"].read()


async def test_job_is_copied_and_completed(stored_job, mocked_aws, db_path, recording_metrics):
    worker = make_worker(mocked_aws, db_path, recording_metrics)

    result = await worker.process_task(stored_job)

    assert result.status is BackupStatus.COMPLETED
    assert result.should_ack
    assert result.copy_attempts == 1
    assert backup_object(mocked_aws) == b"b" * 2048
    stored = get_backup_status(42, db_path=db_path)
    assert stored["backup_status"] == "COMPLETED"
    assert stored["backup_error"] is None
    [success] = recording_metrics.named("BackupSuccess")
    assert success["value"] == 1.0
    [latency] = recording_metrics.named("BackupLatency")
    assert latency["value"] > 0
    assert latency["unit"] == "Seconds"


async def test_copy_failing_every_attempt_marks_failed(stored_job, mocked_aws, db_path, recording_metrics):
    errors = [RuntimeError(f"backup endpoint error {n}") for n in (1, 2, 3)]
    worker = make_worker(mocked_aws, db_path, recording_metrics, copy_errors=errors)

    result = await worker.process_task(stored_job)

    assert result.status is BackupStatus.FAILED
    assert result.copy_attempts == 3
    assert result.should_ack
    stored = get_backup_status(42, db_path=db_path)
    assert stored["backup_status"] == "FAILED"
    assert stored["backup_error"] == "backup endpoint error 3"
    [success] = recording_metrics.named("BackupSuccess")
    assert success["value"] == 0.0
    assert recording_metrics.named("BackupLatency") == []


async def test_transient_copy_error_is_retried(stored_job, mocked_aws, db_path, recording_metrics):
    worker = make_worker(mocked_aws, db_path, recording_metrics, copy_errors=[ConnectionError("reset")])

    result = await worker.process_task(stored_job)

    assert result.status is BackupStatus.COMPLETED
    assert result.copy_attempts == 2
    assert backup_object(mocked_aws) == b"b" * 2048


async def test_missing_source_fails_without_copying(db_path, user_id, mocked_aws, recording_metrics):
    insert_resource_with_id(db_path, 42, user_id, EXAMPLE_OBJECT_KEY, 2048)
    worker = make_worker(mocked_aws, db_path, recording_metrics)

    result = await worker.process_task(dict(EXAMPLE_JOB))

    assert result.status is BackupStatus.FAILED
    assert result.copy_attempts == 0
    stored = get_backup_status(42, db_path=db_path)
    assert stored["backup_error"] == f"File not found in primary storage: {EXAMPLE_OBJECT_KEY}"


async def test_size_mismatch_still_copies(db_path, user_id, mocked_aws, recording_metrics, caplog):
    insert_resource_with_id(db_path, 42, user_id, EXAMPLE_OBJECT_KEY, 2048)
    mocked_aws["s3"].put_object(Bucket=TEST_BUCKET_NAME, Key=EXAMPLE_OBJECT_KEY, Body=b"b" * 100)
    worker = make_worker(mocked_aws, db_path, recording_metrics)

    result = await worker.process_task(dict(EXAMPLE_JOB))

    assert result.status is BackupStatus.COMPLETED
    assert "File size mismatch" in caplog.text
    assert len(backup_object(mocked_aws)) == 100


async def test_redelivered_job_for_completed_backup_is_skipped(stored_job, mocked_aws, db_path, recording_metrics):
    worker = make_worker(mocked_aws, db_path, recording_metrics)
    await worker.process_task(stored_job)
    completed_at = get_backup_status(42, db_path=db_path)["backup_at"]

    again = await worker.process_task(stored_job)

    assert again.status is BackupStatus.COMPLETED
    assert again.skipped_copy
    assert again.copy_attempts == 0
    assert again.should_ack
    assert get_backup_status(42, db_path=db_path)["backup_at"] == completed_at


async def test_existing_backup_with_matching_size_is_not_copied_again(
        stored_job, mocked_aws, db_path, recording_metrics):
    mocked_aws["s3"].put_object(Bucket=TEST_BACKUP_BUCKET_NAME, Key=EXAMPLE_OBJECT_KEY, Body=b"b" * 2048)
    worker = make_worker(mocked_aws, db_path, recording_metrics, copy_errors=[RuntimeError("must not copy")])

    result = await worker.process_task(stored_job)

    assert result.status is BackupStatus.COMPLETED
    assert result.skipped_copy


@pytest.mark.parametrize(
    "body",
    [
        {"objectKey": EXAMPLE_OBJECT_KEY, "fileSize": 1},
        {"resourceId": "abc", "objectKey": EXAMPLE_OBJECT_KEY, "fileSize": 1},
        {"resourceId": 1, "objectKey": "", "fileSize": 1},
    ],
)
async def test_invalid_job_is_rejected(body, mocked_aws, db_path, recording_metrics):
    worker = make_worker(mocked_aws, db_path, recording_metrics)

    result = await worker.process_task(body)

    assert result.rejected
    assert result.should_ack
    assert recording_metrics.samples == []


async def test_deleted_resource_is_acked(stored_job, mocked_aws, db_path, recording_metrics):
    delete_resource(42, db_path=db_path)
    worker = make_worker(mocked_aws, db_path, recording_metrics)

    result = await worker.process_task(stored_job)

    assert result.should_ack
    assert result.status is BackupStatus.COMPLETED


async def test_unrecorded_outcome_releases_message(stored_job, mocked_aws, db_path, recording_metrics,
                                                   recording_queue):
    await recording_queue.add_task(stored_job)
    message = await recording_queue.get_task()
    worker = make_worker(
        mocked_aws, db_path, recording_metrics,
        queue=recording_queue, status_store=UnreachableStatusStore(db_path),
    )

    result = await worker.handle_message(message)

    assert not result.status_recorded
    assert recording_queue.released == [message]
    assert recording_queue.acked == []


async def test_handle_message_acks_local_queue(stored_job, mocked_aws, db_path, recording_metrics, settings, tmp_path):
    queue = LocalQueue(settings, queue_dir=tmp_path / "jobs")
    await queue.add_task(stored_job)
    worker = make_worker(mocked_aws, db_path, recording_metrics, queue=queue)

    message = await queue.get_task()
    await worker.handle_message(message)

    assert queue.pending_count() == 0
    assert list(queue.inflight_dir.glob("*.json")) == []


async def test_process_batch(db_path, user_id, mocked_aws, recording_metrics):
    bodies = []
    for n in range(5):
        key = f"user-{user_id}/file{n}_1700000000_0000000{n}.bin"
        resource_id = add_confirmed_resource(db_path, user_id, key, 10)
        mocked_aws["s3"].put_object(Bucket=TEST_BUCKET_NAME, Key=key, Body=b"0123456789")
        bodies.append({"resourceId": resource_id, "objectKey": key, "fileSize": 10})
    worker = make_worker(mocked_aws, db_path, recording_metrics, concurrency=2)

    results = await worker.process_batch(bodies)

    assert [r.status for r in results] == [BackupStatus.COMPLETED] * 5
    for body in bodies:
        assert backup_object(mocked_aws, body["objectKey"]) == b"0123456789"


async def test_cancelled_backoff_marks_failed(stored_job, mocked_aws, db_path, recording_metrics):
    backing_off = asyncio.Event()

    async def slow_sleep(seconds):
        backing_off.set()
        await asyncio.sleep(seconds)

    policy = RetryPolicy(max_attempts=3, backoff_millis=60_000, sleep=slow_sleep)
    worker = make_worker(mocked_aws, db_path, recording_metrics, copy_errors=[ConnectionError("reset")],
                         retry_policy=policy)
    task = asyncio.create_task(worker.process_task(stored_job))
    await asyncio.wait_for(backing_off.wait(), timeout=5)

    task.cancel()
    result = await task

    assert result.status is BackupStatus.FAILED
    assert result.copy_attempts == 1
    assert result.should_ack
    stored = get_backup_status(42, db_path=db_path)
    assert stored["backup_status"] == "FAILED"
    assert stored["backup_error"] == "Backup retry interrupted"


def test_worker_built_outside_event_loop(db_path, user_id, mocked_aws, recording_metrics):
    worker = make_worker(mocked_aws, db_path, recording_metrics, concurrency=1)

    for run in range(2):
        bodies = []
        for n in range(2):
            key = f"user-{user_id}/run{run}_{n}_1700000000_0000000{n}.bin"
            resource_id = add_confirmed_resource(db_path, user_id, key, 10)
            mocked_aws["s3"].put_object(Bucket=TEST_BUCKET_NAME, Key=key, Body=b"0123456789")
            bodies.append({"resourceId": resource_id, "objectKey": key, "fileSize": 10})

        results = asyncio.run(worker.process_batch(bodies))

        assert [r.status for r in results] == [BackupStatus.COMPLETED] * 2


async def test_listen_for_tasks_drains_queue(db_path, user_id, mocked_aws, recording_metrics, recording_queue):
    for n in range(3):
        key = f"user-{user_id}/doc{n}_1700000000_abcdef0{n}.txt"
        resource_id = add_confirmed_resource(db_path, user_id, key, 4)
        mocked_aws["s3"].put_object(Bucket=TEST_BUCKET_NAME, Key=key, Body=b"data")
        await recording_queue.add_task({"resourceId": resource_id, "objectKey": key, "fileSize": 4})
    worker = make_worker(mocked_aws, db_path, recording_metrics, queue=recording_queue, concurrency=2)

    listener = asyncio.create_task(worker.listen_for_tasks())
    for _ in range(500):
        if len(recording_queue.acked) == 3:
            break
        await asyncio.sleep(0.01)
    worker.stop()
    await asyncio.wait_for(listener, timeout=5)

    assert len(recording_queue.acked) == 3
    assert len(recording_metrics.named("BackupLatency")) == 3


async def test_listen_requires_queue(mocked_aws, db_path, recording_metrics):
    with pytest.raises(ValueError):
        await make_worker(mocked_aws, db_path, recording_metrics).listen_for_tasks()


def test_create_worker_from_settings(aws_settings, recording_metrics):
    worker = create_worker(aws_settings, metrics=recording_metrics)

    assert worker.queue is not None
    assert worker.concurrency == aws_settings.worker_concurrency
    assert worker.retry_policy.max_attempts == aws_settings.backup_max_attempts
    assert worker.replicator.backup_bucket == TEST_BACKUP_BUCKET_NAME
