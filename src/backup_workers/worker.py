import asyncio
import logging
import time
from dataclasses import dataclass
from typing import List, Optional, Set, Tuple

import pydantic

from backup_workers.replicator import BackupReplicator, SourceObject
from backup_workers.retry import RetryPolicy
from storage_api.adapters.metrics import MetricsEmitter
from storage_api.adapters.queue import BaseQueue, QueueFactory, QueueMessage
from storage_api.adapters.status_store import BaseStatusStore, StatusRecord, get_status_store
from storage_api.backup_status import BackupStatus
from storage_api.errors import (
    InvalidBackupStatusError,
    ResourceNotFoundError,
    SourceObjectMissingError,
)
from storage_api.schemas import ReplicationJob
from storage_api.settings import Settings
from storage_api.utils.decorators import log_execution_time

logger = logging.getLogger(__name__)


@dataclass
class JobResult:
    """Outcome of one job; decides whether its message is acknowledged."""
    resource_id: Optional[int] = None
    object_key: Optional[str] = None
    status: Optional[BackupStatus] = None
    status_recorded: bool = False
    rejected: bool = False
    copy_attempts: int = 0
    skipped_copy: bool = False
    error: Optional[str] = None
    elapsed_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.status is BackupStatus.COMPLETED

    @property
    def should_ack(self) -> bool:
        # Redelivering an invalid job or one whose outcome is stored changes nothing
        return self.rejected or self.status_recorded


def _error_text(error: BaseException) -> str:
    return str(error) or type(error).__name__


class ReplicationWorker:
    """
    Drains replication jobs and copies each object to the backup bucket.

    Every job ends with COMPLETED or FAILED written to the status store.
    Up to ``concurrency`` jobs run at once; blocking boto3 and HTTP calls run
    in threads so the backoff sleeps of one job never hold up another.
    """

    def __init__(self,
                 queue: Optional[BaseQueue],
                 replicator: BackupReplicator,
                 status_store: BaseStatusStore,
                 metrics: MetricsEmitter,
                 retry_policy: Optional[RetryPolicy] = None,
                 concurrency: int = 4,
                 poll_interval: float = 1.0):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.queue = queue
        self.replicator = replicator
        self.status_store = status_store
        self.metrics = metrics
        self.retry_policy = retry_policy or RetryPolicy()
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self.running = False
        self._slots: Optional[asyncio.Semaphore] = None
        self._slots_loop: Optional[asyncio.AbstractEventLoop] = None
        self._in_flight: Set[asyncio.Task] = set()
        logger.info(
            f"Replication worker initialized (concurrency={concurrency}, "
            f"max_attempts={self.retry_policy.max_attempts}, backoff={self.retry_policy.backoff_millis}ms)"
        )

    @property
    def slots(self) -> asyncio.Semaphore:
        """Job slots of the running event loop, created there on first use."""
        loop = asyncio.get_running_loop()
        if self._slots is None or self._slots_loop is not loop:
            self._slots = asyncio.Semaphore(self.concurrency)
            self._slots_loop = loop
        return self._slots

    @log_execution_time
    async def process_task(self, body: dict) -> JobResult:
        """Run one replication job described by a queue message body."""
        try:
            job = ReplicationJob.model_validate(body)
        except pydantic.ValidationError as e:
            logger.error(f"Rejecting invalid replication job {body!r}: {e}")
            return JobResult(rejected=True, error=str(e))

        logger.info(
            f"Processing backup job - ResourceId: {job.resource_id}, ObjectKey: {job.object_key}, "
            f"FileSize: {job.size_bytes} bytes"
        )
        start = time.monotonic()

        try:
            source = await self.retry_policy.run(
                lambda: asyncio.to_thread(self.replicator.verify_source, job.object_key),
                description=f"source check of {job.object_key}",
                non_retryable=(SourceObjectMissingError,),
            )
        except SourceObjectMissingError as e:
            logger.error(f"File not found in primary storage: {job.object_key}")
            return await self._finish(job, BackupStatus.FAILED, _error_text(e), start)
        except Exception as e:
            return await self._finish(job, BackupStatus.FAILED, _error_text(e), start)

        if source.size_bytes != job.size_bytes:
            logger.warning(
                f"File size mismatch for {job.object_key}. Expected: {job.size_bytes}, Actual: {source.size_bytes}"
            )

        record, _ = await self._write_status(job, BackupStatus.PENDING_SYNC)
        if record is not None and record.status is BackupStatus.COMPLETED:
            logger.info(f"Resource {job.resource_id} is already backed up, skipping redelivered job")
            return JobResult(
                resource_id=job.resource_id,
                object_key=job.object_key,
                status=BackupStatus.COMPLETED,
                status_recorded=True,
                skipped_copy=True,
                elapsed_seconds=time.monotonic() - start,
            )

        result = JobResult(resource_id=job.resource_id, object_key=job.object_key)
        try:
            await self.retry_policy.run(
                lambda: self._copy_attempt(source, result),
                description=f"backup of {job.object_key}",
                non_retryable=(SourceObjectMissingError,),
            )
        except Exception as e:
            return await self._finish(job, BackupStatus.FAILED, _error_text(e), start, result)

        return await self._finish(job, BackupStatus.COMPLETED, None, start, result)

    async def _copy_attempt(self, source: SourceObject, result: JobResult) -> None:
        result.copy_attempts += 1
        if await asyncio.to_thread(self.replicator.backup_matches, source):
            logger.info(f"Backup of {source.object_key} already present with matching size, skipping copy")
            result.skipped_copy = True
            return
        await asyncio.to_thread(self.replicator.copy_to_backup, source)

    async def _write_status(self, job: ReplicationJob, status: BackupStatus,
                            error: Optional[str] = None) -> Tuple[Optional[StatusRecord], bool]:
        """Write a status with retries. Returns the stored record and whether the outcome is settled."""
        try:
            record = await self.retry_policy.run(
                lambda: asyncio.to_thread(self.status_store.set_status, job.resource_id, status, error),
                description=f"status {status.value} for resource {job.resource_id}",
                non_retryable=(ResourceNotFoundError, InvalidBackupStatusError),
            )
        except ResourceNotFoundError:
            # The user deleted the file mid-flight; there is nothing left to update
            logger.warning(f"Resource {job.resource_id} no longer exists, dropping status {status.value}")
            return None, True
        except Exception as e:
            logger.error(f"Could not record status {status.value} for resource {job.resource_id}: {e}")
            return None, False
        return record, True

    async def _finish(self, job: ReplicationJob, status: BackupStatus, error: Optional[str],
                      start: float, result: Optional[JobResult] = None) -> JobResult:
        result = result or JobResult(resource_id=job.resource_id, object_key=job.object_key)
        result.elapsed_seconds = time.monotonic() - start
        result.error = error

        record, settled = await self._write_status(job, status, error)
        result.status = record.status if record is not None else status
        result.status_recorded = settled

        if status is BackupStatus.FAILED:
            logger.error(f"Backup failed for {job.object_key}: {error}")
        else:
            logger.info(f"Backup completed for {job.object_key} in {result.elapsed_seconds:.3f}s")

        await asyncio.to_thread(self._record_metrics, job, status, result.elapsed_seconds)
        return result

    def _record_metrics(self, job: ReplicationJob, status: BackupStatus, elapsed: float) -> None:
        self.metrics.record_backup_result(status, job.object_key)
        if status is not BackupStatus.COMPLETED:
            return
        self.metrics.record_backup_latency(job.object_key, elapsed)
        if elapsed > 0 and job.size_bytes > 0:
            self.metrics.record_backup_throughput(job.object_key, job.size_bytes / elapsed)

    async def handle_message(self, message: QueueMessage) -> JobResult:
        """Process one queue message and ack or release it based on the outcome."""
        result = await self.process_task(message.body)
        try:
            if result.should_ack:
                await self.queue.ack(message)
            else:
                logger.warning(f"Outcome of job {message.body} not recorded, releasing for redelivery")
                await self.queue.release(message)
        except Exception as e:
            # Visibility timeout redelivers the message anyway
            logger.error(f"Error settling queue message {message.message_id}: {e}")
        return result

    async def process_batch(self, bodies: List[dict]) -> List[JobResult]:
        """Process message bodies concurrently, at most ``concurrency`` at a time."""
        async def bounded(body: dict) -> JobResult:
            async with self.slots:
                return await self.process_task(body)

        return list(await asyncio.gather(*(bounded(body) for body in bodies)))

    async def _run_message(self, message: QueueMessage) -> None:
        try:
            result = await self.handle_message(message)
            logger.info(
                f"Job for resource {result.resource_id} finished: status={result.status}, "
                f"attempts={result.copy_attempts}"
            )
        except Exception as e:
            logger.error(f"Unexpected error processing message {message.message_id}: {e}", exc_info=True)
        finally:
            self.slots.release()

    async def listen_for_tasks(self) -> None:
        """Poll the queue and run jobs in a bounded pool until ``stop`` is called."""
        if self.queue is None:
            raise ValueError("listen_for_tasks needs a queue")
        logger.info("Worker started listening for tasks")
        self.running = True
        consecutive_errors = 0

        while self.running:
            await self.slots.acquire()
            if not self.running:
                self.slots.release()
                break

            try:
                message = await self.queue.get_task()
            except Exception as e:
                self.slots.release()
                consecutive_errors += 1
                logger.error(f"Error in task polling loop: {str(e)}", exc_info=True)
                backoff_time = min(30, 2 ** consecutive_errors)
                logger.warning(f"Backing off for {backoff_time} seconds after error...")
                await asyncio.sleep(backoff_time)
                continue

            consecutive_errors = 0
            if message is None:
                self.slots.release()
                await asyncio.sleep(self.poll_interval)
                continue

            task = asyncio.create_task(self._run_message(message))
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)

        await self.shutdown()

    def stop(self) -> None:
        """Stop polling; jobs already running are allowed to finish."""
        logger.info("Stopping worker...")
        self.running = False

    async def shutdown(self) -> None:
        self.running = False
        if self._in_flight:
            logger.info(f"Waiting for {len(self._in_flight)} in-flight jobs")
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)


def create_worker(settings: Settings,
                  queue: Optional[BaseQueue] = None,
                  status_store: Optional[BaseStatusStore] = None,
                  metrics: Optional[MetricsEmitter] = None,
                  with_queue: bool = True) -> ReplicationWorker:
    """Wire a worker from settings; queue and stores default to the deployment mode's choice."""
    if queue is None and with_queue:
        queue = QueueFactory.get_queue_handler(settings)
    return ReplicationWorker(
        queue=queue,
        replicator=BackupReplicator.from_settings(settings),
        status_store=status_store or get_status_store(settings),
        metrics=metrics or MetricsEmitter.from_settings(settings),
        retry_policy=RetryPolicy(settings.backup_max_attempts, settings.backup_backoff_millis),
        concurrency=settings.worker_concurrency,
    )
