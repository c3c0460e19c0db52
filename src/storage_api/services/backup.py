"""Producer side of the backup pipeline: schedules replication jobs for confirmed uploads."""

import asyncio
import logging
from typing import Optional

from storage_api.adapters.metrics import MetricsEmitter
from storage_api.adapters.queue import BaseQueue
from storage_api.adapters.status_store import BaseStatusStore
from storage_api.backup_status import BackupStatus
from storage_api.database.local import DEFAULT_DB_PATH, get_resource
from storage_api.errors import QueuePublishError, ResourceNotFoundError
from storage_api.schemas import ReplicationJob

logger = logging.getLogger(__name__)

ENQUEUE_ERROR_PREFIX = "Failed to enqueue backup: "


class BackupProducer:
    """
    Writes PENDING and publishes a replication job.

    ``enqueue`` runs on the upload-confirm request path, after the upload is
    already durable, so it never raises: a publish failure becomes a FAILED
    status with the error recorded.
    """

    def __init__(self,
                 queue: Optional[BaseQueue],
                 status_store: BaseStatusStore,
                 metrics: MetricsEmitter,
                 enabled: bool = True,
                 enqueue_timeout_seconds: float = 5.0,
                 db_path: str = DEFAULT_DB_PATH):
        self.queue = queue
        self.status_store = status_store
        self.metrics = metrics
        self.enabled = enabled
        self.enqueue_timeout_seconds = enqueue_timeout_seconds
        self.db_path = db_path

    async def enqueue(self, resource_id: int, object_key: str, size_bytes: int) -> BackupStatus:
        """Schedule replication of one object; returns the resulting backup status."""
        if not self.enabled:
            logger.debug(f"Backup disabled, not replicating {object_key}")
            return BackupStatus.NONE

        try:
            await asyncio.to_thread(self.status_store.set_status, resource_id, BackupStatus.PENDING, None)
        except ResourceNotFoundError:
            logger.warning(f"Resource {resource_id} was deleted before its backup could be scheduled")
            return BackupStatus.NONE
        except Exception as e:  # pylint: disable=broad-except
            # The worker rewrites the status when it picks the job up
            logger.error(f"Could not mark resource {resource_id} PENDING: {e}")

        job = ReplicationJob.create(resource_id, object_key, size_bytes)
        try:
            if self.queue is None:
                raise QueuePublishError("job queue not configured")
            message_id = await asyncio.wait_for(
                self.queue.add_task(job.to_message()),
                timeout=self.enqueue_timeout_seconds,
            )
        except asyncio.TimeoutError:
            error = f"queue publish timed out after {self.enqueue_timeout_seconds}s"
        except Exception as e:  # pylint: disable=broad-except
            error = str(e) or type(e).__name__
        else:
            logger.info(f"Backup job queued for resource {resource_id} ({object_key}), message {message_id}")
            await self._record_result(BackupStatus.PENDING, object_key)
            return BackupStatus.PENDING

        logger.error(f"Failed to queue backup for {object_key}: {error}")
        try:
            await asyncio.to_thread(
                self.status_store.set_status, resource_id, BackupStatus.FAILED, ENQUEUE_ERROR_PREFIX + error
            )
        except Exception as e:  # pylint: disable=broad-except
            logger.error(f"Could not mark resource {resource_id} FAILED: {e}")
        await self._record_result(BackupStatus.FAILED, object_key)
        return BackupStatus.FAILED

    async def retry(self, resource_id: int) -> BackupStatus:
        """Re-enqueue a confirmed upload; the record restarts at PENDING."""
        resource = get_resource(resource_id, db_path=self.db_path)
        if resource is None or not resource["upload_confirmed"] or resource["is_deleted"]:
            raise ResourceNotFoundError(resource_id)
        logger.info(f"Operator retry of backup for resource {resource_id}")
        return await self.enqueue(resource_id, resource["file_path"], resource["file_size"])

    async def _record_result(self, status: BackupStatus, object_key: str) -> None:
        await asyncio.to_thread(self.metrics.record_backup_result, status, object_key)
