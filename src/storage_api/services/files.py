"""Upload registration, confirmation and deletion for user files."""

import asyncio
import logging
import time
import uuid
from typing import Any, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from storage_api.adapters.metrics import MetricsEmitter
from storage_api.database.local import (
    add_resource,
    delete_resource,
    get_resource,
    get_resources_by_ids,
    get_total_storage_used,
    mark_upload_confirmed,
)
from storage_api.errors import (
    AccessDeniedError,
    QuotaExceededError,
    ResourceNotFoundError,
    UploadNotFoundError,
)
from storage_api.s3.delete_objects import delete_s3_object
from storage_api.s3.read_objects import object_exists_in_s3
from storage_api.s3.write_objects import generate_presigned_upload_url
from storage_api.schemas import (
    BulkDeleteResponse,
    FileMetadata,
    StorageInfoResponse,
    UploadUrlResponse,
)
from storage_api.services.backup import BackupProducer
from storage_api.services.quota import StorageQuotaService, format_bytes
from storage_api.settings import Settings
from storage_api.utils.decorators import log_execution_time

logger = logging.getLogger(__name__)


def build_object_key(user_id: int, file_name: str) -> str:
    """``user-<id>/<stem>_<epoch>_<8 hex><ext>``; unique even for repeated names."""
    timestamp = int(time.time())
    random_str = uuid.uuid4().hex[:8]
    last_dot = file_name.rfind(".")
    if last_dot > 0:
        unique_name = f"{file_name[:last_dot]}_{timestamp}_{random_str}{file_name[last_dot:]}"
    else:
        unique_name = f"{file_name}_{timestamp}_{random_str}"
    return f"user-{user_id}/{unique_name}"


class FileService:
    def __init__(self,
                 settings: Settings,
                 quota: StorageQuotaService,
                 producer: BackupProducer,
                 metrics: Optional[MetricsEmitter] = None,
                 s3_client: Any = None):
        self.settings = settings
        self.quota = quota
        self.producer = producer
        self.metrics = metrics
        self.s3_client = s3_client
        self.bucket_name = settings.s3_bucket_name
        self.db_path = settings.db_path

    def _owned_resource(self, file_id: int, user_id: int) -> dict:
        resource = get_resource(file_id, db_path=self.db_path)
        if resource is None or resource["is_deleted"]:
            raise ResourceNotFoundError(file_id, kind="File")
        if resource["uploader_id"] != user_id:
            raise AccessDeniedError("Access denied to this file")
        return resource

    @log_execution_time
    def register_upload(self, user_id: int, file_name: Optional[str], size_bytes: int,
                        content_type: Optional[str] = None) -> UploadUrlResponse:
        """Reserve an object key and hand back a presigned PUT URL for it."""
        if not self.quota.has_space(user_id, size_bytes):
            remaining = self.quota.remaining(user_id)
            raise QuotaExceededError(
                f"Storage quota exceeded. Available: {format_bytes(remaining)}, Required: {format_bytes(size_bytes)}"
            )

        if not file_name or not file_name.strip():
            file_name = f"unnamed_{int(time.time() * 1000)}"

        object_key = build_object_key(user_id, file_name)
        file_id = add_resource(user_id, file_name, object_key, size_bytes, content_type, db_path=self.db_path)

        expiry_minutes = self.settings.upload_url_expiry_minutes
        try:
            upload_url = generate_presigned_upload_url(
                self.bucket_name, object_key, expiry_minutes * 60, content_type, s3_client=self.s3_client
            )
        except (BotoCoreError, ClientError):
            delete_resource(file_id, db_path=self.db_path)
            raise

        return UploadUrlResponse(
            upload_url=upload_url,
            file_id=file_id,
            object_key=object_key,
            expires_in_minutes=expiry_minutes,
        )

    async def confirm_upload(self, file_id: int, user_id: int,
                             content_type: Optional[str] = None) -> FileMetadata:
        """
        Confirm a client-side upload and schedule its backup.

        The upload is rejected and its row removed when no object landed in
        primary storage, or when it pushes the user over quota (the object is
        removed too). Backup scheduling failures never fail the confirmation.
        """
        resource = self._owned_resource(file_id, user_id)
        object_key = resource["file_path"]

        exists = await asyncio.to_thread(
            object_exists_in_s3, self.bucket_name, object_key, self.s3_client
        )
        if not exists:
            delete_resource(file_id, db_path=self.db_path)
            raise UploadNotFoundError("File upload failed - file not found in storage")

        if not resource["upload_confirmed"]:
            used = get_total_storage_used(user_id, db_path=self.db_path)
            quota = self.quota.quota_for(user_id)
            if used + resource["file_size"] > quota:
                logger.warning(
                    f"Storage quota exceeded for user {user_id}: used={used}, quota={quota}, file={resource['file_size']}"
                )
                try:
                    await asyncio.to_thread(delete_s3_object, self.bucket_name, object_key, self.s3_client)
                except (BotoCoreError, ClientError) as e:
                    logger.error(f"Failed to delete file from S3 during quota rollback: {e}")
                delete_resource(file_id, db_path=self.db_path)
                raise QuotaExceededError(
                    f"Storage quota exceeded. Used: {format_bytes(used)}, Quota: {format_bytes(quota)}. "
                    "Please delete some files before uploading."
                )

            mark_upload_confirmed(file_id, content_type, db_path=self.db_path)
            self.quota.invalidate(user_id)

        await self.producer.enqueue(file_id, object_key, resource["file_size"])

        logger.info(f"File upload confirmed: {resource['file_name']} by user {user_id}")
        return FileMetadata.from_record(get_resource(file_id, db_path=self.db_path))

    def get_file(self, file_id: int, user_id: int) -> FileMetadata:
        start = time.monotonic()
        resource = self._owned_resource(file_id, user_id)
        if self.metrics is not None:
            self.metrics.record_file_operation_latency("GetMetadata", resource["file_path"], time.monotonic() - start)
        return FileMetadata.from_record(resource)

    @log_execution_time
    def delete_file(self, file_id: int, user_id: int) -> None:
        resource = self._owned_resource(file_id, user_id)
        try:
            delete_s3_object(self.bucket_name, resource["file_path"], s3_client=self.s3_client)
            delete_resource(file_id, db_path=self.db_path)
        finally:
            self.quota.invalidate(user_id)
        logger.info(f"File deleted: {resource['file_name']} by user {user_id}")

    @log_execution_time
    def bulk_delete_files(self, file_ids: List[int], user_id: int) -> BulkDeleteResponse:
        """Delete the listed files the user owns; ids owned by others are skipped."""
        resources = get_resources_by_ids(file_ids, user_id, db_path=self.db_path)
        deleted = 0
        freed_bytes = 0
        try:
            for resource in resources:
                delete_s3_object(self.bucket_name, resource["file_path"], s3_client=self.s3_client)
                delete_resource(resource["resource_id"], db_path=self.db_path)
                deleted += 1
                if resource["upload_confirmed"]:
                    freed_bytes += resource["file_size"]
        finally:
            # Partial deletes still changed the total
            self.quota.invalidate(user_id)

        logger.info(f"Bulk deleted {deleted} files by user {user_id}")
        return BulkDeleteResponse(deleted=deleted, freed_bytes=freed_bytes)

    def get_storage_info(self, user_id: int) -> StorageInfoResponse:
        used = self.quota.get_used_bytes(user_id)
        quota = self.quota.quota_for(user_id)
        remaining = max(0, quota - used)
        return StorageInfoResponse(
            storage_used=used,
            storage_quota=quota,
            storage_remaining=remaining,
            storage_used_formatted=format_bytes(used),
            storage_quota_formatted=format_bytes(quota),
            storage_remaining_formatted=format_bytes(remaining),
        )
