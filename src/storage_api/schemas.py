####################################
# --- Request/response schemas --- #
####################################

import time
from typing import Any, List, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
)

from storage_api.backup_status import BackupStatus


class ReplicationJob(BaseModel):
    """
    Replication job carried on the job queue.

    The wire format uses camelCase keys and must stay readable by workers
    across deploys: unknown keys are ignored and ``timestamp`` may be absent.
    """
    resource_id: int = Field(alias="resourceId", ge=1)
    object_key: str = Field(alias="objectKey", min_length=1)
    size_bytes: int = Field(alias="fileSize", ge=0)
    enqueued_at_millis: Optional[int] = Field(default=None, alias="timestamp")

    model_config = ConfigDict(
        populate_by_name=True,
        extra="ignore",
        json_schema_extra={
            "example": {
                "resourceId": 42,
                "objectKey": "user-7/report_1700000000_ab12cd34.pdf",
                "fileSize": 2048,
                "timestamp": 1700000000000,
            }
        },
    )

    @classmethod
    def create(cls, resource_id: int, object_key: str, size_bytes: int) -> "ReplicationJob":
        return cls(
            resource_id=resource_id,
            object_key=object_key,
            size_bytes=size_bytes,
            enqueued_at_millis=int(time.time() * 1000),
        )

    def to_message(self) -> dict:
        return self.model_dump(by_alias=True)


class BackupStatusUpdate(BaseModel):
    """Body of `POST /api/internal/backup/{resourceId}/status`; the status value is checked by `parse_status`."""
    status: Any = None
    error: Optional[str] = None


class BackupStatusUpdateResponse(BaseModel):
    success: bool
    resource_id: int = Field(serialization_alias="resourceId")
    status: BackupStatus
    updated_at: Optional[str] = Field(serialization_alias="updatedAt")


class BackupStatusResponse(BaseModel):
    resource_id: int = Field(serialization_alias="resourceId")
    backup_status: BackupStatus = Field(serialization_alias="backupStatus")
    backup_at: Optional[str] = Field(serialization_alias="backupAt")
    backup_error: Optional[str] = Field(serialization_alias="backupError")
    file_path: str = Field(serialization_alias="filePath")


class UploadUrlRequest(BaseModel):
    """Body of `POST /v1/files/upload-url`."""
    file_name: Optional[str] = Field(None, alias="fileName")
    file_size: int = Field(alias="fileSize", gt=0)
    content_type: Optional[str] = Field(None, alias="contentType")

    model_config = ConfigDict(populate_by_name=True)


class UploadUrlResponse(BaseModel):
    upload_url: str = Field(serialization_alias="uploadUrl")
    file_id: int = Field(serialization_alias="fileId")
    object_key: str = Field(serialization_alias="objectKey")
    expires_in_minutes: int = Field(serialization_alias="expiresInMinutes")


class ConfirmUploadRequest(BaseModel):
    content_type: Optional[str] = Field(None, alias="contentType")

    model_config = ConfigDict(populate_by_name=True)


class FileMetadata(BaseModel):
    """Metadata of a stored file, including its replication status."""
    file_id: int = Field(serialization_alias="fileId")
    file_name: str = Field(serialization_alias="fileName")
    file_path: str = Field(
        serialization_alias="filePath",
        json_schema_extra={"example": "user-7/report_1700000000_ab12cd34.pdf"},
    )
    size_bytes: int = Field(serialization_alias="fileSize")
    content_type: Optional[str] = Field(serialization_alias="contentType")
    uploaded_at: Optional[str] = Field(serialization_alias="uploadedAt")
    backup_status: BackupStatus = Field(serialization_alias="backupStatus")
    backup_at: Optional[str] = Field(None, serialization_alias="backupAt")
    backup_error: Optional[str] = Field(None, serialization_alias="backupError")

    @classmethod
    def from_record(cls, record: dict) -> "FileMetadata":
        return cls(
            file_id=record["resource_id"],
            file_name=record["file_name"],
            file_path=record["file_path"],
            size_bytes=record["file_size"],
            content_type=record.get("content_type"),
            uploaded_at=record.get("uploaded_at"),
            backup_status=record.get("backup_status") or BackupStatus.NONE,
            backup_at=record.get("backup_at"),
            backup_error=record.get("backup_error"),
        )


class BulkDeleteRequest(BaseModel):
    file_ids: List[int] = Field(alias="fileIds", min_length=1)

    model_config = ConfigDict(populate_by_name=True)


class BulkDeleteResponse(BaseModel):
    deleted: int
    freed_bytes: int = Field(serialization_alias="freedBytes")


class StorageInfoResponse(BaseModel):
    storage_used: int = Field(serialization_alias="storageUsed")
    storage_quota: int = Field(serialization_alias="storageQuota")
    storage_remaining: int = Field(serialization_alias="storageRemaining")
    storage_used_formatted: str = Field(serialization_alias="storageUsedFormatted")
    storage_quota_formatted: str = Field(serialization_alias="storageQuotaFormatted")
    storage_remaining_formatted: str = Field(serialization_alias="storageRemainingFormatted")
