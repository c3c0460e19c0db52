"""Copies objects from primary storage into the secondary (backup) bucket."""
import logging
from dataclasses import dataclass
from typing import Any, Optional

from botocore.exceptions import ClientError

from storage_api.aws_clients import AWSClientManager
from storage_api.errors import SourceObjectMissingError
from storage_api.s3.read_objects import (
    fetch_s3_object,
    fetch_s3_object_metadata,
    is_missing_object_error,
)
from storage_api.s3.write_objects import upload_s3_object_stream
from storage_api.settings import Settings

logger = logging.getLogger(__name__)


@dataclass
class SourceObject:
    object_key: str
    size_bytes: int
    content_type: Optional[str] = None
    etag: Optional[str] = None


class BackupReplicator:
    """
    Blocking boto3 operations behind one replication job.

    The worker runs these in threads and wraps them in its retry policy.
    A missing source object raises ``SourceObjectMissingError`` which is
    never retried; every other error propagates as-is.
    """

    def __init__(self, primary_client: Any, primary_bucket: str, backup_client: Any, backup_bucket: str):
        self.primary_client = primary_client
        self.primary_bucket = primary_bucket
        self.backup_client = backup_client
        self.backup_bucket = backup_bucket

    @classmethod
    def from_settings(cls, settings: Settings, clients: Optional[AWSClientManager] = None) -> "BackupReplicator":
        clients = clients or AWSClientManager(settings)
        return cls(
            primary_client=clients.get_client("s3"),
            primary_bucket=settings.s3_bucket_name,
            backup_client=clients.get_backup_s3_client(),
            backup_bucket=settings.backup_bucket_name,
        )

    def verify_source(self, object_key: str) -> SourceObject:
        """HEAD the source object and return its actual size and content type."""
        logger.info(f"Verifying source object exists: {object_key}")
        try:
            head = fetch_s3_object_metadata(self.primary_bucket, object_key, s3_client=self.primary_client)
        except ClientError as e:
            if is_missing_object_error(e):
                raise SourceObjectMissingError(object_key) from e
            raise

        source = SourceObject(
            object_key=object_key,
            size_bytes=head["ContentLength"],
            content_type=head.get("ContentType"),
            etag=head.get("ETag"),
        )
        logger.info(f"Source object verified - Size: {source.size_bytes} bytes, ContentType: {source.content_type}")
        return source

    def backup_matches(self, source: SourceObject) -> bool:
        """True when the backup bucket already holds this key with the same size."""
        try:
            head = self.backup_client.head_object(Bucket=self.backup_bucket, Key=source.object_key)
        except ClientError as e:
            if is_missing_object_error(e):
                return False
            raise
        return head["ContentLength"] == source.size_bytes

    def copy_to_backup(self, source: SourceObject) -> int:
        """Stream the primary object into the backup bucket; returns the bytes written."""
        try:
            response = fetch_s3_object(self.primary_bucket, source.object_key, s3_client=self.primary_client)
        except ClientError as e:
            if is_missing_object_error(e):
                raise SourceObjectMissingError(source.object_key) from e
            raise

        body = response["Body"]
        content_length = response.get("ContentLength", source.size_bytes)
        try:
            upload_s3_object_stream(
                self.backup_bucket,
                source.object_key,
                body,
                content_length,
                content_type=response.get("ContentType") or source.content_type,
                s3_client=self.backup_client,
            )
        finally:
            body.close()

        logger.info(f"Copied {source.object_key} ({content_length} bytes) to {self.backup_bucket}")
        return content_length
