"""Domain exceptions and the FastAPI handlers that turn them into responses."""

import logging

import pydantic
from fastapi import Request, status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class StorageServiceError(Exception):
    """Base class for errors raised by the storage service."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


class ResourceNotFoundError(StorageServiceError):
    """The resource (or user) record does not exist."""

    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, resource_id, kind: str = "Resource"):
        self.resource_id = resource_id
        super().__init__(f"{kind} not found: {resource_id}")


class AccessDeniedError(StorageServiceError):
    status_code = status.HTTP_403_FORBIDDEN


class QuotaExceededError(StorageServiceError):
    status_code = status.HTTP_413_REQUEST_ENTITY_TOO_LARGE


class UploadNotFoundError(StorageServiceError):
    """Upload confirmation found no object in primary storage."""

    status_code = status.HTTP_400_BAD_REQUEST


class InvalidBackupStatusError(StorageServiceError, ValueError):
    status_code = status.HTTP_400_BAD_REQUEST


class SourceObjectMissingError(StorageServiceError):
    """The object a replication job points at is gone from primary storage."""

    def __init__(self, object_key: str):
        self.object_key = object_key
        super().__init__(f"File not found in primary storage: {object_key}")


class QueuePublishError(StorageServiceError):
    """A replication job could not be handed to the job queue."""


class StatusUpdateError(StorageServiceError):
    """The status store could not be reached or rejected the write."""


class BackupInterruptedError(StorageServiceError):
    """The retry backoff was cancelled before the next attempt."""


async def handle_storage_service_errors(request: Request, exc: StorageServiceError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("Unhandled storage error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": type(exc).__name__, "detail": str(exc)},
    )


async def handle_pydantic_validation_errors(request: Request, exc: pydantic.ValidationError) -> JSONResponse:
    errors = exc.errors()
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "detail": [
                {
                    "msg": error["msg"],
                    "input": error.get("input"),
                }
                for error in errors
            ]
        },
    )


async def handle_broad_exceptions(request: Request, call_next):
    """Handle any exception that goes unhandled by a more specific exception handler."""
    try:
        return await call_next(request)
    except Exception:  # pylint: disable=broad-except
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "Internal server error"},
        )
