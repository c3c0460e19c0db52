import logging
import secrets
from typing import Any, Optional

from fastapi import (
    APIRouter,
    Body,
    Depends,
    Header,
    HTTPException,
    Path,
    Query,
    Request,
    status,
)
from pydantic import ValidationError

from storage_api.adapters.metrics import MetricsEmitter
from storage_api.adapters.status_store import BaseStatusStore
from storage_api.backup_status import BackupStatus, parse_status
from storage_api.errors import InvalidBackupStatusError
from storage_api.schemas import (
    BackupStatusResponse,
    BackupStatusUpdate,
    BackupStatusUpdateResponse,
)
from storage_api.services.backup import BackupProducer
from storage_api.settings import Settings

logger = logging.getLogger(__name__)


def verify_internal_api_key(
    request: Request,
    x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
    api_key: Optional[str] = Query(None, alias="apiKey"),
) -> None:
    """Check the shared secret; a deployment without one configured accepts every caller."""
    settings: Settings = request.app.state.settings
    if not settings.internal_auth_enabled:
        return
    provided = x_api_key if x_api_key is not None else api_key
    if provided is None or not secrets.compare_digest(provided.encode(), settings.internal_api_key.encode()):
        logger.warning(f"Unauthorized internal backup API call: {request.method} {request.url.path}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
        )


router = APIRouter(prefix="/api/internal/backup", dependencies=[Depends(verify_internal_api_key)])


def parse_status_update(body: Any) -> BackupStatusUpdate:
    if body is None:
        return BackupStatusUpdate()
    if not isinstance(body, dict):
        raise InvalidBackupStatusError("Request body must be a JSON object")
    try:
        return BackupStatusUpdate.model_validate(body)
    except ValidationError as e:
        raise InvalidBackupStatusError(f"Invalid status update: {e.errors()[0]['msg']}") from None


@router.post("/{resource_id}/status", response_model=BackupStatusUpdateResponse)
async def update_backup_status(
    request: Request,
    resource_id: int = Path(..., description="Id of the resource record"),
    body: Any = Body(None),
) -> BackupStatusUpdateResponse:
    """
    Record a backup status transition reported by a replication worker.

    Repeating a status is a no-op, and a COMPLETED record is never moved
    back to PENDING_SYNC or FAILED; in both cases the stored status is
    returned unchanged.
    """
    update = parse_status_update(body)
    new_status = parse_status(update.status)
    status_store: BaseStatusStore = request.app.state.status_store
    record = status_store.set_status(resource_id, new_status, update.error)

    logger.info(
        f"Backup status update - ResourceId: {resource_id}, Status: {new_status.value}, "
        f"Stored: {record.status.value}, Error: {update.error}"
    )
    return BackupStatusUpdateResponse(
        success=True,
        resource_id=resource_id,
        status=record.status,
        updated_at=record.backup_at,
    )


@router.get("/{resource_id}/status", response_model=BackupStatusResponse)
async def get_backup_status(
    request: Request,
    resource_id: int = Path(..., description="Id of the resource record"),
) -> BackupStatusResponse:
    status_store: BaseStatusStore = request.app.state.status_store
    record = status_store.get_status(resource_id)
    return BackupStatusResponse(
        resource_id=resource_id,
        backup_status=record.status,
        backup_at=record.backup_at,
        backup_error=record.backup_error,
        file_path=record.object_key,
    )


@router.post("/{resource_id}/retry")
async def retry_backup(
    request: Request,
    resource_id: int = Path(..., description="Id of the resource record"),
):
    """Operator re-enqueue of a backup; the record restarts at PENDING."""
    producer: BackupProducer = request.app.state.backup_producer
    result = await producer.retry(resource_id)
    return {
        "success": result is BackupStatus.PENDING,
        "resourceId": resource_id,
        "status": result.value,
    }


@router.post("/metrics/test")
async def emit_test_metrics(request: Request):
    """Emit one sample of each backup metric so dashboards and permissions can be checked."""
    metrics: MetricsEmitter = request.app.state.metrics
    object_key = "metrics-test"
    emitted = {
        "BackupSuccess": metrics.record_backup_result(BackupStatus.COMPLETED, object_key),
        "BackupLatency": metrics.record_backup_latency(object_key, 1.0),
        "BackupThroughput": metrics.record_backup_throughput(object_key, 1024.0),
    }
    return {
        "success": all(emitted.values()),
        "namespace": metrics.namespace,
        "metrics": emitted,
    }
