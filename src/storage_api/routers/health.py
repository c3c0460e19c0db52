import sqlite3

from fastapi import APIRouter, Request

from storage_api.database.local import get_total_storage_used
from storage_api.settings import Settings

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """
    Health check endpoint for monitoring API status and component readiness.

    Returns status of API, queue, database and the inline worker along with
    deployment mode.
    """
    settings: Settings = request.app.state.settings

    health_status = {
        "status": "ok",
        "deployment_mode": settings.deployment_mode,
        "backup_enabled": settings.backup_enabled,
        "components": {
            "api": "ready",
            "queue": "ready" if request.app.state.queue is not None else "not configured",
            "database": "ready",
        },
        "ready": False,
    }

    try:
        get_total_storage_used(0, db_path=settings.db_path)
    except sqlite3.Error as e:
        health_status["components"]["database"] = f"error: {str(e)}"
        health_status["status"] = "degraded"

    if settings.backup_enabled and request.app.state.queue is None:
        health_status["status"] = "degraded"

    worker_task = getattr(request.app.state, "worker_task", None)
    if worker_task is not None:
        health_status["components"]["worker"] = "stopped" if worker_task.done() else "ready"

    health_status["ready"] = health_status["status"] == "ok"
    return health_status
