import asyncio
import logging
from contextlib import asynccontextmanager
from textwrap import dedent
from typing import Any, Optional

import pydantic
from botocore.exceptions import BotoCoreError
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.routing import APIRoute

from backup_workers.worker import create_worker
from storage_api.adapters.metrics import MetricsEmitter
from storage_api.adapters.queue import BaseQueue, QueueFactory
from storage_api.adapters.status_store import LocalStatusStore
from storage_api.aws_clients import AWSClientManager
from storage_api.database.local import init_db
from storage_api.errors import (
    StorageServiceError,
    handle_broad_exceptions,
    handle_pydantic_validation_errors,
    handle_storage_service_errors,
)
from storage_api.routers.files import router as files_router
from storage_api.routers.health import router as health_router
from storage_api.routers.internal_backup import router as internal_backup_router
from storage_api.services.backup import BackupProducer
from storage_api.services.files import FileService
from storage_api.services.quota import StorageQuotaService
from storage_api.settings import Settings, get_settings

logger = logging.getLogger(__name__)


def _create_queue(settings: Settings) -> Optional[BaseQueue]:
    if not settings.backup_enabled:
        return None
    try:
        return QueueFactory.get_queue_handler(settings)
    except (BotoCoreError, OSError, ValueError) as e:
        # Uploads keep working; every backup is marked FAILED until the queue is fixed
        logger.error(f"Job queue unavailable, backups will fail to enqueue: {e}")
        return None


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    worker = None
    if settings.backup_inline_worker and app.state.queue is not None:
        worker = create_worker(
            settings,
            queue=app.state.queue,
            status_store=app.state.status_store,
            metrics=app.state.metrics,
        )
        app.state.worker_task = asyncio.create_task(worker.listen_for_tasks())
        logger.info("Inline replication worker started")

    yield

    if worker is not None:
        worker.stop()
        try:
            await asyncio.wait_for(app.state.worker_task, timeout=settings.sqs_wait_time_seconds + 5)
        except asyncio.TimeoutError:
            logger.warning("Inline worker did not stop in time, cancelling")
            app.state.worker_task.cancel()


def create_app(settings: Optional[Settings] = None,
               queue: Optional[BaseQueue] = None,
               s3_client: Any = None,
               cloudwatch_client: Any = None) -> FastAPI:
    """Create a FastAPI application."""
    settings = settings or get_settings()

    logging.basicConfig(
        level=settings.log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    app = FastAPI(
        title="Storage API",
        summary="Store user files and replicate them to a backup bucket",
        version="v1",
        description=dedent(
            """\
        Files are uploaded with presigned URLs and confirmed through this API.
        Every confirmed upload is copied to secondary storage in the background;
        its progress is visible as `backupStatus` on the file metadata.

        | Route group | Notes |
        | --- | --- |
        | `/v1/files` | upload, confirm, delete (caller identified by `X-User-Id`) |
        | `/api/internal/backup` | status updates from replication workers (`X-API-Key`) |
        """
        ),
        docs_url="/",  # its easier to find the docs when they live on the base url
        generate_unique_id_function=custom_generate_unique_id,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    logger.info(f"Initializing database at {settings.db_path}")
    init_db(settings.db_path)

    if s3_client is None:
        s3_client = AWSClientManager(settings).get_client("s3")

    queue = queue if queue is not None else _create_queue(settings)
    status_store = LocalStatusStore(settings.db_path)
    metrics = MetricsEmitter.from_settings(settings, cloudwatch_client)
    quota = StorageQuotaService(
        db_path=settings.db_path,
        default_quota_bytes=settings.default_storage_quota_bytes,
        ttl_seconds=settings.quota_cache_ttl_seconds,
    )
    producer = BackupProducer(
        queue=queue,
        status_store=status_store,
        metrics=metrics,
        enabled=settings.backup_enabled,
        enqueue_timeout_seconds=settings.enqueue_timeout_seconds,
        db_path=settings.db_path,
    )

    app.state.settings = settings
    app.state.queue = queue
    app.state.status_store = status_store
    app.state.metrics = metrics
    app.state.quota = quota
    app.state.backup_producer = producer
    app.state.file_service = FileService(settings, quota, producer, metrics=metrics, s3_client=s3_client)

    app.include_router(files_router, prefix="/v1", tags=["files"])
    app.include_router(internal_backup_router, tags=["internal"])
    app.include_router(health_router, tags=["health"])

    app.add_exception_handler(
        exc_class_or_status_code=StorageServiceError,
        handler=handle_storage_service_errors,
    )
    app.add_exception_handler(
        exc_class_or_status_code=pydantic.ValidationError,
        handler=handle_pydantic_validation_errors,
    )
    app.middleware("http")(handle_broad_exceptions)

    return app


def custom_generate_unique_id(route: APIRoute):
    """
    Generate prettier `operationId`s in the OpenAPI schema.

    These become the function names in generated client SDKs.
    """
    return f"{route.tags[0]}-{route.name}"


if __name__ == "__main__":
    import uvicorn

    app = create_app()
    uvicorn.run(app, host="0.0.0.0", port=8000)
