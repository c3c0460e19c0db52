"""
CLI commands for the backup replication worker.

Kept apart from storage_api/cli.py so worker hosts only need the worker
entry points.
"""

import asyncio
import json
import logging
import os

import click

from backup_workers.worker import create_worker
from storage_api.adapters.status_store import HttpStatusStore, LocalStatusStore
from storage_api.schemas import ReplicationJob
from storage_api.settings import VALID_DEPLOYMENT_MODES, Settings, get_settings

logger = logging.getLogger(__name__)


def _load_settings(mode) -> Settings:
    if mode:
        os.environ["DEPLOYMENT_MODE"] = mode
        # Clear settings cache to pick up new mode
        get_settings.cache_clear()
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    return settings


def _status_store(settings: Settings, status_api):
    if status_api is None:
        return None
    if status_api:
        return HttpStatusStore(
            settings.api_base_url, settings.internal_api_key, settings.status_api_timeout_seconds
        )
    return LocalStatusStore(settings.db_path)


@click.group()
def cli():
    """CLI commands for backup worker management"""
    pass


@cli.command()
@click.option("--mode", type=click.Choice(VALID_DEPLOYMENT_MODES), default=None,
              help="Deployment mode (defaults to DEPLOYMENT_MODE)")
@click.option("--concurrency", type=int, default=None, help="Override worker_concurrency")
@click.option("--status-api/--status-db", default=None,
              help="Report status through the internal API or write the database directly")
def run(mode, concurrency, status_api):
    """Start a worker that drains the replication queue"""
    settings = _load_settings(mode)
    if concurrency:
        settings = settings.model_copy(update={"worker_concurrency": concurrency})

    click.echo(f"Starting backup worker in {settings.deployment_mode} mode...")
    click.echo(f"  Queue: {settings.sqs_queue_url or settings.storage_dir}")
    click.echo(f"  Primary bucket: {settings.s3_bucket_name}")
    click.echo(f"  Backup bucket: {settings.backup_bucket_name}")
    click.echo(f"  Concurrency: {settings.worker_concurrency}")

    worker = create_worker(settings, status_store=_status_store(settings, status_api))
    try:
        asyncio.run(worker.listen_for_tasks())
    except KeyboardInterrupt:
        click.echo("Received shutdown signal...")
        worker.stop()
    finally:
        click.echo("Worker shutdown complete")


@cli.command("process-job")
@click.argument("job_json")
@click.option("--mode", type=click.Choice(VALID_DEPLOYMENT_MODES), default=None)
@click.option("--status-api/--status-db", default=None)
def process_job(job_json, mode, status_api):
    """Run a single replication job given as JSON, without touching the queue"""
    settings = _load_settings(mode)
    try:
        job = ReplicationJob.model_validate_json(job_json)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="JOB_JSON")

    worker = create_worker(settings, status_store=_status_store(settings, status_api), with_queue=False)
    result = asyncio.run(worker.process_task(job.to_message()))
    click.echo(json.dumps({
        "resourceId": result.resource_id,
        "status": result.status.value if result.status else None,
        "attempts": result.copy_attempts,
        "error": result.error,
    }))
    if not result.succeeded:
        raise SystemExit(1)


if __name__ == "__main__":
    cli()
