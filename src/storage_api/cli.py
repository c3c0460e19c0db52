# cli.py
import asyncio
import json
import logging

import click

from storage_api.adapters.metrics import MetricsEmitter
from storage_api.adapters.queue import QueueFactory
from storage_api.adapters.status_store import LocalStatusStore
from storage_api.database.local import create_user as db_create_user
from storage_api.database.local import init_db as db_init_db
from storage_api.errors import ResourceNotFoundError
from storage_api.services.backup import BackupProducer
from storage_api.settings import get_settings

logger = logging.getLogger(__name__)


@click.group()
def cli():
    """CLI commands for the storage API"""
    pass

# Worker commands live in src/backup_workers/cli.py


@cli.command("show-config")
def show_config():
    """Show current configuration"""
    settings = get_settings()
    click.echo(json.dumps(settings.describe(), indent=2))


@cli.command("init-db")
def init_db():
    """Create the metadata tables"""
    settings = get_settings()
    db_init_db(settings.db_path)
    click.echo(f"Database initialized at {settings.db_path}")


@cli.command("create-user")
@click.argument("username")
@click.option("--quota-bytes", type=int, default=None,
              help="Storage quota in bytes (defaults to default_storage_quota_bytes)")
def create_user(username, quota_bytes):
    """Create a user that can upload files"""
    settings = get_settings()
    db_init_db(settings.db_path)
    user_id = db_create_user(username, quota_bytes, db_path=settings.db_path)
    click.echo(f"Created user {username} with id {user_id}")


@cli.command("retry-backup")
@click.argument("resource_id", type=int)
def retry_backup(resource_id):
    """Re-enqueue the backup of a confirmed upload"""
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    producer = BackupProducer(
        queue=QueueFactory.get_queue_handler(settings),
        status_store=LocalStatusStore(settings.db_path),
        metrics=MetricsEmitter.from_settings(settings),
        enabled=settings.backup_enabled,
        enqueue_timeout_seconds=settings.enqueue_timeout_seconds,
        db_path=settings.db_path,
    )
    try:
        status = asyncio.run(producer.retry(resource_id))
    except ResourceNotFoundError as e:
        raise click.ClickException(str(e))
    click.echo(f"Resource {resource_id} backup status: {status.value}")


@cli.command()
@click.option("--host", default="0.0.0.0")
@click.option("--port", default=8000, type=int)
def serve(host, port):
    """Run the API with uvicorn"""
    import uvicorn

    from storage_api.main import create_app

    uvicorn.run(create_app(), host=host, port=port)


if __name__ == "__main__":
    cli()
