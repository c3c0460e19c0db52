"""SQS-triggered Lambda entry point for replication jobs."""
import asyncio
import json
import logging
from functools import lru_cache
from typing import Any, Dict, List

from backup_workers.replicator import BackupReplicator
from backup_workers.retry import RetryPolicy
from backup_workers.worker import ReplicationWorker
from storage_api.adapters.metrics import MetricsEmitter
from storage_api.adapters.status_store import get_status_store
from storage_api.aws_clients import AWSClientManager
from storage_api.settings import get_settings

logger = logging.getLogger(__name__)


@lru_cache()
def _components():
    """Clients are reused across warm invocations."""
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    clients = AWSClientManager(settings)
    return (
        settings,
        BackupReplicator.from_settings(settings, clients),
        get_status_store(settings, remote=True),
        MetricsEmitter.from_settings(settings),
    )


def build_worker() -> ReplicationWorker:
    settings, replicator, status_store, metrics = _components()
    return ReplicationWorker(
        queue=None,
        replicator=replicator,
        status_store=status_store,
        metrics=metrics,
        retry_policy=RetryPolicy(settings.backup_max_attempts, settings.backup_backoff_millis),
        concurrency=settings.worker_concurrency,
    )


async def _process(bodies):
    return await build_worker().process_batch(bodies)


def handler(event: Dict[str, Any], context: Any = None) -> Dict[str, List[Dict[str, str]]]:
    """
    Process a batch of SQS records.

    Records whose outcome could not be written to the status store are
    reported in ``batchItemFailures`` so SQS redelivers only those.
    Unparseable records are logged and dropped.
    """
    records = event.get("Records", [])
    logger.info(f"Received {len(records)} messages from SQS")

    bodies = []
    message_ids = []
    for record in records:
        try:
            body = json.loads(record["body"])
        except (KeyError, TypeError, ValueError) as e:
            logger.error(f"Dropping unparseable SQS record {record.get('messageId')}: {e}")
            continue
        bodies.append(body)
        message_ids.append(record.get("messageId"))

    results = asyncio.run(_process(bodies))

    failures = [
        {"itemIdentifier": message_id}
        for message_id, result in zip(message_ids, results)
        if not result.should_ack
    ]
    succeeded = sum(1 for result in results if result.succeeded)
    logger.info(
        f"Processed {len(records)} messages: {succeeded} completed, "
        f"{len(results) - succeeded} not completed, {len(failures)} to redeliver"
    )
    return {"batchItemFailures": failures}


lambda_handler = handler
