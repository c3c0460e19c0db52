import asyncio
import json
import logging
import os
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from storage_api.aws_clients import AWSClientManager
from storage_api.errors import QueuePublishError
from storage_api.settings import Settings, get_settings

logger = logging.getLogger(__name__)


@dataclass
class QueueMessage:
    """A job received from the queue, kept until it is acknowledged or released."""
    body: dict
    receipt: str
    receive_count: int = 1
    message_id: Optional[str] = None
    attributes: dict = field(default_factory=dict)


class BaseQueue:
    """Base class for queue handling (to be extended by specific implementations)"""
    async def add_task(self, task: dict) -> str:
        raise NotImplementedError

    async def get_task(self) -> Optional[QueueMessage]:
        raise NotImplementedError

    async def ack(self, message: QueueMessage) -> None:
        """Remove a processed message so it is never redelivered."""
        raise NotImplementedError

    async def release(self, message: QueueMessage) -> None:
        """Make an unprocessed message visible again for redelivery."""
        raise NotImplementedError

    async def send_message(self, task: dict) -> str:
        """Alias for add_task to maintain compatibility with router code"""
        return await self.add_task(task)


class LocalQueue(BaseQueue):
    """Handles local queue using file system for IPC"""
    def __init__(self, settings: Optional[Settings] = None, queue_dir: Optional[Path] = None):
        settings = settings or get_settings()
        self.queue_dir = Path(queue_dir) if queue_dir else Path(settings.storage_dir) / "queue_data"
        self.inflight_dir = self.queue_dir / "inflight"
        self.error_dir = self.queue_dir / "errors"
        self.visibility_timeout = settings.sqs_visibility_timeout_seconds
        self.inflight_dir.mkdir(parents=True, exist_ok=True)
        self.error_dir.mkdir(parents=True, exist_ok=True)
        logger.info("LocalQueue initialized at: %s", self.queue_dir)

    async def add_task(self, task: dict) -> str:
        """Add task to queue"""
        # Timestamp prefix keeps files in FIFO order when sorted by name
        message_id = f"{int(time.time() * 1000)}_{os.getpid()}_{uuid.uuid4().hex[:8]}"
        filepath = self.queue_dir / f"{message_id}.json"
        tmp_path = self.queue_dir / f".{message_id}.tmp"
        try:
            with open(tmp_path, 'w') as f:
                json.dump(task, f)
            # Readers only see the file once it is complete
            os.replace(tmp_path, filepath)
        except (OSError, TypeError, ValueError) as e:
            logger.error("Error adding task to queue: %s", str(e))
            tmp_path.unlink(missing_ok=True)
            raise QueuePublishError(f"Could not write task to {self.queue_dir}: {e}") from e

        logger.info("Added task to queue: %s", task)
        return message_id

    async def get_task(self) -> Optional[QueueMessage]:
        """Claim the oldest task; it stays in flight until acked or released."""
        self._requeue_stale()

        for task_file in sorted(self.queue_dir.glob("*.json")):
            claimed = self.inflight_dir / task_file.name
            try:
                os.replace(task_file, claimed)
            except FileNotFoundError:
                # Another consumer claimed it first
                continue

            try:
                with open(claimed, 'r') as f:
                    task = json.load(f)
            except (OSError, ValueError) as e:
                logger.error("Error reading task file %s: %s", claimed, str(e))
                claimed.rename(self.error_dir / claimed.name)
                continue

            # Touch so the visibility clock starts at claim time
            os.utime(claimed)
            logger.info("Retrieved task from queue: %s", task)
            return QueueMessage(body=task, receipt=str(claimed), message_id=task_file.stem)

        await asyncio.sleep(0.1)  # Prevent busy waiting
        return None

    async def ack(self, message: QueueMessage) -> None:
        Path(message.receipt).unlink(missing_ok=True)

    async def release(self, message: QueueMessage) -> None:
        claimed = Path(message.receipt)
        if claimed.exists():
            os.replace(claimed, self.queue_dir / claimed.name)

    def _requeue_stale(self) -> None:
        """Put back in-flight tasks whose consumer never acked them."""
        cutoff = time.time() - self.visibility_timeout
        for claimed in self.inflight_dir.glob("*.json"):
            try:
                if claimed.stat().st_mtime < cutoff:
                    os.replace(claimed, self.queue_dir / claimed.name)
                    logger.warning("Requeued stale in-flight task %s", claimed.name)
            except FileNotFoundError:
                continue

    def pending_count(self) -> int:
        return len(list(self.queue_dir.glob("*.json")))


class SQSQueue(BaseQueue):
    """Handles AWS SQS queue"""
    def __init__(self, settings: Optional[Settings] = None,
                 sqs_client=None, publish_client=None, queue_url: Optional[str] = None):
        settings = settings or get_settings()
        clients = None
        if sqs_client is None or publish_client is None:
            clients = AWSClientManager(settings)

        self.sqs = sqs_client or clients.get_client("sqs")
        # Publishing happens on the upload-confirm request path, so it gets tight timeouts
        self.publish_sqs = publish_client or clients.get_client(
            "sqs",
            config=Config(
                connect_timeout=settings.enqueue_timeout_seconds,
                read_timeout=settings.enqueue_timeout_seconds,
                retries={"max_attempts": 1},
            ),
        )
        self.queue_url = queue_url or settings.sqs_queue_url
        self.wait_time_seconds = settings.sqs_wait_time_seconds
        self.visibility_timeout = settings.sqs_visibility_timeout_seconds

        logger.info("SQSQueue initialized")
        logger.info(f"  Queue URL: {self.queue_url}")
        logger.info(f"  Region: {settings.aws_region}")

    async def add_task(self, task: dict) -> str:
        """Add a task to the SQS queue."""
        if not self.queue_url:
            raise QueuePublishError("SQS queue URL not configured")
        try:
            response = await asyncio.to_thread(
                self.publish_sqs.send_message,
                QueueUrl=self.queue_url,
                MessageBody=json.dumps(task),
            )
        except (BotoCoreError, ClientError) as e:
            logger.error(f"Error adding task to SQS queue: {str(e)}")
            raise QueuePublishError(str(e)) from e

        message_id = response.get('MessageId')
        logger.info(f"Task added to SQS queue with ID: {message_id}")
        return message_id

    async def get_task(self) -> Optional[QueueMessage]:
        messages = await asyncio.to_thread(
            self.sqs.receive_message,
            QueueUrl=self.queue_url,
            MaxNumberOfMessages=1,
            WaitTimeSeconds=self.wait_time_seconds,
            VisibilityTimeout=self.visibility_timeout,
            AttributeNames=["ApproximateReceiveCount"],
        )
        if "Messages" not in messages:
            return None

        message = messages["Messages"][0]
        try:
            task = json.loads(message["Body"])
        except ValueError:
            logger.error(f"Discarding malformed SQS message {message.get('MessageId')}: {message['Body'][:200]}")
            await asyncio.to_thread(
                self.sqs.delete_message,
                QueueUrl=self.queue_url,
                ReceiptHandle=message["ReceiptHandle"],
            )
            return None

        receive_count = int(message.get("Attributes", {}).get("ApproximateReceiveCount", 1))
        logger.info(f"Retrieved task from SQS queue: {task}")
        return QueueMessage(
            body=task,
            receipt=message["ReceiptHandle"],
            receive_count=receive_count,
            message_id=message.get("MessageId"),
            attributes=message.get("Attributes", {}),
        )

    async def ack(self, message: QueueMessage) -> None:
        await asyncio.to_thread(
            self.sqs.delete_message,
            QueueUrl=self.queue_url,
            ReceiptHandle=message.receipt,
        )

    async def release(self, message: QueueMessage) -> None:
        await asyncio.to_thread(
            self.sqs.change_message_visibility,
            QueueUrl=self.queue_url,
            ReceiptHandle=message.receipt,
            VisibilityTimeout=0,
        )


class QueueFactory:
    """Factory to initialize the correct queue handler based on deployment mode"""

    queue_classes = {
        "local-dev": LocalQueue,
        "aws-mock": SQSQueue,
        "aws-prod": SQSQueue,
    }

    @staticmethod
    def get_queue_handler(settings: Optional[Settings] = None) -> BaseQueue:
        settings = settings or get_settings()

        deployment_mode = settings.deployment_mode
        if deployment_mode not in QueueFactory.queue_classes:
            raise ValueError(
                f"Invalid deployment_mode: {deployment_mode}. "
                f"Choose from {list(QueueFactory.queue_classes.keys())}"
            )

        logger.info(f"Creating queue handler for mode: {deployment_mode}")
        return QueueFactory.queue_classes[deployment_mode](settings)
