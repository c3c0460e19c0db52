"""CloudWatch metrics for the backup pipeline. Emission never raises."""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from botocore.exceptions import BotoCoreError, ClientError

from storage_api.aws_clients import AWSClientManager
from storage_api.backup_status import BackupStatus
from storage_api.settings import Settings

logger = logging.getLogger(__name__)

# CloudWatch rejects dimension values longer than this
MAX_DIMENSION_VALUE_LENGTH = 255


class MetricsEmitter:
    """Publishes backup metrics; logs the sample instead when no client is configured."""

    def __init__(self, namespace: str, cloudwatch_client: Any = None, enabled: bool = True):
        self.namespace = namespace
        self.cloudwatch = cloudwatch_client
        self.enabled = enabled

    @classmethod
    def from_settings(cls, settings: Settings, cloudwatch_client: Any = None) -> "MetricsEmitter":
        if cloudwatch_client is None and settings.metrics_enabled:
            try:
                cloudwatch_client = AWSClientManager(settings).get_client("cloudwatch")
            except (BotoCoreError, ClientError, ValueError) as e:
                logger.warning(f"CloudWatch unavailable, metrics will only be logged: {e}")
        return cls(settings.metrics_namespace, cloudwatch_client, settings.metrics_enabled)

    def put_metric(self, name: str, value: float, unit: str = "None",
                   dimensions: Optional[Dict[str, str]] = None) -> bool:
        """Emit one sample. Returns False when the sample was dropped."""
        if not self.enabled:
            return False

        datum = {
            "MetricName": name,
            "Value": float(value),
            "Unit": unit,
            "Timestamp": datetime.now(timezone.utc),
            "Dimensions": [
                {"Name": key, "Value": str(val)[:MAX_DIMENSION_VALUE_LENGTH]}
                for key, val in (dimensions or {}).items()
            ],
        }

        if self.cloudwatch is None:
            logger.info(f"metric {self.namespace}/{name}={value} {unit} {dimensions or {}}")
            return True

        try:
            self.cloudwatch.put_metric_data(Namespace=self.namespace, MetricData=[datum])
            logger.debug(f"Recorded metric {name}={value} {unit}")
            return True
        except (BotoCoreError, ClientError) as e:
            logger.error(f"Failed to record metric {name}: {e}")
        except Exception as e:  # pylint: disable=broad-except
            logger.error(f"Unexpected error recording metric {name}: {e}")
        return False

    def record_backup_result(self, status: Union[str, BackupStatus], object_key: str) -> bool:
        status = BackupStatus(status)
        value = 1.0 if status is BackupStatus.COMPLETED else 0.0
        return self.put_metric(
            "BackupSuccess", value, "None",
            {"Status": status.value, "ObjectKey": object_key},
        )

    def record_backup_latency(self, object_key: str, latency_seconds: float) -> bool:
        return self.put_metric("BackupLatency", latency_seconds, "Seconds", {"ObjectKey": object_key})

    def record_backup_throughput(self, object_key: str, bytes_per_second: float) -> bool:
        return self.put_metric("BackupThroughput", bytes_per_second, "Bytes/Second", {"ObjectKey": object_key})

    def record_file_operation_latency(self, operation: str, object_key: str, latency_seconds: float) -> bool:
        return self.put_metric(
            "FileOperationLatency", latency_seconds, "Seconds",
            {"Operation": operation, "ObjectKey": object_key},
        )
