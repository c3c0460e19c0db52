# src/storage_api/settings.py
from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


VALID_DEPLOYMENT_MODES = ["local-dev", "aws-mock", "aws-prod"]
LOCAL_MODES = ["local-dev", "aws-mock"]
LOCAL_ENDPOINT_URL = "http://localhost:5000"


class Settings(BaseSettings):
    """
    Single source of truth for all application settings.

    Configuration precedence:
    1. Environment variables (highest priority)
    2. .env file (if exists)
    3. Default values in this class (lowest priority)

    Usage:
        from storage_api.settings import get_settings
        settings = get_settings()
        bucket_name = settings.s3_bucket_name
    """

    # Application Settings
    app_name: str = Field(
        default="storage-api",
        description="Application name"
    )

    # Deployment Mode
    deployment_mode: str = Field(
        default="local-dev",
        description="Deployment mode: local-dev, aws-mock, or aws-prod"
    )

    # AWS Core Settings
    aws_region: str = Field(
        default="us-east-1",
        alias="AWS_DEFAULT_REGION"
    )

    aws_access_key_id: Optional[str] = Field(
        default=None,
        alias="AWS_ACCESS_KEY_ID"
    )

    aws_secret_access_key: Optional[str] = Field(
        default=None,
        alias="AWS_SECRET_ACCESS_KEY"
    )

    aws_endpoint_url: Optional[str] = Field(
        default=None,
        alias="AWS_ENDPOINT_URL"
    )

    # Primary storage
    s3_bucket_name: str = Field(
        default="storage-primary",
        description="S3 bucket holding the authoritative copy of every upload"
    )

    # SQS Configuration
    sqs_queue_name: str = Field(
        default="backup-replication-queue",
        description="SQS queue name"
    )

    sqs_queue_url: Optional[str] = Field(
        default=None,
        alias="SQS_QUEUE_URL",
        description="Full SQS queue URL"
    )

    sqs_wait_time_seconds: int = Field(
        default=5,
        ge=0,
        le=20,
        description="Long-poll wait used by workers when receiving jobs"
    )

    sqs_visibility_timeout_seconds: int = Field(
        default=120,
        ge=1,
        description="How long a received job stays hidden before it is redelivered"
    )

    # Local storage (file-system queue for local-dev)
    storage_dir: str = Field(
        default="storage",
        description="Local storage directory"
    )

    # Secondary storage
    backup_enabled: bool = Field(
        default=True,
        description="Replicate confirmed uploads to the secondary bucket"
    )

    backup_bucket_name: str = Field(
        default="storage-backup",
        description="Bucket on the secondary provider receiving replicated copies"
    )

    backup_region: Optional[str] = Field(
        default=None,
        description="Region of the secondary provider (defaults to aws_region)"
    )

    backup_endpoint_url: Optional[str] = Field(
        default=None,
        description="S3-compatible endpoint of the secondary provider"
    )

    backup_access_key_id: Optional[str] = Field(default=None)

    backup_secret_access_key: Optional[str] = Field(default=None)

    # Retry policy
    backup_max_attempts: int = Field(
        default=3,
        ge=1,
        description="Copy attempts before a job is marked FAILED"
    )

    backup_backoff_millis: int = Field(
        default=5000,
        ge=0,
        description="Fixed delay between copy attempts"
    )

    # Producer
    enqueue_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        description="Upper bound on how long upload-confirm waits for the queue publish"
    )

    # Internal status API
    internal_api_key: Optional[str] = Field(
        default=None,
        description="Shared secret for /api/internal; unset disables the check"
    )

    api_base_url: str = Field(
        default="http://localhost:8000",
        description="Base URL workers use to reach the internal status API"
    )

    status_api_timeout_seconds: float = Field(default=10.0, gt=0)

    # Metrics
    metrics_enabled: bool = Field(default=True)

    metrics_namespace: str = Field(
        default="StorageService/Backup",
        description="CloudWatch namespace for backup metrics"
    )

    # Worker
    worker_concurrency: int = Field(
        default=4,
        ge=1,
        description="Maximum number of jobs a worker processes at once"
    )

    backup_inline_worker: bool = Field(
        default=False,
        description="Run a replication worker inside the API process"
    )

    # Quota
    default_storage_quota_bytes: int = Field(
        default=1073741824,
        ge=0,
        description="Quota applied to users without an explicit one (1 GiB)"
    )

    quota_cache_ttl_seconds: Optional[float] = Field(
        default=300.0,
        description="Staleness bound for cached usage; None keeps entries until invalidated"
    )

    # Database
    db_path: str = Field(
        default="storage.db",
        description="SQLite database holding users and resource metadata"
    )

    upload_url_expiry_minutes: int = Field(default=15, ge=1)

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level"
    )

    @field_validator('deployment_mode', mode='before')
    @classmethod
    def normalize_deployment_mode(cls, v):
        """Normalize deployment mode values for backwards compatibility."""
        if v:
            mode_mapping = {
                "local-mock": "local-dev",
                "local": "local-dev",
                "cloud": "aws-prod",
            }
            return mode_mapping.get(v, v)
        return v

    @field_validator('deployment_mode')
    @classmethod
    def validate_deployment_mode(cls, v):
        """Validate deployment mode is one of the allowed values."""
        if v not in VALID_DEPLOYMENT_MODES:
            raise ValueError(f"Invalid deployment_mode: {v}. Must be one of {VALID_DEPLOYMENT_MODES}")
        return v

    @field_validator('log_level')
    @classmethod
    def normalize_log_level(cls, v):
        return v.upper()

    @model_validator(mode='after')
    def apply_mode_defaults(self):
        """Fill endpoint, credentials and queue URL for the local modes."""
        if self.deployment_mode in LOCAL_MODES:
            if self.aws_endpoint_url is None:
                self.aws_endpoint_url = LOCAL_ENDPOINT_URL
            if self.aws_access_key_id is None:
                self.aws_access_key_id = "mock"
            if self.aws_secret_access_key is None:
                self.aws_secret_access_key = "mock"
            if self.sqs_queue_url is None:
                # moto uses a simplified format without account number
                self.sqs_queue_url = f"{self.aws_endpoint_url}/queue/{self.sqs_queue_name}"
        return self

    @property
    def backup_retry_delay_seconds(self) -> float:
        return self.backup_backoff_millis / 1000.0

    @property
    def internal_auth_enabled(self) -> bool:
        return bool(self.internal_api_key)

    def backup_client_kwargs(self) -> dict:
        """boto3 client arguments for the secondary provider."""
        kwargs = {"region_name": self.backup_region or self.aws_region}
        endpoint = self.backup_endpoint_url
        if endpoint is None and self.deployment_mode in LOCAL_MODES:
            endpoint = self.aws_endpoint_url
        if endpoint:
            kwargs["endpoint_url"] = endpoint
        access_key = self.backup_access_key_id or self.aws_access_key_id
        secret_key = self.backup_secret_access_key or self.aws_secret_access_key
        if access_key and secret_key:
            kwargs["aws_access_key_id"] = access_key
            kwargs["aws_secret_access_key"] = secret_key
        return kwargs

    def describe(self) -> dict:
        """Non-secret view of the configuration, used by the CLI."""
        return {
            "deployment_mode": self.deployment_mode,
            "aws_region": self.aws_region,
            "aws_endpoint_url": self.aws_endpoint_url,
            "s3_bucket_name": self.s3_bucket_name,
            "sqs_queue_name": self.sqs_queue_name,
            "sqs_queue_url": self.sqs_queue_url,
            "backup_enabled": self.backup_enabled,
            "backup_bucket_name": self.backup_bucket_name,
            "backup_endpoint_url": self.backup_endpoint_url,
            "backup_max_attempts": self.backup_max_attempts,
            "backup_backoff_millis": self.backup_backoff_millis,
            "internal_auth_enabled": self.internal_auth_enabled,
            "metrics_namespace": self.metrics_namespace,
            "worker_concurrency": self.worker_concurrency,
            "db_path": self.db_path,
        }

    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_file=(".env", ".env.local-dev", ".env.aws-mock", ".env.aws-prod"),
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    This ensures we only create one Settings instance per process.
    """
    return Settings()
