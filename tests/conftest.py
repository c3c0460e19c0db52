import boto3
import pytest
from fastapi.testclient import TestClient
from moto import mock_aws

from storage_api.main import create_app
from storage_api.settings import Settings
from tests.consts import (
    TEST_API_KEY,
    TEST_BACKUP_BUCKET_NAME,
    TEST_BUCKET_NAME,
    TEST_QUEUE_NAME,
    TEST_REGION,
)
from tests.fixtures.db_client import db_path, user_id  # noqa: F401
from tests.fixtures.doubles import RecordingMetrics, RecordingQueue


@pytest.fixture(autouse=True)
def aws_credentials(monkeypatch):
    """Point boto3 at fake credentials so nothing can reach a real account."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", TEST_REGION)
    for name in ("AWS_PROFILE", "AWS_ENDPOINT_URL", "SQS_QUEUE_URL", "DEPLOYMENT_MODE", "INTERNAL_API_KEY"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def mocked_aws(aws_credentials):
    """Primary bucket, backup bucket and job queue inside moto."""
    with mock_aws():
        s3_client = boto3.client("s3", region_name=TEST_REGION)
        s3_client.create_bucket(Bucket=TEST_BUCKET_NAME)
        s3_client.create_bucket(Bucket=TEST_BACKUP_BUCKET_NAME)
        sqs_client = boto3.client("sqs", region_name=TEST_REGION)
        queue_url = sqs_client.create_queue(QueueName=TEST_QUEUE_NAME)["QueueUrl"]
        yield {"s3": s3_client, "sqs": sqs_client, "queue_url": queue_url}


@pytest.fixture
def settings(tmp_path, db_path) -> Settings:  # noqa: F811
    return Settings(
        _env_file=None,
        deployment_mode="aws-prod",
        aws_region=TEST_REGION,
        s3_bucket_name=TEST_BUCKET_NAME,
        backup_bucket_name=TEST_BACKUP_BUCKET_NAME,
        sqs_queue_name=TEST_QUEUE_NAME,
        sqs_queue_url=f"https://sqs.{TEST_REGION}.amazonaws.com/123456789012/{TEST_QUEUE_NAME}",
        sqs_wait_time_seconds=0,
        storage_dir=str(tmp_path / "storage"),
        db_path=db_path,
        backup_backoff_millis=0,
        metrics_enabled=False,
        internal_api_key=TEST_API_KEY,
        enqueue_timeout_seconds=1.0,
    )


@pytest.fixture
def aws_settings(settings, mocked_aws) -> Settings:
    return settings.model_copy(update={"sqs_queue_url": mocked_aws["queue_url"]})


@pytest.fixture
def recording_queue() -> RecordingQueue:
    return RecordingQueue()


@pytest.fixture
def recording_metrics() -> RecordingMetrics:
    return RecordingMetrics()


@pytest.fixture
def client(settings, recording_queue, mocked_aws) -> TestClient:
    """API client wired to moto S3 and an in-memory job queue."""
    app = create_app(settings, queue=recording_queue, s3_client=mocked_aws["s3"])
    with TestClient(app) as client:
        yield client
