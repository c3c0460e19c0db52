"""AWS client management for primary storage, the job queue, metrics and the backup provider."""
import logging
import os
from functools import lru_cache
from typing import Any, Dict, Optional

import boto3
from botocore.config import Config

from storage_api.settings import LOCAL_MODES, Settings, get_settings

logger = logging.getLogger(__name__)

BACKUP_S3_SERVICE = "backup-s3"


class AWSClientManager:
    """Creates and caches boto3 clients configured from one Settings instance."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.region = self.settings.aws_region
        self.endpoint_url = self.settings.aws_endpoint_url
        self.mode = self.settings.deployment_mode
        self._clients: Dict[str, Any] = {}

        logger.info("Initializing AWSClientManager")
        logger.info(f"  Mode: {self.mode}")
        logger.info(f"  Region: {self.region}")
        logger.info(f"  Endpoint: {self.endpoint_url}")

    def get_client(self, service_name: str, config: Optional[Config] = None) -> Any:
        """Get or create an AWS service client."""
        if config is None and service_name in self._clients:
            return self._clients[service_name]

        client_kwargs = {
            'region_name': self.region
        }

        # Check for AWS profile in environment (for SSO)
        aws_profile = os.environ.get('AWS_PROFILE')
        if aws_profile and self.mode == 'aws-prod':
            try:
                session = boto3.Session(profile_name=aws_profile)
                client = session.client(service_name, region_name=self.region, config=config)
                if config is None:
                    self._clients[service_name] = client
                logger.debug(f"Created {service_name} client using profile: {aws_profile}")
                return client
            except Exception as e:
                logger.warning(f"Failed to create client with profile {aws_profile}: {e}")

        if self.settings.aws_access_key_id:
            client_kwargs['aws_access_key_id'] = self.settings.aws_access_key_id
        if self.settings.aws_secret_access_key:
            client_kwargs['aws_secret_access_key'] = self.settings.aws_secret_access_key

        # Add endpoint URL for local/mock modes
        if self.endpoint_url and self.mode in LOCAL_MODES:
            client_kwargs['endpoint_url'] = self.endpoint_url

        if config is not None:
            client_kwargs['config'] = config

        try:
            client = boto3.client(service_name, **client_kwargs)
        except Exception as e:
            logger.error(f"Error creating {service_name} client: {str(e)}")
            raise
        if config is None:
            self._clients[service_name] = client
        logger.debug(f"Created {service_name} client")
        return client

    def get_backup_s3_client(self) -> Any:
        """S3-compatible client for the secondary provider."""
        if BACKUP_S3_SERVICE in self._clients:
            return self._clients[BACKUP_S3_SERVICE]

        kwargs = self.settings.backup_client_kwargs()
        # Third-party S3-compatible stores reject the newer default checksum trailers.
        kwargs['config'] = Config(
            request_checksum_calculation="when_required",
            response_checksum_validation="when_required",
        )
        client = boto3.client('s3', **kwargs)
        self._clients[BACKUP_S3_SERVICE] = client
        logger.info(
            "Created backup S3 client (endpoint=%s, bucket=%s)",
            kwargs.get('endpoint_url'), self.settings.backup_bucket_name
        )
        return client

    def clear_clients(self):
        """Clear all cached clients."""
        self._clients.clear()
        logger.debug("Cleared all AWS clients")


@lru_cache()
def get_client_manager() -> AWSClientManager:
    """Client manager bound to the process-wide settings."""
    return AWSClientManager(get_settings())


def get_s3_client():
    """Get the primary storage S3 client."""
    return get_client_manager().get_client('s3')


def get_sqs_client():
    """Get the SQS client."""
    return get_client_manager().get_client('sqs')


def get_cloudwatch_client():
    """Get the CloudWatch client."""
    return get_client_manager().get_client('cloudwatch')
