"""Functions for reading objects from an S3 bucket--the "R" in CRUD."""

from typing import Optional

from botocore.exceptions import ClientError

from storage_api.aws_clients import get_s3_client

try:
    from mypy_boto3_s3 import S3Client
    from mypy_boto3_s3.type_defs import GetObjectOutputTypeDef, HeadObjectOutputTypeDef
except ImportError:
    ...

MISSING_OBJECT_ERROR_CODES = ("404", "NoSuchKey", "NotFound")


def is_missing_object_error(error: ClientError) -> bool:
    """True when a ClientError means the key does not exist."""
    return error.response.get("Error", {}).get("Code") in MISSING_OBJECT_ERROR_CODES


def object_exists_in_s3(bucket_name: str, object_key: str, s3_client: Optional["S3Client"] = None) -> bool:
    """
    Check if an object exists in the S3 bucket using head_object.

    :param bucket_name: Name of the S3 bucket.
    :param object_key: Key of the object to check.
    :param s3_client: Optional S3 client to use. If not provided, a new client will be created.

    :return: True if the object exists, False otherwise.
    """
    s3_client = s3_client or get_s3_client()
    try:
        s3_client.head_object(Bucket=bucket_name, Key=object_key)
        return True
    except ClientError as err:
        if is_missing_object_error(err):
            return False
        raise


def fetch_s3_object_metadata(
    bucket_name: str,
    object_key: str,
    s3_client: Optional["S3Client"] = None,
) -> "HeadObjectOutputTypeDef":
    """
    Fetch size, content type and etag of an object without downloading it.

    Raises ``botocore.exceptions.ClientError`` (code 404) when the key does not exist.
    """
    s3_client = s3_client or get_s3_client()
    return s3_client.head_object(Bucket=bucket_name, Key=object_key)


def fetch_s3_object(
    bucket_name: str,
    object_key: str,
    s3_client: Optional["S3Client"] = None,
) -> "GetObjectOutputTypeDef":
    """
    Fetch an object from the S3 bucket.

    The response ``Body`` is a streaming body; callers own closing it.
    """
    s3_client = s3_client or get_s3_client()
    return s3_client.get_object(Bucket=bucket_name, Key=object_key)
