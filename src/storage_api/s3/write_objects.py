"""Functions for writing objects to an S3 bucket--the "C" and "U" in CRUD."""

from typing import BinaryIO, Optional

from storage_api.aws_clients import get_s3_client

try:
    from mypy_boto3_s3 import S3Client
except ImportError:
    ...

# Objects at or below this size are sent with a single PutObject.
SINGLE_PUT_MAX_BYTES = 8 * 1024 * 1024


def upload_s3_object(
    bucket_name: str,
    object_key: str,
    file_content: bytes,
    content_type: Optional[str] = None,
    s3_client: Optional["S3Client"] = None,
) -> None:
    """
    Upload a file to an S3 bucket.

    :param bucket_name: The name of the S3 bucket.
    :param object_key: path to the object in the S3 bucket.
    :param file_content: The content of the file to upload.
    :param content_type: The MIME type of the file, e.g. "text/plain" for a text file.
    :param s3_client: An optional boto3 S3 client. If not provided, one will be created.
    """
    content_type = content_type or "application/octet-stream"
    s3_client = s3_client or get_s3_client()
    s3_client.put_object(
        Bucket=bucket_name,
        Key=object_key,
        Body=file_content,
        ContentType=content_type,
    )


def upload_s3_object_stream(
    bucket_name: str,
    object_key: str,
    stream: BinaryIO,
    content_length: int,
    content_type: Optional[str] = None,
    s3_client: Optional["S3Client"] = None,
) -> None:
    """
    Write a byte stream of known length to an S3 bucket.

    Small objects go out in one PutObject carrying the declared length; larger
    ones are handed to the managed transfer so they are never held in memory.
    """
    content_type = content_type or "application/octet-stream"
    s3_client = s3_client or get_s3_client()
    if content_length <= SINGLE_PUT_MAX_BYTES:
        s3_client.put_object(
            Bucket=bucket_name,
            Key=object_key,
            Body=stream.read(),
            ContentLength=content_length,
            ContentType=content_type,
        )
    else:
        s3_client.upload_fileobj(
            Fileobj=stream,
            Bucket=bucket_name,
            Key=object_key,
            ExtraArgs={"ContentType": content_type},
        )


def generate_presigned_upload_url(
    bucket_name: str,
    object_key: str,
    expiry_seconds: int,
    content_type: Optional[str] = None,
    s3_client: Optional["S3Client"] = None,
) -> str:
    """Time-limited PUT URL the client uploads the object bytes to."""
    s3_client = s3_client or get_s3_client()
    params = {"Bucket": bucket_name, "Key": object_key}
    if content_type:
        params["ContentType"] = content_type
    return s3_client.generate_presigned_url(
        ClientMethod="put_object",
        Params=params,
        ExpiresIn=expiry_seconds,
    )
