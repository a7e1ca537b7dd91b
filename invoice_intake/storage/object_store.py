"""Thin wrapper around a boto3 S3 client.

Works against AWS S3 and S3-compatible services such as Cloudflare R2
or MinIO by pointing ``endpoint_url`` at them.
"""

from dataclasses import dataclass

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

from invoice_intake.utils.config import StorageConfig
from invoice_intake.utils.logger import get_logger

logger = get_logger(__name__)

_MISSING_BUCKET_CODES = {"NoSuchBucket", "404"}


@dataclass
class StoredObject:
    """Listing entry for one object."""

    key: str
    size: int


def build_s3_client(config: StorageConfig):
    """Create an S3 client for the configured endpoint.

    Credentials left unset fall through to boto3's default chain
    (environment, shared config, instance role).
    """
    return boto3.client(
        "s3",
        endpoint_url=config.endpoint_url,
        region_name=config.region,
        aws_access_key_id=config.access_key_id,
        aws_secret_access_key=config.secret_access_key,
        config=Config(signature_version="s3v4", retries={"max_attempts": 3, "mode": "standard"}),
    )


def error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


class ObjectStore:
    """Blob operations on tenant buckets.

    Args:
        client: A boto3 S3 client.
        auto_create_bucket: Create a missing bucket on first upload
            instead of failing.
    """

    def __init__(self, client, auto_create_bucket: bool = True) -> None:
        self.client = client
        self.auto_create_bucket = auto_create_bucket

    def list_keys(self, bucket: str, prefix: str = "") -> list[StoredObject]:
        """Every object under ``prefix``, following pagination."""
        paginator = self.client.get_paginator("list_objects_v2")
        objects: list[StoredObject] = []
        for page in paginator.paginate(Bucket=bucket, Prefix=prefix):
            for entry in page.get("Contents", []):
                objects.append(StoredObject(key=entry["Key"], size=int(entry.get("Size", 0))))
        logger.debug("Listed %d objects in %s/%s", len(objects), bucket, prefix)
        return objects

    def get(self, bucket: str, key: str) -> bytes:
        response = self.client.get_object(Bucket=bucket, Key=key)
        return response["Body"].read()

    def put(
        self,
        bucket: str,
        key: str,
        body: bytes,
        content_type: str = "application/octet-stream",
    ) -> None:
        """Upload an object, creating the bucket once if it does not exist.

        Raises:
            ClientError: If the upload fails for any other reason, or the
                retry after creating the bucket fails.
        """
        try:
            self._put(bucket, key, body, content_type)
        except ClientError as exc:
            if not self.auto_create_bucket or error_code(exc) not in _MISSING_BUCKET_CODES:
                raise
            logger.warning("Bucket %s does not exist, creating it", bucket)
            self.create_bucket(bucket)
            self._put(bucket, key, body, content_type)

    def move(self, bucket: str, source_key: str, destination_key: str) -> None:
        """Copy then delete; the copy is left behind if the delete fails."""
        self.client.copy_object(
            Bucket=bucket,
            Key=destination_key,
            CopySource={"Bucket": bucket, "Key": source_key},
        )
        self.client.delete_object(Bucket=bucket, Key=source_key)
        logger.debug("Moved %s/%s -> %s", bucket, source_key, destination_key)

    def delete(self, bucket: str, key: str) -> None:
        self.client.delete_object(Bucket=bucket, Key=key)

    def create_bucket(self, bucket: str) -> None:
        self.client.create_bucket(Bucket=bucket)
        logger.info("Created bucket %s", bucket)

    def _put(self, bucket: str, key: str, body: bytes, content_type: str) -> None:
        self.client.put_object(Bucket=bucket, Key=key, Body=body, ContentType=content_type)
        logger.debug("Uploaded %d bytes to %s/%s", len(body), bucket, key)
