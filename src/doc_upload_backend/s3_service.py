"""
S3 storage for uploaded documents and rendered page images.

This module provides functionality for:
- Uploading stored documents and rendered images to S3
- Generating presigned URLs for secure, time-limited downloads
- Deleting a document's objects when the document is removed

The bucket name comes from ``storage.s3_bucket`` (``AWS_S3_BUCKET_NAME``).
When running locally without a bucket or AWS credentials, S3 operations are
skipped gracefully and the backend keeps working from local storage.
"""

from __future__ import annotations

import logging
from pathlib import Path
from threading import Lock
from typing import Any, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError

logger = logging.getLogger(__name__)


class S3Storage:
    """
    Owner of the boto3 S3 client used by one application instance.

    The client is created lazily on first use, so constructing the storage
    never touches the network and tests can pass a stub ``client``.

    Attributes:
        bucket: Target bucket name; empty disables S3
        prefix: Key prefix under which documents are stored
    """

    def __init__(self, bucket: str, prefix: str = "documents", client: Any = None) -> None:
        self.bucket = bucket or ""
        self.prefix = prefix.strip("/")
        self._client = client
        self._lock = Lock()

    def _get_client(self):
        """
        Get or create the S3 client.

        Returns:
            boto3 S3 client or None if bucket is not configured

        Note:
            Credentials are not probed here; credential errors surface during
            the actual upload operations.
        """
        if not self.bucket:
            return None
        with self._lock:
            if self._client is None:
                try:
                    self._client = boto3.client("s3")
                except (BotoCoreError, ValueError) as e:
                    logger.warning(f"Failed to create S3 client: {e}")
                    self._client = None
            return self._client

    @property
    def is_configured(self) -> bool:
        """True if a bucket is configured and a client could be created."""
        return bool(self.bucket) and self._get_client() is not None

    def document_key(self, document_id: str, file_name: str) -> str:
        """Object key for a file belonging to a document, e.g. ``documents/<id>/notes.pdf``."""
        return f"{self.prefix}/{document_id}/{file_name}" if self.prefix else f"{document_id}/{file_name}"

    def object_url(self, key: str) -> str:
        return f"s3://{self.bucket}/{key}"

    def upload_file(self, path: Path, key: str, content_type: Optional[str] = None) -> bool:
        """
        Upload a local file to S3.

        Args:
            path: File to upload
            key: S3 object key
            content_type: MIME type stored with the object

        Returns:
            True if upload was successful, False otherwise
        """
        client = self._get_client()
        if client is None:
            logger.warning("S3 not configured, skipping upload")
            return False

        extra_args = {"ContentType": content_type} if content_type else None
        try:
            logger.info(f"Uploading {path} to s3://{self.bucket}/{key}")
            client.upload_file(str(path), self.bucket, key, ExtraArgs=extra_args)
            logger.info(f"Upload successful: s3://{self.bucket}/{key}")
            return True
        except (ClientError, NoCredentialsError) as e:
            logger.error(f"S3 upload failed: {e}")
            return False

    def generate_presigned_url(self, key: str, expiration: int = 3600) -> Optional[str]:
        """
        Generate a presigned URL for downloading an object.

        Args:
            key: S3 object key
            expiration: URL expiration time in seconds (default: 3600 = 1 hour)

        Returns:
            Presigned URL string, or None if generation fails
        """
        client = self._get_client()
        if client is None:
            logger.warning("S3 not configured")
            return None

        try:
            url = client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=expiration,
            )
            logger.info(f"Generated presigned URL for {key} (expires in {expiration}s)")
            return url
        except (ClientError, NoCredentialsError) as e:
            logger.error(f"Failed to generate presigned URL: {e}")
            return None

    def delete_document_objects(self, document_id: str) -> int:
        """
        Delete every object stored under a document's key prefix.

        Returns:
            Number of objects deleted (0 when S3 is not configured)
        """
        client = self._get_client()
        if client is None:
            return 0

        prefix = self.document_key(document_id, "")
        deleted = 0
        try:
            response = client.list_objects_v2(Bucket=self.bucket, Prefix=prefix)
            keys = [{"Key": item["Key"]} for item in response.get("Contents", [])]
            if keys:
                client.delete_objects(Bucket=self.bucket, Delete={"Objects": keys})
                deleted = len(keys)
            logger.info(f"Deleted {deleted} objects under s3://{self.bucket}/{prefix}")
        except (ClientError, NoCredentialsError) as e:
            logger.error(f"Failed to delete objects under {prefix}: {e}")
        return deleted
