"""
S3 access for logo assets and bulk run archives.

This module provides functionality for:
- Fetching logo assets referenced by overlay descriptors
- Packing a bulk run's output directory into a zip archive
- Uploading archives and handing out presigned download URLs

The bucket comes from ``storage.s3_bucket`` (S3_BUCKET_NAME in the default
config). Without a bucket or credentials every operation degrades to a logged
warning and a None/False result, so local runs work without AWS.
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Any, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger(__name__)


def zip_directory(source_dir: Path, zip_path: Path) -> Path:
    """
    Create a zip archive from a directory.

    Args:
        source_dir: Directory whose contents are archived
        zip_path: Destination, with or without the .zip extension

    Returns:
        Path to the created archive

    Note:
        The archive's root entry is the directory itself, so unpacking
        recreates ``source_dir.name``.
    """
    zip_base = str(zip_path).removesuffix(".zip")
    logger.info(f"Creating zip archive: {zip_base}.zip from {source_dir}")
    archive_path = shutil.make_archive(
        base_name=zip_base,
        format="zip",
        root_dir=source_dir.parent,
        base_dir=source_dir.name,
    )
    return Path(archive_path)


class S3Storage:
    """
    Thin wrapper around a lazily created boto3 S3 client.

    Args:
        bucket: Bucket name; an empty name disables S3
        client: Pre-built client, mainly for tests
    """

    def __init__(self, bucket: str = "", client: Any = None) -> None:
        self.bucket = bucket or ""
        self._client = client

    def _get_client(self):
        if self._client is None:
            if not self.bucket:
                logger.warning("S3 bucket not configured")
                return None
            try:
                self._client = boto3.client("s3")
            except (BotoCoreError, ClientError) as e:
                logger.warning(f"Failed to create S3 client: {e}")
                self._client = None
        return self._client

    def is_configured(self) -> bool:
        return bool(self.bucket) and self._get_client() is not None

    def get_object_bytes(self, key: str) -> Optional[bytes]:
        """
        Download an object into memory.

        Returns:
            Object bytes, or None when S3 is unavailable or the key is missing
        """
        client = self._get_client()
        if client is None:
            return None
        try:
            response = client.get_object(Bucket=self.bucket, Key=key)
            return response["Body"].read()
        except (BotoCoreError, ClientError) as e:
            logger.warning(f"Failed to fetch s3://{self.bucket}/{key}: {e}")
            return None

    def upload_file(self, path: Path, key: str) -> bool:
        client = self._get_client()
        if client is None:
            logger.warning("S3 client not available, skipping upload")
            return False
        try:
            logger.info(f"Uploading {path} to s3://{self.bucket}/{key}")
            client.upload_file(str(path), self.bucket, key)
            return True
        except (BotoCoreError, ClientError) as e:
            logger.error(f"S3 upload failed: {e}")
            return False

    def generate_presigned_url(self, key: str, expiration: int = 3600) -> Optional[str]:
        """
        Presigned GET URL for an object.

        Note:
            Anyone holding the URL can download the object until it expires.
        """
        client = self._get_client()
        if client is None:
            return None
        try:
            return client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=expiration,
            )
        except (BotoCoreError, ClientError) as e:
            logger.error(f"Failed to generate presigned URL: {e}")
            return None
