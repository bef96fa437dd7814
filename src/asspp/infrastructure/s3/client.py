from __future__ import annotations

import boto3
from botocore.config import Config

from src.setup.storage_config import StorageSettings


def build_s3_client(settings: StorageSettings, *, timeout_seconds: float = 60.0):
    """Create a boto3 S3 client for an S3-compatible bucket such as R2."""
    return boto3.client(
        "s3",
        endpoint_url=settings.S3_ENDPOINT,
        aws_access_key_id=settings.S3_ACCESS_KEY,
        aws_secret_access_key=settings.S3_SECRET_KEY,
        region_name=settings.S3_REGION,
        config=Config(
            signature_version="s3v4",
            connect_timeout=timeout_seconds,
            read_timeout=timeout_seconds,
            retries={"max_attempts": 2, "mode": "standard"},
        ),
    )
