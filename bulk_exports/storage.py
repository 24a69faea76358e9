"""Object storage helpers: export keys, clients and download URLs."""

from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple

import boto3

from bulk_exports.config import ExportsConfig
from bulk_exports.models import ExportFormat, utc_now

EXPORT_KEY_PREFIX = "exports"


def build_export_key(customer_id: str, job_id: Any, format: ExportFormat) -> str:
    """Object key for a job's output: exports/{customer_id}/{job_id}.{ext}."""
    return f"{EXPORT_KEY_PREFIX}/{customer_id}/{job_id}.{ExportFormat(format).value}"


def s3_client_kwargs(config: ExportsConfig) -> Dict[str, Any]:
    """Keyword arguments shared by the sync and async S3 clients."""
    kwargs: Dict[str, Any] = {}
    if config.s3_endpoint_url:
        kwargs["endpoint_url"] = config.s3_endpoint_url
    if config.s3_region:
        kwargs["region_name"] = config.s3_region
    return kwargs


def create_s3_client(config: ExportsConfig):
    """Create a boto3 S3 client, used for signing download URLs."""
    return boto3.client("s3", **s3_client_kwargs(config))


class DownloadUrlSigner:
    """Signs time-limited GET URLs for completed exports."""

    def __init__(self, s3_client: Any, bucket: str, ttl_seconds: int = 3600):
        self.s3_client = s3_client
        self.bucket = bucket
        self.ttl_seconds = ttl_seconds

    def sign(self, key: str, now: Optional[datetime] = None) -> Tuple[str, datetime]:
        """
        Create a presigned download URL.

        Returns:
            The URL and the time it stops working
        """
        url = self.s3_client.generate_presigned_url(
            "get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=self.ttl_seconds,
        )
        expires_at = (now or utc_now()) + timedelta(seconds=self.ttl_seconds)
        return url, expires_at
