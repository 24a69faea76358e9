"""Configuration for the bulk exports platform."""

import json
import os
from typing import Dict, Optional

from bulk_exports.models import RetryPolicy

MIN_PART_SIZE_BYTES = 5 * 1024 * 1024


class ExportsConfig:
    """Configuration object for bulk exports."""

    def __init__(
        self,
        db_dsn: str,
        s3_bucket: str,
        s3_endpoint_url: Optional[str] = None,
        s3_region: Optional[str] = None,
        notifications_queue_url: Optional[str] = None,
        worker_concurrency: int = 5,
        page_size: int = 1000,
        part_size_bytes: int = 8 * 1024 * 1024,
        max_attempts: int = 3,
        backoff_base_seconds: float = 1.0,
        backoff_multiplier: float = 2.0,
        job_timeout_seconds: float = 3600.0,
        stage_stall_seconds: float = 120.0,
        progress_interval_seconds: float = 1.0,
        progress_record_interval: int = 1000,
        lease_seconds: int = 300,
        keep_completed: int = 100,
        keep_failed: int = 50,
        download_url_ttl_seconds: int = 3600,
        min_schedule_interval_seconds: int = 3600,
        max_queued_per_customer: Optional[int] = None,
        sources: Optional[Dict[str, str]] = None,
    ):
        if part_size_bytes < MIN_PART_SIZE_BYTES:
            raise ValueError(
                f"part_size_bytes must be at least {MIN_PART_SIZE_BYTES} "
                f"(S3 minimum part size), got {part_size_bytes}"
            )
        if worker_concurrency < 1:
            raise ValueError("worker_concurrency must be at least 1")
        if page_size < 1:
            raise ValueError("page_size must be at least 1")

        self.db_dsn = db_dsn
        self.s3_bucket = s3_bucket
        self.s3_endpoint_url = s3_endpoint_url
        self.s3_region = s3_region
        self.notifications_queue_url = notifications_queue_url
        self.worker_concurrency = worker_concurrency
        self.page_size = page_size
        self.part_size_bytes = part_size_bytes
        self.max_attempts = max_attempts
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_multiplier = backoff_multiplier
        self.job_timeout_seconds = job_timeout_seconds
        self.stage_stall_seconds = stage_stall_seconds
        self.progress_interval_seconds = progress_interval_seconds
        self.progress_record_interval = progress_record_interval
        self.lease_seconds = lease_seconds
        self.keep_completed = keep_completed
        self.keep_failed = keep_failed
        self.download_url_ttl_seconds = download_url_ttl_seconds
        self.min_schedule_interval_seconds = min_schedule_interval_seconds
        self.max_queued_per_customer = max_queued_per_customer
        self.sources = sources or {}

    @classmethod
    def from_env(cls) -> "ExportsConfig":
        """Create config from environment variables."""
        db_dsn = os.getenv("EXPORTS_DB_DSN")
        if not db_dsn:
            raise ValueError("EXPORTS_DB_DSN environment variable is required")

        s3_bucket = os.getenv("EXPORTS_S3_BUCKET")
        if not s3_bucket:
            raise ValueError("EXPORTS_S3_BUCKET environment variable is required")

        sources_str = os.getenv("EXPORTS_SOURCES")
        sources = None
        if sources_str:
            try:
                sources = json.loads(sources_str)
            except json.JSONDecodeError as e:
                raise ValueError(f"Invalid JSON in EXPORTS_SOURCES: {e}") from e
            if not isinstance(sources, dict):
                raise ValueError("EXPORTS_SOURCES must be a JSON object")

        max_queued = os.getenv("EXPORTS_MAX_QUEUED_PER_CUSTOMER")

        return cls(
            db_dsn=db_dsn,
            s3_bucket=s3_bucket,
            s3_endpoint_url=os.getenv("EXPORTS_S3_ENDPOINT_URL"),
            s3_region=os.getenv("EXPORTS_S3_REGION"),
            notifications_queue_url=os.getenv("EXPORTS_NOTIFICATIONS_QUEUE_URL"),
            worker_concurrency=_int_env("EXPORTS_WORKER_CONCURRENCY", 5),
            page_size=_int_env("EXPORTS_PAGE_SIZE", 1000),
            part_size_bytes=_int_env("EXPORTS_PART_SIZE_BYTES", 8 * 1024 * 1024),
            max_attempts=_int_env("EXPORTS_MAX_ATTEMPTS", 3),
            backoff_base_seconds=_float_env("EXPORTS_BACKOFF_BASE_SECONDS", 1.0),
            backoff_multiplier=_float_env("EXPORTS_BACKOFF_MULTIPLIER", 2.0),
            job_timeout_seconds=_float_env("EXPORTS_JOB_TIMEOUT_SECONDS", 3600.0),
            stage_stall_seconds=_float_env("EXPORTS_STAGE_STALL_SECONDS", 120.0),
            progress_interval_seconds=_float_env(
                "EXPORTS_PROGRESS_INTERVAL_SECONDS", 1.0
            ),
            progress_record_interval=_int_env("EXPORTS_PROGRESS_RECORD_INTERVAL", 1000),
            lease_seconds=_int_env("EXPORTS_LEASE_SECONDS", 300),
            keep_completed=_int_env("EXPORTS_KEEP_COMPLETED", 100),
            keep_failed=_int_env("EXPORTS_KEEP_FAILED", 50),
            download_url_ttl_seconds=_int_env("EXPORTS_DOWNLOAD_URL_TTL_SECONDS", 3600),
            min_schedule_interval_seconds=_int_env(
                "EXPORTS_MIN_SCHEDULE_INTERVAL_SECONDS", 3600
            ),
            max_queued_per_customer=(
                _int_env("EXPORTS_MAX_QUEUED_PER_CUSTOMER", 0) if max_queued else None
            ),
            sources=sources,
        )

    def retry_policy(self) -> RetryPolicy:
        """Default retry policy for newly created jobs."""
        return RetryPolicy(
            max_attempts=self.max_attempts,
            base_delay_seconds=self.backoff_base_seconds,
            multiplier=self.backoff_multiplier,
        )

    def table_for_source(self, source: str) -> Optional[str]:
        """Get the table backing an allow-listed source name."""
        return self.sources.get(source)


def _int_env(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError as e:
        raise ValueError(f"{name} must be an integer, got {value!r}") from e


def _float_env(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError as e:
        raise ValueError(f"{name} must be a number, got {value!r}") from e
