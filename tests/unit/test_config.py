"""Unit tests for configuration module."""

import json

import pytest

from bulk_exports.config import MIN_PART_SIZE_BYTES, ExportsConfig


def test_config_from_env_minimal(monkeypatch):
    """Test creating config from minimal environment variables."""
    monkeypatch.setenv("EXPORTS_DB_DSN", "postgresql://localhost/test")
    monkeypatch.setenv("EXPORTS_S3_BUCKET", "customer-exports")

    config = ExportsConfig.from_env()

    assert config.db_dsn == "postgresql://localhost/test"
    assert config.s3_bucket == "customer-exports"
    assert config.worker_concurrency == 5  # default
    assert config.part_size_bytes == 8 * 1024 * 1024  # default
    assert config.max_attempts == 3  # default
    assert config.max_queued_per_customer is None
    assert config.sources == {}


def test_config_from_env_with_overrides(monkeypatch):
    """Test creating config with tuning variables."""
    monkeypatch.setenv("EXPORTS_DB_DSN", "postgresql://localhost/test")
    monkeypatch.setenv("EXPORTS_S3_BUCKET", "customer-exports")
    monkeypatch.setenv("EXPORTS_S3_ENDPOINT_URL", "http://localhost:4566")
    monkeypatch.setenv("EXPORTS_WORKER_CONCURRENCY", "8")
    monkeypatch.setenv("EXPORTS_PAGE_SIZE", "500")
    monkeypatch.setenv("EXPORTS_BACKOFF_BASE_SECONDS", "2.5")
    monkeypatch.setenv("EXPORTS_JOB_TIMEOUT_SECONDS", "900")
    monkeypatch.setenv("EXPORTS_MAX_QUEUED_PER_CUSTOMER", "4")
    monkeypatch.setenv("EXPORTS_SOURCES", json.dumps({"orders": "public.orders"}))

    config = ExportsConfig.from_env()

    assert config.s3_endpoint_url == "http://localhost:4566"
    assert config.worker_concurrency == 8
    assert config.page_size == 500
    assert config.backoff_base_seconds == 2.5
    assert config.job_timeout_seconds == 900.0
    assert config.max_queued_per_customer == 4
    assert config.table_for_source("orders") == "public.orders"
    assert config.table_for_source("payroll") is None


def test_config_from_env_missing_dsn(monkeypatch):
    monkeypatch.delenv("EXPORTS_DB_DSN", raising=False)

    with pytest.raises(ValueError, match="EXPORTS_DB_DSN"):
        ExportsConfig.from_env()


def test_config_from_env_missing_bucket(monkeypatch):
    monkeypatch.setenv("EXPORTS_DB_DSN", "postgresql://localhost/test")
    monkeypatch.delenv("EXPORTS_S3_BUCKET", raising=False)

    with pytest.raises(ValueError, match="EXPORTS_S3_BUCKET"):
        ExportsConfig.from_env()


@pytest.mark.parametrize("value", ["not json", "[1, 2]"])
def test_config_from_env_invalid_sources(monkeypatch, value):
    monkeypatch.setenv("EXPORTS_SOURCES", value)

    with pytest.raises(ValueError, match="EXPORTS_SOURCES"):
        ExportsConfig.from_env()


def test_config_from_env_invalid_integer(monkeypatch):
    monkeypatch.setenv("EXPORTS_PAGE_SIZE", "lots")

    with pytest.raises(ValueError, match="EXPORTS_PAGE_SIZE must be an integer"):
        ExportsConfig.from_env()


def test_part_size_below_storage_minimum_rejected():
    with pytest.raises(ValueError, match="S3 minimum part size"):
        ExportsConfig("postgresql://localhost/test", "bucket", part_size_bytes=MIN_PART_SIZE_BYTES - 1)


def test_retry_policy_from_config():
    config = ExportsConfig(
        "postgresql://localhost/test",
        "bucket",
        max_attempts=5,
        backoff_base_seconds=10,
        backoff_multiplier=3,
    )

    policy = config.retry_policy()

    assert policy.max_attempts == 5
    assert policy.delay_for_attempt(1) == 10
    assert policy.delay_for_attempt(2) == 30
