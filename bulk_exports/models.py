"""Data models for export jobs, schedules and API keys."""

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional, Union
from uuid import UUID

from pydantic import BaseModel, Field, field_validator, model_validator

IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    """Export job lifecycle states."""

    QUEUED = "QUEUED"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class ExportFormat(str, Enum):
    """Output encodings an export can be produced in."""

    CSV = "csv"
    XLSX = "xlsx"
    JSON = "json"


class ApiKeyScope(str, Enum):
    """Permission tier of an API key."""

    READ = "READ"
    WRITE = "WRITE"
    ADMIN = "ADMIN"


class RetryPolicy(BaseModel):
    """Attempt budget and exponential backoff for an export job."""

    max_attempts: int = Field(3, ge=1)
    base_delay_seconds: float = Field(1.0, ge=0)
    multiplier: float = Field(2.0, ge=1)
    max_delay_seconds: float = Field(3600.0, ge=0)

    def delay_for_attempt(self, attempt: int) -> float:
        """
        Backoff before the attempt that follows ``attempt``.

        Args:
            attempt: The 1-indexed attempt that just failed

        Returns:
            Delay in seconds: base * multiplier^(attempt-1), capped
        """
        delay = self.base_delay_seconds * (self.multiplier ** (attempt - 1))
        return min(delay, self.max_delay_seconds)

    def has_attempts_left(self, attempts_made: int) -> bool:
        return attempts_made < self.max_attempts


class ExportQuery(BaseModel):
    """Source query parameters carried in an export job's payload."""

    source: Optional[str] = None
    columns: Optional[List[str]] = None
    filters: Dict[str, Union[bool, int, float, str, None]] = Field(default_factory=dict)
    order_by: str = "id"
    data: Optional[List[Dict[str, Any]]] = None
    sheet_name: str = "Export"
    delimiter: str = ","
    include_bom: bool = False

    @field_validator("delimiter")
    @classmethod
    def _single_character_delimiter(cls, value: str) -> str:
        if len(value) != 1:
            raise ValueError("delimiter must be a single character")
        return value

    @model_validator(mode="after")
    def _check_source_query(self) -> "ExportQuery":
        # Inline data is exported as supplied; relational sources build SQL
        # from these names, so they must be plain identifiers.
        if self.data is not None:
            return self
        if not self.source:
            raise ValueError("either source or data is required")
        names = list(self.filters) + [self.order_by] + list(self.columns or [])
        for name in names:
            if not IDENTIFIER_RE.match(name):
                raise ValueError(f"invalid column name: {name!r}")
        return self


class ProgressUpdate(NamedTuple):
    """Progress of one export attempt; ``percent`` is None when indeterminate."""

    percent: Optional[int]
    records: int


class ExportResult:
    """Outcome of a completed export."""

    def __init__(
        self,
        key: str,
        size: int,
        record_count: int,
        format: str,
        content_type: str,
        etag: Optional[str] = None,
    ):
        self.key = key
        self.size = size
        self.record_count = record_count
        self.format = format
        self.content_type = content_type
        self.etag = etag

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "size": self.size,
            "record_count": self.record_count,
            "format": self.format,
            "content_type": self.content_type,
            "etag": self.etag,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExportResult":
        return cls(
            key=data["key"],
            size=data["size"],
            record_count=data["record_count"],
            format=data["format"],
            content_type=data["content_type"],
            etag=data.get("etag"),
        )


class ExportJob:
    """Represents an export job record."""

    def __init__(
        self,
        id: UUID,
        customer_id: str,
        format: ExportFormat,
        query: Dict[str, Any],
        status: JobStatus,
        progress: int,
        records_processed: int,
        attempts: int,
        max_attempts: int,
        retry_policy: Dict[str, Any],
        run_at: datetime,
        priority: int = 0,
        lease_expires_at: Optional[datetime] = None,
        cancel_requested: bool = False,
        result: Optional[Dict[str, Any]] = None,
        error: Optional[Dict[str, Any]] = None,
        schedule_id: Optional[UUID] = None,
        started_at: Optional[datetime] = None,
        completed_at: Optional[datetime] = None,
        created_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None,
    ):
        self.id = id
        self.customer_id = customer_id
        self.format = ExportFormat(format) if isinstance(format, str) else format
        self.query = query
        self.status = JobStatus(status) if isinstance(status, str) else status
        self.progress = progress
        self.records_processed = records_processed
        self.attempts = attempts
        self.max_attempts = max_attempts
        self.retry_policy = retry_policy
        self.run_at = run_at
        self.priority = priority
        self.lease_expires_at = lease_expires_at
        self.cancel_requested = cancel_requested
        self.result = result
        self.error = error
        self.schedule_id = schedule_id
        self.started_at = started_at
        self.completed_at = completed_at
        self.created_at = created_at
        self.updated_at = updated_at

    @property
    def export_query(self) -> ExportQuery:
        return ExportQuery.model_validate(self.query)

    @property
    def policy(self) -> RetryPolicy:
        data = dict(self.retry_policy or {})
        data["max_attempts"] = self.max_attempts
        return RetryPolicy(**data)

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED)

    def to_dict(self) -> Dict[str, Any]:
        """Convert job to dictionary for JSON serialization."""
        return {
            "id": str(self.id),
            "customer_id": self.customer_id,
            "format": self.format.value,
            "query": self.query,
            "status": self.status.value,
            "progress": self.progress,
            "records_processed": self.records_processed,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "retry_policy": self.retry_policy,
            "run_at": self.run_at.isoformat() if self.run_at else None,
            "priority": self.priority,
            "cancel_requested": self.cancel_requested,
            "result": self.result,
            "error": self.error,
            "schedule_id": str(self.schedule_id) if self.schedule_id else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": (
                self.completed_at.isoformat() if self.completed_at else None
            ),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class ExportSchedule:
    """Represents a saved recurring export definition."""

    def __init__(
        self,
        id: UUID,
        customer_id: str,
        name: str,
        cron_expr: str,
        format: ExportFormat,
        payload: Dict[str, Any],
        is_active: bool,
        next_run_at: Optional[datetime],
        last_run_at: Optional[datetime] = None,
        created_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None,
    ):
        self.id = id
        self.customer_id = customer_id
        self.name = name
        self.cron_expr = cron_expr
        self.format = ExportFormat(format) if isinstance(format, str) else format
        self.payload = payload
        self.is_active = is_active
        self.next_run_at = next_run_at
        self.last_run_at = last_run_at
        self.created_at = created_at
        self.updated_at = updated_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "customer_id": self.customer_id,
            "name": self.name,
            "cron_expr": self.cron_expr,
            "format": self.format.value,
            "payload": self.payload,
            "is_active": self.is_active,
            "next_run_at": self.next_run_at.isoformat() if self.next_run_at else None,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class ApiKey:
    """Resolved API key presented with a request."""

    def __init__(
        self,
        id: str,
        customer_id: str,
        scope: ApiKeyScope,
        is_revoked: bool = False,
        expires_at: Optional[datetime] = None,
    ):
        self.id = id
        self.customer_id = customer_id
        self.scope = ApiKeyScope(scope) if isinstance(scope, str) else scope
        self.is_revoked = is_revoked
        self.expires_at = expires_at

    def is_usable(self, now: Optional[datetime] = None) -> bool:
        if self.is_revoked:
            return False
        if self.expires_at is None:
            return True
        return self.expires_at > (now or utc_now())
