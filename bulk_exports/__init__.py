"""Streaming bulk exports: CSV, workbook and JSON exports as background jobs."""

from bulk_exports.auth import authorize
from bulk_exports.config import ExportsConfig
from bulk_exports.ddl import ALL_DDL, EXPORT_JOBS_TABLE_DDL, EXPORT_SCHEDULES_TABLE_DDL
from bulk_exports.errors import (
    BulkExportsError,
    Cancelled,
    EncodingError,
    ExportFailure,
    ExportTimeout,
    Forbidden,
    InvalidCronExpression,
    InvalidExportRequest,
    JobNotFoundError,
    PipelineError,
    QuotaExceededError,
    RemoteHttpError,
    ScheduleNotFoundError,
    SourceUnavailable,
    StageStalled,
    Unauthorized,
    UploadFailed,
)
from bulk_exports.models import (
    ApiKey,
    ApiKeyScope,
    ExportFormat,
    ExportJob,
    ExportQuery,
    ExportResult,
    ExportSchedule,
    JobStatus,
    RetryPolicy,
)
from bulk_exports.orchestrator import ExportOrchestrator
from bulk_exports.registry import EncoderRegistry, encoder_registry
from bulk_exports.scheduler import run_scheduler_loop
from bulk_exports.schedules import ScheduleService
from bulk_exports.service import ExportJobService
from bulk_exports.store import JobStore, ScheduleStore
from bulk_exports.uploader import StreamingUploader
from bulk_exports.worker import run_worker_loop
from bulk_exports.worker_main import run_worker

__version__ = "0.1.0"

__all__ = [
    "authorize",
    "ExportsConfig",
    "ALL_DDL",
    "EXPORT_JOBS_TABLE_DDL",
    "EXPORT_SCHEDULES_TABLE_DDL",
    "BulkExportsError",
    "Cancelled",
    "EncodingError",
    "ExportFailure",
    "ExportTimeout",
    "Forbidden",
    "InvalidCronExpression",
    "InvalidExportRequest",
    "JobNotFoundError",
    "PipelineError",
    "QuotaExceededError",
    "RemoteHttpError",
    "ScheduleNotFoundError",
    "SourceUnavailable",
    "StageStalled",
    "Unauthorized",
    "UploadFailed",
    "ApiKey",
    "ApiKeyScope",
    "ExportFormat",
    "ExportJob",
    "ExportQuery",
    "ExportResult",
    "ExportSchedule",
    "JobStatus",
    "RetryPolicy",
    "ExportOrchestrator",
    "EncoderRegistry",
    "encoder_registry",
    "run_scheduler_loop",
    "ScheduleService",
    "ExportJobService",
    "JobStore",
    "ScheduleStore",
    "StreamingUploader",
    "run_worker_loop",
    "run_worker",
]
