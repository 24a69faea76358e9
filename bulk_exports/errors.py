"""Exception types for the bulk exports library."""

from typing import Any, Dict


class BulkExportsError(Exception):
    """Base exception for all bulk exports errors."""

    pass


class ExportFailure(BulkExportsError):
    """
    A classified failure of one export attempt.

    ``kind`` is the machine-readable tag stored on the job record and
    ``retryable`` tells the job queue whether another attempt can help.
    """

    kind = "internal"
    retryable = True

    def to_dict(self) -> Dict[str, Any]:
        """Structured form stored as the job's error."""
        return {"kind": self.kind, "message": str(self)}


class SourceUnavailable(ExportFailure):
    """Raised when the record source keeps failing after page-level retries."""

    kind = "source_unavailable"
    retryable = True


class EncodingError(ExportFailure):
    """Raised when a record cannot be transformed or encoded."""

    kind = "encoding_error"
    retryable = False


class UploadFailed(ExportFailure):
    """Raised when object storage rejects or drops the multipart upload."""

    kind = "upload_failed"
    retryable = True


class Cancelled(ExportFailure):
    """Raised when an export was cancelled on request."""

    kind = "cancelled"
    retryable = False

    def __init__(self, message: str = "Export cancelled on request"):
        super().__init__(message)


class StageStalled(ExportFailure):
    """Raised when a pipeline stage makes no progress for too long."""

    kind = "stalled"
    retryable = True

    def __init__(self, stage: str, seconds: float):
        self.stage = stage
        self.seconds = seconds
        super().__init__(f"Stage {stage} made no progress for {seconds:.0f}s")


class ExportTimeout(ExportFailure):
    """Raised when an attempt exceeds its wall-clock budget."""

    kind = "timeout"
    retryable = True


class InvalidExportRequest(ExportFailure):
    """Raised when a job's parameters cannot be executed at all."""

    kind = "invalid_request"
    retryable = False


class PipelineError(ExportFailure):
    """Unclassified fault inside the export pipeline."""

    kind = "internal"
    retryable = True


class ScheduleClaimConflict(BulkExportsError):
    """Raised when another trigger evaluation already claimed a schedule."""

    def __init__(self, schedule_id: str, message: str = None):
        self.schedule_id = schedule_id
        if message is None:
            message = f"Schedule {schedule_id} was already claimed"
        super().__init__(message)


class Forbidden(BulkExportsError):
    """Raised when an API key's scope does not allow the request method."""

    status_code = 403
    code = "FORBIDDEN"

    def __init__(self, message: str = "Insufficient permissions"):
        super().__init__(message)

    def to_dict(self) -> Dict[str, str]:
        return {"error": str(self), "code": self.code}


class Unauthorized(BulkExportsError):
    """Raised when the API key is missing, unknown, revoked or expired."""

    status_code = 401
    code = "UNAUTHORIZED"

    def __init__(self, message: str = "Invalid or missing API key"):
        super().__init__(message)

    def to_dict(self) -> Dict[str, str]:
        return {"error": str(self), "code": self.code}


class JobNotFoundError(BulkExportsError):
    """Raised when an export job is not found."""

    def __init__(self, job_id: str, message: str = None):
        self.job_id = job_id
        if message is None:
            message = f"Export job {job_id} not found"
        super().__init__(message)


class ScheduleNotFoundError(BulkExportsError):
    """Raised when an export schedule is not found."""

    def __init__(self, schedule_id: str, message: str = None):
        self.schedule_id = schedule_id
        if message is None:
            message = f"Export schedule {schedule_id} not found"
        super().__init__(message)


class QuotaExceededError(BulkExportsError):
    """Raised when a customer already has too many queued exports."""

    def __init__(self, customer_id: str, limit: int, message: str = None):
        self.customer_id = customer_id
        self.limit = limit
        if message is None:
            message = f"Customer {customer_id} already has {limit} queued exports"
        super().__init__(message)


class InvalidCronExpression(BulkExportsError, ValueError):
    """Raised when a schedule's cron expression is invalid or too frequent."""

    pass


class RemoteHttpError(BulkExportsError):
    """Raised when an HTTP request to a remote exports service fails."""

    def __init__(self, status_code: int, message: str, response_body: str = None):
        self.status_code = status_code
        self.response_body = response_body
        super().__init__(f"HTTP {status_code}: {message}")
