"""High-level service layer for export job operations."""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union
from uuid import UUID, uuid4

import asyncpg

from bulk_exports.config import ExportsConfig
from bulk_exports.errors import Cancelled, QuotaExceededError
from bulk_exports.models import (
    ExportFormat,
    ExportJob,
    ExportQuery,
    ExportResult,
    JobStatus,
    ProgressUpdate,
    utc_now,
)
from bulk_exports.storage import DownloadUrlSigner
from bulk_exports.store import JobStore


class ExportJobService:
    """High-level API for export jobs."""

    def __init__(
        self,
        config: ExportsConfig,
        db_pool: Optional[asyncpg.Pool] = None,
        logger: Optional[logging.Logger] = None,
        store: Optional[JobStore] = None,
        url_signer: Optional[DownloadUrlSigner] = None,
    ):
        self.config = config
        self.store = store or JobStore(db_pool)
        self.logger = logger or logging.getLogger(__name__)
        self.url_signer = url_signer

    async def create_export_job(
        self,
        *,
        customer_id: str,
        format: ExportFormat,
        query: Union[ExportQuery, Dict[str, Any]],
        priority: int = 0,
        run_at: Optional[datetime] = None,
        schedule_id: Optional[UUID] = None,
    ) -> ExportJob:
        """
        Enqueue a new export job.

        Args:
            customer_id: Owning customer
            format: Output format
            query: Source query parameters, or inline records under ``data``
            priority: Lower values run first
            run_at: Earliest start time (defaults to now)
            schedule_id: The schedule that fired this job, if any

        Returns:
            ExportJob: The QUEUED job

        Raises:
            ValueError: If the query is invalid or names an unknown source
            QuotaExceededError: If the customer has too many queued exports
        """
        if not isinstance(query, ExportQuery):
            query = ExportQuery.model_validate(query)
        if query.data is None and self.config.table_for_source(query.source) is None:
            raise ValueError(f"Unknown export source: {query.source}")

        await self._check_quota(customer_id)

        policy = self.config.retry_policy()
        job = await self.store.insert_job(
            id=uuid4(),
            customer_id=customer_id,
            format=ExportFormat(format),
            query=query.model_dump(mode="json", exclude_none=True),
            max_attempts=policy.max_attempts,
            retry_policy=policy.model_dump(),
            run_at=run_at or utc_now(),
            priority=priority,
            schedule_id=schedule_id,
        )

        self.logger.info(
            f"Enqueued export job {job.id} for customer {customer_id} ({job.format.value})"
        )
        return job

    async def get_job(self, job_id: UUID, customer_id: Optional[str] = None) -> ExportJob:
        """Get a job by ID."""
        return await self.store.get_job(job_id, customer_id=customer_id)

    async def get_job_status(
        self, job_id: UUID, customer_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Status view of a job.

        Completed jobs include a time-limited download URL when a signer is
        configured.
        """
        job = await self.store.get_job(job_id, customer_id=customer_id)
        status: Dict[str, Any] = {
            "id": str(job.id),
            "status": job.status.value,
            "progress": job.progress,
            "records_processed": job.records_processed,
            "attempts": job.attempts,
            "format": job.format.value,
            "created_at": job.created_at.isoformat() if job.created_at else None,
            "completed_at": job.completed_at.isoformat() if job.completed_at else None,
        }
        if job.status == JobStatus.COMPLETED and job.result:
            status["result"] = job.result
            if self.url_signer is not None:
                url, expires_at = self.url_signer.sign(job.result["key"])
                status["download_url"] = url
                status["download_expires_at"] = expires_at.isoformat()
        if job.status == JobStatus.FAILED and job.error:
            status["error"] = job.error
        return status

    async def list_jobs(
        self,
        customer_id: str,
        *,
        status: Optional[JobStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[ExportJob]:
        """List a customer's jobs, newest first."""
        return await self.store.list_jobs(
            customer_id,
            status=JobStatus(status).value if status else None,
            limit=limit,
            offset=offset,
        )

    async def cancel_job(self, job_id: UUID, customer_id: str) -> ExportJob:
        """
        Request cancellation of a job.

        A QUEUED job fails right away; a PROCESSING job stops at its next
        stage boundary.
        """
        job = await self.store.request_cancel(job_id, customer_id, Cancelled().to_dict())
        self.logger.info(f"Cancellation requested for export job {job_id} (now {job.status.value})")
        return job

    async def claim_jobs(self, max_count: int) -> List[ExportJob]:
        """Atomically claim up to ``max_count`` due jobs, leasing them to this worker."""
        if max_count <= 0:
            return []
        now = utc_now()
        lease_expires_at = now + timedelta(seconds=self.config.lease_seconds)
        return await self.store.claim_jobs(max_count, now, lease_expires_at)

    async def heartbeat(self, job: ExportJob) -> Optional[bool]:
        """Renew a running attempt's lease; returns the cancel flag, or None if lost."""
        lease_expires_at = utc_now() + timedelta(seconds=self.config.lease_seconds)
        return await self.store.heartbeat(job.id, job.attempts, lease_expires_at)

    async def update_progress(self, job: ExportJob, update: ProgressUpdate) -> None:
        await self.store.update_progress(job.id, job.attempts, update.percent, update.records)

    async def mark_completed(self, job: ExportJob, result: ExportResult) -> bool:
        stored = await self.store.mark_completed(job.id, job.attempts, result.to_dict())
        if stored:
            self.logger.info(f"Export job {job.id} completed ({result.record_count} records)")
        else:
            self.logger.warning(f"Export job {job.id} attempt {job.attempts} no longer owns the job")
        return stored

    async def mark_retry(
        self, job: ExportJob, error: Dict[str, Any], backoff_seconds: float
    ) -> bool:
        """Re-queue a job after a failed attempt, due after ``backoff_seconds``."""
        next_run_at = utc_now() + timedelta(seconds=backoff_seconds)
        stored = await self.store.mark_retry(job.id, job.attempts, error, next_run_at)
        if stored:
            self.logger.info(f"Export job {job.id} scheduled for retry at {next_run_at.isoformat()}")
        return stored

    async def mark_failed(self, job: ExportJob, error: Dict[str, Any]) -> bool:
        """Mark a job as permanently failed."""
        stored = await self.store.mark_failed(job.id, job.attempts, error)
        if stored:
            self.logger.error(f"Export job {job.id} failed after {job.attempts} attempts")
        return stored

    async def revert_expired_leases(self) -> int:
        """
        Revert jobs with expired leases.

        This should be called periodically to recover from worker crashes.
        Returns the number of jobs reverted.
        """
        count = await self.store.revert_expired_leases(utc_now())
        if count > 0:
            self.logger.info(f"Reverted {count} export jobs with expired leases")
        return count

    async def prune_finished_jobs(self) -> int:
        """Delete finished jobs beyond the retention counts."""
        count = await self.store.prune_finished_jobs(
            self.config.keep_completed, self.config.keep_failed
        )
        if count > 0:
            self.logger.info(f"Pruned {count} finished export jobs")
        return count

    async def _check_quota(self, customer_id: str) -> None:
        """Check whether the customer may queue another export."""
        limit = self.config.max_queued_per_customer
        if limit is None:
            return

        queued = await self.store.count_queued_jobs(customer_id)
        if queued >= limit:
            raise QuotaExceededError(customer_id, limit)
