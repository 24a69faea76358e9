"""Database store layer for export jobs and schedules."""

import json
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

import asyncpg

from bulk_exports.errors import JobNotFoundError, ScheduleClaimConflict, ScheduleNotFoundError
from bulk_exports.models import ExportFormat, ExportJob, ExportSchedule, JobStatus


def _load_json(value: Any) -> Any:
    return json.loads(value) if isinstance(value, str) else value


def _rows_affected(status: str) -> int:
    # asyncpg returns a command tag such as "UPDATE 5"
    return int(status.split()[-1]) if status else 0


class JobStore:
    """Database layer for export job operations."""

    def __init__(self, db_pool: asyncpg.Pool):
        self.db_pool = db_pool

    async def insert_job(
        self,
        id: UUID,
        customer_id: str,
        format: ExportFormat,
        query: Dict[str, Any],
        max_attempts: int,
        retry_policy: Dict[str, Any],
        run_at: datetime,
        priority: int = 0,
        schedule_id: Optional[UUID] = None,
    ) -> ExportJob:
        """Insert a new QUEUED export job."""
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO export_jobs (
                    id, customer_id, format, query, status, progress,
                    records_processed, priority, run_at, attempts,
                    max_attempts, retry_policy, schedule_id
                ) VALUES ($1, $2, $3, $4, $5, 0, 0, $6, $7, 0, $8, $9, $10)
                RETURNING *
                """,
                id,
                customer_id,
                ExportFormat(format).value,
                json.dumps(query),
                JobStatus.QUEUED.value,
                priority,
                run_at,
                max_attempts,
                json.dumps(retry_policy),
                schedule_id,
            )
        return self._row_to_job(row)

    async def get_job(self, job_id: UUID, customer_id: Optional[str] = None) -> ExportJob:
        """Get a job by ID, optionally scoped to a customer."""
        query = "SELECT * FROM export_jobs WHERE id = $1"
        params: List[Any] = [job_id]
        if customer_id is not None:
            query += " AND customer_id = $2"
            params.append(customer_id)

        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(query, *params)

        if not row:
            raise JobNotFoundError(str(job_id))
        return self._row_to_job(row)

    async def list_jobs(
        self,
        customer_id: str,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[ExportJob]:
        """List a customer's jobs, newest first."""
        query = "SELECT * FROM export_jobs WHERE customer_id = $1"
        params: List[Any] = [customer_id]
        param_idx = 2

        if status:
            query += f" AND status = ${param_idx}"
            params.append(status)
            param_idx += 1

        query += f" ORDER BY created_at DESC LIMIT ${param_idx} OFFSET ${param_idx + 1}"
        params.extend([limit, offset])

        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(query, *params)
        return [self._row_to_job(row) for row in rows]

    async def count_queued_jobs(self, customer_id: str) -> int:
        """Count a customer's jobs that have not started or are between attempts."""
        async with self.db_pool.acquire() as conn:
            return await conn.fetchval(
                "SELECT COUNT(*) FROM export_jobs WHERE customer_id = $1 AND status = $2",
                customer_id,
                JobStatus.QUEUED.value,
            )

    async def claim_jobs(
        self, limit: int, now: datetime, lease_expires_at: datetime
    ) -> List[ExportJob]:
        """
        Atomically claim due QUEUED jobs for one worker.

        Uses FOR UPDATE SKIP LOCKED so concurrent workers never claim the same
        job. Claiming starts a new attempt: attempts is incremented and the
        progress counters reset.
        """
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(
                """
                UPDATE export_jobs
                SET status = $1,
                    attempts = attempts + 1,
                    progress = 0,
                    records_processed = 0,
                    lease_expires_at = $2,
                    started_at = $3,
                    updated_at = now()
                WHERE id IN (
                    SELECT id FROM export_jobs
                    WHERE status = $4
                      AND run_at <= $3
                    ORDER BY priority ASC, run_at ASC
                    LIMIT $5
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING *
                """,
                JobStatus.PROCESSING.value,
                lease_expires_at,
                now,
                JobStatus.QUEUED.value,
                limit,
            )
        return [self._row_to_job(row) for row in rows]

    async def heartbeat(
        self, job_id: UUID, attempts: int, lease_expires_at: datetime
    ) -> Optional[bool]:
        """
        Extend the lease of a running attempt.

        Returns:
            Whether cancellation was requested, or None if the attempt no
            longer owns the job
        """
        async with self.db_pool.acquire() as conn:
            return await conn.fetchval(
                """
                UPDATE export_jobs
                SET lease_expires_at = $3, updated_at = now()
                WHERE id = $1 AND attempts = $2 AND status = $4
                RETURNING cancel_requested
                """,
                job_id,
                attempts,
                lease_expires_at,
                JobStatus.PROCESSING.value,
            )

    async def update_progress(
        self,
        job_id: UUID,
        attempts: int,
        progress: Optional[int],
        records_processed: int,
    ) -> None:
        """Record progress; stored values never decrease within an attempt."""
        async with self.db_pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE export_jobs
                SET progress = GREATEST(progress, COALESCE($3::int, progress)),
                    records_processed = GREATEST(records_processed, $4),
                    updated_at = now()
                WHERE id = $1 AND attempts = $2 AND status = $5
                """,
                job_id,
                attempts,
                progress,
                records_processed,
                JobStatus.PROCESSING.value,
            )

    async def mark_completed(
        self, job_id: UUID, attempts: int, result: Dict[str, Any]
    ) -> bool:
        """Mark an attempt's job as COMPLETED with its result."""
        async with self.db_pool.acquire() as conn:
            status = await conn.execute(
                """
                UPDATE export_jobs
                SET status = $3,
                    progress = 100,
                    records_processed = $4,
                    result = $5,
                    error = NULL,
                    lease_expires_at = NULL,
                    completed_at = now(),
                    updated_at = now()
                WHERE id = $1 AND attempts = $2 AND status = $6
                """,
                job_id,
                attempts,
                JobStatus.COMPLETED.value,
                result.get("record_count", 0),
                json.dumps(result),
                JobStatus.PROCESSING.value,
            )
        return _rows_affected(status) == 1

    async def mark_retry(
        self, job_id: UUID, attempts: int, error: Dict[str, Any], run_at: datetime
    ) -> bool:
        """Put a failed attempt's job back in the queue, due at ``run_at``."""
        async with self.db_pool.acquire() as conn:
            status = await conn.execute(
                """
                UPDATE export_jobs
                SET status = $3,
                    error = $4,
                    run_at = $5,
                    lease_expires_at = NULL,
                    updated_at = now()
                WHERE id = $1 AND attempts = $2 AND status = $6
                """,
                job_id,
                attempts,
                JobStatus.QUEUED.value,
                json.dumps(error),
                run_at,
                JobStatus.PROCESSING.value,
            )
        return _rows_affected(status) == 1

    async def mark_failed(self, job_id: UUID, attempts: int, error: Dict[str, Any]) -> bool:
        """Mark an attempt's job as permanently FAILED."""
        async with self.db_pool.acquire() as conn:
            status = await conn.execute(
                """
                UPDATE export_jobs
                SET status = $3,
                    error = $4,
                    lease_expires_at = NULL,
                    completed_at = now(),
                    updated_at = now()
                WHERE id = $1 AND attempts = $2 AND status = $5
                """,
                job_id,
                attempts,
                JobStatus.FAILED.value,
                json.dumps(error),
                JobStatus.PROCESSING.value,
            )
        return _rows_affected(status) == 1

    async def request_cancel(
        self, job_id: UUID, customer_id: str, error: Dict[str, Any]
    ) -> ExportJob:
        """
        Cancel a job.

        A QUEUED job fails immediately with ``error``; a PROCESSING job is
        flagged so its running attempt stops. Finished jobs are returned
        unchanged.
        """
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE export_jobs
                SET cancel_requested = TRUE,
                    status = CASE WHEN status = $3 THEN $4 ELSE status END,
                    error = CASE WHEN status = $3 THEN $5::jsonb ELSE error END,
                    completed_at = CASE WHEN status = $3 THEN now() ELSE completed_at END,
                    updated_at = now()
                WHERE id = $1 AND customer_id = $2 AND status IN ($3, $6)
                RETURNING *
                """,
                job_id,
                customer_id,
                JobStatus.QUEUED.value,
                JobStatus.FAILED.value,
                json.dumps(error),
                JobStatus.PROCESSING.value,
            )
        if row:
            return self._row_to_job(row)
        return await self.get_job(job_id, customer_id=customer_id)

    async def revert_expired_leases(self, now: datetime) -> int:
        """
        Recover jobs whose worker stopped heartbeating.

        Jobs with attempts left go back to QUEUED; the rest, and cancelled
        ones, become FAILED. Returns the number of jobs changed.
        """
        async with self.db_pool.acquire() as conn:
            requeued = await conn.execute(
                """
                UPDATE export_jobs
                SET status = $1,
                    lease_expires_at = NULL,
                    run_at = $3,
                    error = jsonb_build_object(
                        'kind', 'lease_expired',
                        'message', 'Lease expired - worker may have crashed'
                    ),
                    updated_at = now()
                WHERE status = $2
                  AND lease_expires_at < $3
                  AND attempts < max_attempts
                  AND NOT cancel_requested
                """,
                JobStatus.QUEUED.value,
                JobStatus.PROCESSING.value,
                now,
            )

            failed = await conn.execute(
                """
                UPDATE export_jobs
                SET status = $1,
                    lease_expires_at = NULL,
                    error = CASE WHEN cancel_requested
                        THEN jsonb_build_object('kind', 'cancelled', 'message', 'Export cancelled on request')
                        ELSE jsonb_build_object('kind', 'lease_expired', 'message', 'Lease expired after max attempts')
                    END,
                    completed_at = now(),
                    updated_at = now()
                WHERE status = $2
                  AND lease_expires_at < $3
                """,
                JobStatus.FAILED.value,
                JobStatus.PROCESSING.value,
                now,
            )

        return _rows_affected(requeued) + _rows_affected(failed)

    async def prune_finished_jobs(self, keep_completed: int, keep_failed: int) -> int:
        """Delete all but the newest COMPLETED and FAILED jobs across the queue."""
        async with self.db_pool.acquire() as conn:
            status = await conn.execute(
                """
                DELETE FROM export_jobs
                WHERE id IN (
                    SELECT id FROM (
                        SELECT id, status,
                               row_number() OVER (
                                   PARTITION BY status
                                   ORDER BY completed_at DESC, id
                               ) AS rn
                        FROM export_jobs
                        WHERE status IN ($1, $2)
                    ) ranked
                    WHERE (status = $1 AND rn > $3)
                       OR (status = $2 AND rn > $4)
                )
                """,
                JobStatus.COMPLETED.value,
                JobStatus.FAILED.value,
                keep_completed,
                keep_failed,
            )
        return _rows_affected(status)

    def _row_to_job(self, row: asyncpg.Record) -> ExportJob:
        """Convert a database row to an ExportJob model."""
        return ExportJob(
            id=row["id"],
            customer_id=row["customer_id"],
            format=ExportFormat(row["format"]),
            query=_load_json(row["query"]),
            status=JobStatus(row["status"]),
            progress=row["progress"],
            records_processed=row["records_processed"],
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            retry_policy=_load_json(row["retry_policy"]),
            run_at=row["run_at"],
            priority=row["priority"],
            lease_expires_at=row["lease_expires_at"],
            cancel_requested=row["cancel_requested"],
            result=_load_json(row["result"]),
            error=_load_json(row["error"]),
            schedule_id=row["schedule_id"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


SCHEDULE_UPDATABLE_FIELDS = ("name", "cron_expr", "format", "payload", "is_active", "next_run_at")


class ScheduleStore:
    """Database layer for export schedules."""

    def __init__(self, db_pool: asyncpg.Pool):
        self.db_pool = db_pool

    async def insert_schedule(
        self,
        id: UUID,
        customer_id: str,
        name: str,
        cron_expr: str,
        format: ExportFormat,
        payload: Dict[str, Any],
        is_active: bool,
        next_run_at: Optional[datetime],
    ) -> ExportSchedule:
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO export_schedules (
                    id, customer_id, name, cron_expr, format, payload,
                    is_active, next_run_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                RETURNING *
                """,
                id,
                customer_id,
                name,
                cron_expr,
                ExportFormat(format).value,
                json.dumps(payload),
                is_active,
                next_run_at,
            )
        return self._row_to_schedule(row)

    async def get_schedule(
        self, schedule_id: UUID, customer_id: Optional[str] = None
    ) -> ExportSchedule:
        query = "SELECT * FROM export_schedules WHERE id = $1"
        params: List[Any] = [schedule_id]
        if customer_id is not None:
            query += " AND customer_id = $2"
            params.append(customer_id)

        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(query, *params)

        if not row:
            raise ScheduleNotFoundError(str(schedule_id))
        return self._row_to_schedule(row)

    async def list_schedules(
        self, customer_id: str, limit: int = 50, offset: int = 0
    ) -> List[ExportSchedule]:
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM export_schedules
                WHERE customer_id = $1
                ORDER BY created_at DESC
                LIMIT $2 OFFSET $3
                """,
                customer_id,
                limit,
                offset,
            )
        return [self._row_to_schedule(row) for row in rows]

    async def update_schedule(
        self, schedule_id: UUID, customer_id: str, changes: Dict[str, Any]
    ) -> ExportSchedule:
        """Apply ``changes`` (a subset of the updatable fields) to a schedule."""
        assignments = []
        params: List[Any] = [schedule_id, customer_id]
        for field in SCHEDULE_UPDATABLE_FIELDS:
            if field not in changes:
                continue
            value = changes[field]
            if field == "payload":
                value = json.dumps(value)
            elif field == "format":
                value = ExportFormat(value).value
            params.append(value)
            assignments.append(f"{field} = ${len(params)}")

        if not assignments:
            return await self.get_schedule(schedule_id, customer_id=customer_id)

        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE export_schedules
                SET {", ".join(assignments)}, updated_at = now()
                WHERE id = $1 AND customer_id = $2
                RETURNING *
                """,
                *params,
            )

        if not row:
            raise ScheduleNotFoundError(str(schedule_id))
        return self._row_to_schedule(row)

    async def delete_schedule(self, schedule_id: UUID, customer_id: str) -> None:
        async with self.db_pool.acquire() as conn:
            status = await conn.execute(
                "DELETE FROM export_schedules WHERE id = $1 AND customer_id = $2",
                schedule_id,
                customer_id,
            )
        if _rows_affected(status) == 0:
            raise ScheduleNotFoundError(str(schedule_id))

    async def get_due_schedules(self, now: datetime, limit: int = 100) -> List[ExportSchedule]:
        """Active schedules whose next run is at or before ``now``."""
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM export_schedules
                WHERE is_active AND next_run_at <= $1
                ORDER BY next_run_at ASC
                LIMIT $2
                """,
                now,
                limit,
            )
        return [self._row_to_schedule(row) for row in rows]

    async def claim_schedule(
        self,
        schedule_id: UUID,
        expected_next_run_at: datetime,
        fired_at: datetime,
        next_run_at: datetime,
    ) -> ExportSchedule:
        """
        Atomically take ownership of one due firing of a schedule.

        Succeeds only if the schedule is still active and its next run is
        still ``expected_next_run_at``, so at most one evaluator wins.

        Raises:
            ScheduleClaimConflict: If the firing was already claimed
        """
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE export_schedules
                SET last_run_at = $3, next_run_at = $4, updated_at = now()
                WHERE id = $1 AND is_active AND next_run_at = $2
                RETURNING *
                """,
                schedule_id,
                expected_next_run_at,
                fired_at,
                next_run_at,
            )
        if not row:
            raise ScheduleClaimConflict(str(schedule_id))
        return self._row_to_schedule(row)

    def _row_to_schedule(self, row: asyncpg.Record) -> ExportSchedule:
        return ExportSchedule(
            id=row["id"],
            customer_id=row["customer_id"],
            name=row["name"],
            cron_expr=row["cron_expr"],
            format=ExportFormat(row["format"]),
            payload=_load_json(row["payload"]),
            is_active=row["is_active"],
            next_run_at=row["next_run_at"],
            last_run_at=row["last_run_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
