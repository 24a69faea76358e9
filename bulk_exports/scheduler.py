"""Schedule trigger and maintenance loop."""

import asyncio
import logging
from datetime import datetime
from typing import Optional

import asyncpg

from bulk_exports.config import ExportsConfig
from bulk_exports.errors import ScheduleClaimConflict
from bulk_exports.models import utc_now
from bulk_exports.schedules import ScheduleService
from bulk_exports.service import ExportJobService


async def fire_due_schedules(
    job_service: ExportJobService,
    schedule_service: ScheduleService,
    logger: logging.Logger,
    now: Optional[datetime] = None,
) -> int:
    """
    Enqueue one job for every due, active schedule.

    Each schedule is claimed before its job is created, so concurrent
    evaluations of the same firing enqueue at most one job. A failure for
    one schedule is logged and does not stop the others.

    Returns the number of jobs enqueued.
    """
    now = now or utc_now()
    due = await schedule_service.get_due_schedules(now)
    if due:
        logger.info(f"Found {len(due)} due export schedules")

    fired = 0
    for schedule in due:
        try:
            claimed = await schedule_service.claim_schedule(schedule, fired_at=now)
        except ScheduleClaimConflict:
            logger.debug(f"Schedule {schedule.id} already claimed by another trigger")
            continue
        except Exception as e:
            logger.error(f"Failed to claim schedule {schedule.id}: {str(e)}", exc_info=True)
            continue

        try:
            job = await job_service.create_export_job(
                customer_id=schedule.customer_id,
                format=schedule.format,
                query=schedule.payload,
                schedule_id=schedule.id,
            )
        except Exception as e:
            logger.error(
                f"Schedule {schedule.id} fired but its export could not be enqueued: {str(e)}",
                exc_info=True,
            )
            continue

        fired += 1
        logger.info(
            f"Schedule {schedule.id} fired job {job.id}; next run "
            f"{claimed.next_run_at.isoformat() if claimed.next_run_at else 'none'}"
        )
    return fired


async def run_maintenance(job_service: ExportJobService, logger: logging.Logger) -> None:
    """Recover abandoned attempts and prune old job records."""
    try:
        await job_service.revert_expired_leases()
    except Exception as e:
        logger.error(f"Error in lease reaper: {str(e)}", exc_info=True)
    try:
        await job_service.prune_finished_jobs()
    except Exception as e:
        logger.error(f"Error pruning export jobs: {str(e)}", exc_info=True)


async def run_scheduler_loop(
    config: ExportsConfig,
    db_pool: asyncpg.Pool,
    logger: logging.Logger,
    loop_interval_seconds: float = 60,
    maintenance_interval_seconds: float = 60,
    shutdown_event: asyncio.Event = None,
    job_service: Optional[ExportJobService] = None,
    schedule_service: Optional[ScheduleService] = None,
) -> None:
    """
    Run the scheduler loop that fires due schedules.

    Args:
        config: Exports configuration
        db_pool: Database connection pool
        logger: Logger instance
        loop_interval_seconds: Time to sleep between iterations
        maintenance_interval_seconds: Time between lease reaper / pruning runs
        shutdown_event: Optional event to signal shutdown
        job_service: Optional pre-built job service
        schedule_service: Optional pre-built schedule service
    """
    job_service = job_service or ExportJobService(config, db_pool, logger)
    schedule_service = schedule_service or ScheduleService(config, db_pool, logger)

    logger.info("Starting scheduler loop")

    last_maintenance: Optional[datetime] = None

    while True:
        if shutdown_event and shutdown_event.is_set():
            logger.info("Shutdown signal received, exiting scheduler loop")
            break

        try:
            now = utc_now()
            if (
                last_maintenance is None
                or (now - last_maintenance).total_seconds() >= maintenance_interval_seconds
            ):
                await run_maintenance(job_service, logger)
                last_maintenance = now

            await fire_due_schedules(job_service, schedule_service, logger, now=now)
        except Exception as e:
            logger.error(f"Error in scheduler loop: {str(e)}", exc_info=True)

        await _sleep_until_shutdown(loop_interval_seconds, shutdown_event)


async def _sleep_until_shutdown(seconds: float, shutdown_event: Optional[asyncio.Event]) -> None:
    if shutdown_event is None:
        await asyncio.sleep(seconds)
        return
    try:
        await asyncio.wait_for(shutdown_event.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        pass
