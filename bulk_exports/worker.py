"""Worker pool that claims export jobs and runs them."""

import asyncio
import logging
from typing import Any, Callable, Optional, Set

import asyncpg

from bulk_exports.config import ExportsConfig
from bulk_exports.cursor import InlineRecordSource, PostgresRecordSource, RecordSource
from bulk_exports.errors import Cancelled, ExportFailure, InvalidExportRequest, PipelineError
from bulk_exports.events import EventPublisher
from bulk_exports.models import ExportJob, ProgressUpdate
from bulk_exports.orchestrator import ExportOrchestrator
from bulk_exports.service import ExportJobService
from bulk_exports.uploader import StreamingUploader

SourceFactory = Callable[[ExportJob], RecordSource]


def make_source_factory(config: ExportsConfig, db_pool: asyncpg.Pool) -> SourceFactory:
    """Build record sources for jobs: inline data, or an allow-listed table."""

    def factory(job: ExportJob) -> RecordSource:
        try:
            query = job.export_query
        except ValueError as e:
            raise InvalidExportRequest(f"Invalid export query: {e}") from e
        if query.data is not None:
            return InlineRecordSource(query.data)
        table = config.table_for_source(query.source)
        if table is None:
            raise InvalidExportRequest(f"Unknown export source: {query.source}")
        return PostgresRecordSource(db_pool, table, job.customer_id, query)

    return factory


async def process_job(
    job: ExportJob,
    job_service: ExportJobService,
    orchestrator: ExportOrchestrator,
    source_factory: SourceFactory,
    logger: logging.Logger,
    events: Optional[EventPublisher] = None,
    heartbeat_interval_seconds: Optional[float] = None,
) -> None:
    """
    Run one claimed attempt of a job and record its outcome.

    Failures are retried with the job's backoff while attempts remain and
    the failure is retryable; otherwise the job becomes FAILED.
    """
    if heartbeat_interval_seconds is None:
        heartbeat_interval_seconds = max(1.0, job_service.config.lease_seconds / 3)
    cancel_event = asyncio.Event()
    heartbeat = asyncio.create_task(
        _heartbeat_loop(job, job_service, cancel_event, heartbeat_interval_seconds, logger)
    )

    async def on_progress(update: ProgressUpdate) -> None:
        await job_service.update_progress(job, update)

    logger.info(
        f"Executing export job {job.id} (format={job.format.value}, "
        f"attempt={job.attempts}/{job.max_attempts})"
    )

    result = None
    failure: Optional[ExportFailure] = None
    try:
        if job.cancel_requested:
            raise Cancelled()
        source = source_factory(job)
        result = await orchestrator.run(
            job, source, on_progress=on_progress, cancel_event=cancel_event
        )
    except ExportFailure as e:
        failure = e
    except Exception as e:
        failure = PipelineError(f"Unexpected error: {e}")
        failure.__cause__ = e
    finally:
        heartbeat.cancel()
        await asyncio.gather(heartbeat, return_exceptions=True)

    if failure is None:
        if await job_service.mark_completed(job, result) and events:
            await events.export_completed(job, result)
        return

    logger.error(
        f"Export job {job.id} attempt {job.attempts} failed: {failure}",
        exc_info=failure,
    )
    error = failure.to_dict()
    error["attempt"] = job.attempts

    policy = job.policy
    if failure.retryable and policy.has_attempts_left(job.attempts):
        backoff_seconds = policy.delay_for_attempt(job.attempts)
        await job_service.mark_retry(job, error, backoff_seconds)
        logger.info(
            f"Export job {job.id} will retry (attempt {job.attempts + 1}/"
            f"{job.max_attempts}) after {backoff_seconds}s"
        )
    elif await job_service.mark_failed(job, error) and events:
        await events.export_failed(job, error)


async def _heartbeat_loop(
    job: ExportJob,
    job_service: ExportJobService,
    cancel_event: asyncio.Event,
    interval_seconds: float,
    logger: logging.Logger,
) -> None:
    """Renew the lease and watch for cancellation while an attempt runs."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            cancel_requested = await job_service.heartbeat(job)
        except Exception as e:
            logger.warning(f"Heartbeat failed for export job {job.id}: {e}")
            continue
        if cancel_requested is None:
            logger.warning(f"Export job {job.id} attempt {job.attempts} lost its lease")
            cancel_event.set()
            return
        if cancel_requested:
            logger.info(f"Export job {job.id} cancellation observed")
            cancel_event.set()
            return


def _job_done_callback(in_flight: Set[asyncio.Task], logger: logging.Logger):
    def done(task: asyncio.Task) -> None:
        in_flight.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                f"Export job task crashed: {task.exception()}", exc_info=task.exception()
            )

    return done


async def process_available_jobs(
    job_service: ExportJobService,
    orchestrator: ExportOrchestrator,
    source_factory: SourceFactory,
    logger: logging.Logger,
    events: Optional[EventPublisher] = None,
    max_jobs: Optional[int] = None,
) -> int:
    """
    Claim due jobs and process them concurrently, once.

    Returns the number of jobs processed.
    """
    jobs = await job_service.claim_jobs(max_jobs or job_service.config.worker_concurrency)
    if not jobs:
        return 0
    await asyncio.gather(
        *(
            process_job(job, job_service, orchestrator, source_factory, logger, events)
            for job in jobs
        )
    )
    return len(jobs)


async def run_worker_loop(
    config: ExportsConfig,
    db_pool: asyncpg.Pool,
    s3_client: Any,
    logger: logging.Logger,
    sqs_client: Any = None,
    poll_interval_seconds: float = 1.0,
    shutdown_event: asyncio.Event = None,
    job_service: Optional[ExportJobService] = None,
    source_factory: Optional[SourceFactory] = None,
) -> None:
    """
    Run the worker loop that claims and executes export jobs.

    Up to ``config.worker_concurrency`` jobs run at once. On shutdown no new
    jobs are claimed and in-flight jobs are allowed to finish.

    Args:
        config: Exports configuration
        db_pool: Database connection pool
        s3_client: Async S3 client (aioboto3)
        logger: Logger instance
        sqs_client: Optional async SQS client for lifecycle events
        poll_interval_seconds: Sleep between claims when idle or saturated
        shutdown_event: Optional event to signal shutdown
        job_service: Optional pre-built job service
        source_factory: Optional record source factory
    """
    job_service = job_service or ExportJobService(config, db_pool, logger)
    source_factory = source_factory or make_source_factory(config, db_pool)
    uploader = StreamingUploader(s3_client, config.s3_bucket, logger)
    orchestrator = ExportOrchestrator.from_config(config, uploader, logger)
    events = EventPublisher(sqs_client, config.notifications_queue_url, logger)
    in_flight: Set[asyncio.Task] = set()

    logger.info(f"Starting export worker (concurrency={config.worker_concurrency})")

    while True:
        if shutdown_event and shutdown_event.is_set():
            logger.info("Shutdown signal received, exiting worker loop")
            break

        claimed = []
        free_slots = config.worker_concurrency - len(in_flight)
        if free_slots > 0:
            try:
                claimed = await job_service.claim_jobs(free_slots)
            except Exception as e:
                logger.error(f"Error claiming export jobs: {str(e)}", exc_info=True)

        for job in claimed:
            task = asyncio.create_task(
                process_job(job, job_service, orchestrator, source_factory, logger, events)
            )
            in_flight.add(task)
            task.add_done_callback(_job_done_callback(in_flight, logger))

        if not claimed:
            await asyncio.sleep(poll_interval_seconds)

    if in_flight:
        logger.info(f"Waiting for {len(in_flight)} in-flight export jobs")
        await asyncio.wait(set(in_flight))
