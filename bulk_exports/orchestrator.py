"""Export orchestration: cursor -> transformer -> encoder -> uploader."""

import asyncio
import concurrent.futures
import logging
import threading
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from bulk_exports.config import ExportsConfig
from bulk_exports.cursor import (
    DEFAULT_FETCH_RETRIES,
    DEFAULT_RETRY_DELAY_SECONDS,
    CursorReader,
    RecordSource,
)
from bulk_exports.encoders import RowEncoder, create_encoder
from bulk_exports.errors import (
    Cancelled,
    EncodingError,
    ExportFailure,
    ExportTimeout,
    InvalidExportRequest,
    PipelineError,
    StageStalled,
)
from bulk_exports.models import ExportJob, ExportResult, ProgressUpdate
from bulk_exports.registry import encoder_registry
from bulk_exports.storage import build_export_key
from bulk_exports.transform import transform_record
from bulk_exports.uploader import MultipartUpload, StreamingUploader

ProgressCallback = Callable[[ProgressUpdate], Awaitable[None]]

STAGE_READ = "read"
STAGE_ENCODE = "encode"
STAGE_UPLOAD = "upload"

_END = object()


class AttemptState(str, Enum):
    """Lifecycle of one export attempt."""

    INIT = "INIT"
    READING = "READING"
    STREAMING = "STREAMING"
    FINALIZING = "FINALIZING"
    DONE = "DONE"
    FAILED = "FAILED"


class ProgressThrottle:
    """
    Rate-limits progress reports and keeps them non-decreasing.

    A report is due when either ``interval_seconds`` have passed or
    ``record_interval`` records were added since the last report.
    """

    def __init__(
        self,
        estimated_total: Optional[int],
        interval_seconds: float,
        record_interval: int,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.estimated_total = estimated_total
        self.interval_seconds = interval_seconds
        self.record_interval = record_interval
        self._clock = clock
        self._last_time: Optional[float] = None
        self._last_records = 0
        self._last_percent = 0

    def percent_for(self, records: int) -> Optional[int]:
        if self.estimated_total is None:
            return None
        if self.estimated_total <= 0:
            return 100
        return min(100, records * 100 // self.estimated_total)

    def update(self, records: int) -> Optional[ProgressUpdate]:
        """Progress to report for ``records`` emitted, or None if not due."""
        now = self._clock()
        due = (
            self._last_time is None
            or now - self._last_time >= self.interval_seconds
            or records - self._last_records >= self.record_interval
        )
        if not due:
            return None
        return self._emit(records, now)

    def final(self, records: int) -> ProgressUpdate:
        """Unthrottled report for the end of the attempt."""
        return self._emit(records, self._clock())

    def _emit(self, records: int, now: float) -> ProgressUpdate:
        percent = self.percent_for(records)
        if percent is not None:
            percent = max(percent, self._last_percent)
            self._last_percent = percent
        self._last_time = now
        self._last_records = records
        return ProgressUpdate(percent, records)


class _Aborted(Exception):
    """Unwinds the encoder thread after the attempt has already failed."""


class _PartWriter:
    """
    Write-only byte sink that cuts encoder output into upload parts.

    Not seekable, so zip writers stream through it.
    """

    def __init__(self, part_size: int, emit: Callable[[bytes], None]):
        self.part_size = part_size
        self._emit = emit
        self._buffer = bytearray()
        self.bytes_written = 0

    def write(self, data: bytes) -> int:
        self._buffer.extend(data)
        self.bytes_written += len(data)
        while len(self._buffer) >= self.part_size:
            part = bytes(self._buffer[: self.part_size])
            del self._buffer[: self.part_size]
            self._emit(part)
        return len(data)

    def flush(self) -> None:
        pass

    def close(self) -> None:
        if self._buffer:
            part = bytes(self._buffer)
            self._buffer.clear()
            self._emit(part)


class ExportOrchestrator:
    """Runs export attempts end to end."""

    def __init__(
        self,
        uploader: StreamingUploader,
        page_size: int = 1000,
        part_size: int = 8 * 1024 * 1024,
        job_timeout_seconds: float = 3600.0,
        stage_stall_seconds: float = 120.0,
        progress_interval_seconds: float = 1.0,
        progress_record_interval: int = 1000,
        queue_depth: int = 2,
        fetch_retries: int = DEFAULT_FETCH_RETRIES,
        fetch_retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
        logger: Optional[logging.Logger] = None,
    ):
        self.uploader = uploader
        self.page_size = page_size
        self.part_size = part_size
        self.job_timeout_seconds = job_timeout_seconds
        self.stage_stall_seconds = stage_stall_seconds
        self.progress_interval_seconds = progress_interval_seconds
        self.progress_record_interval = progress_record_interval
        self.queue_depth = queue_depth
        self.fetch_retries = fetch_retries
        self.fetch_retry_delay_seconds = fetch_retry_delay_seconds
        self.logger = logger or logging.getLogger(__name__)

    @classmethod
    def from_config(
        cls,
        config: ExportsConfig,
        uploader: StreamingUploader,
        logger: Optional[logging.Logger] = None,
    ) -> "ExportOrchestrator":
        return cls(
            uploader,
            page_size=config.page_size,
            part_size=config.part_size_bytes,
            job_timeout_seconds=config.job_timeout_seconds,
            stage_stall_seconds=config.stage_stall_seconds,
            progress_interval_seconds=config.progress_interval_seconds,
            progress_record_interval=config.progress_record_interval,
            logger=logger,
        )

    async def run(
        self,
        job: ExportJob,
        source: RecordSource,
        on_progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ExportResult:
        """
        Run one export attempt from the beginning of the source.

        Reading, encoding and uploading run concurrently, connected by
        bounded queues. Encoding runs in a worker thread.

        Args:
            job: The job being executed
            source: Where the records come from
            on_progress: Awaited with throttled progress updates
            cancel_event: When set, the attempt stops with ``Cancelled``

        Returns:
            The committed export result

        Raises:
            ExportFailure: Classified failure; the upload has been aborted
        """
        attempt = _ExportAttempt(self, job, source, on_progress, cancel_event)
        return await attempt.execute()


class _ExportAttempt:
    """State of one pipelined export attempt."""

    def __init__(
        self,
        orchestrator: ExportOrchestrator,
        job: ExportJob,
        source: RecordSource,
        on_progress: Optional[ProgressCallback],
        cancel_event: Optional[asyncio.Event],
    ):
        self.orchestrator = orchestrator
        self.job = job
        try:
            self.query = job.export_query
        except ValueError as e:
            raise InvalidExportRequest(f"Invalid export query: {e}") from e
        self.on_progress = on_progress
        self.cancel_event = cancel_event
        self.logger = orchestrator.logger
        self.reader = CursorReader(
            source,
            orchestrator.page_size,
            max_retries=orchestrator.fetch_retries,
            retry_delay_seconds=orchestrator.fetch_retry_delay_seconds,
            logger=self.logger,
        )
        self.encoder_cls = encoder_registry.get_encoder(job.format)
        if self.encoder_cls is None:
            raise EncodingError(f"No encoder registered for format {job.format}")
        self.key = build_export_key(job.customer_id, job.id, job.format)

        self.state = AttemptState.INIT
        self.records = 0
        self.throttle: Optional[ProgressThrottle] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._page_queue: Optional[asyncio.Queue] = None
        self._part_queue: Optional[asyncio.Queue] = None
        self._aborted = threading.Event()
        self._blocked: Optional[concurrent.futures.Future] = None
        self._busy_since: Dict[str, Optional[float]] = {
            STAGE_READ: None,
            STAGE_ENCODE: None,
            STAGE_UPLOAD: None,
        }

    def _set_state(self, state: AttemptState) -> None:
        self.logger.debug(f"Export job {self.job.id}: {self.state.value} -> {state.value}")
        self.state = state

    async def execute(self) -> ExportResult:
        self._loop = asyncio.get_running_loop()
        self._page_queue = asyncio.Queue(maxsize=self.orchestrator.queue_depth)
        self._part_queue = asyncio.Queue(maxsize=self.orchestrator.queue_depth)
        watchdog = asyncio.create_task(self._watch(time.monotonic()))
        tasks: Dict[str, asyncio.Task] = {}
        upload: Optional[MultipartUpload] = None

        try:
            self._set_state(AttemptState.READING)
            estimate = await self._guarded(
                self.reader.estimate_total(), STAGE_READ, watchdog
            )
            self.throttle = ProgressThrottle(
                estimate,
                self.orchestrator.progress_interval_seconds,
                self.orchestrator.progress_record_interval,
            )
            self.logger.info(
                f"Export job {self.job.id} started ({self.job.format.value}, "
                f"estimated {estimate if estimate is not None else 'unknown'} records)"
            )

            upload = await self._guarded(
                self.orchestrator.uploader.begin(self.key, self.encoder_cls.content_type),
                STAGE_UPLOAD,
                watchdog,
            )
            tasks = {
                STAGE_READ: asyncio.create_task(self._read()),
                STAGE_ENCODE: asyncio.create_task(asyncio.to_thread(self._encode)),
                STAGE_UPLOAD: asyncio.create_task(self._upload(upload)),
            }
            self._set_state(AttemptState.STREAMING)

            pending = set(tasks.values()) | {watchdog}
            while any(task in pending for task in tasks.values()):
                done, pending = await asyncio.wait(
                    pending, return_when=asyncio.FIRST_COMPLETED
                )
                for task in done:
                    task.result()

            self._set_state(AttemptState.FINALIZING)
            uploaded = await self._guarded(upload.complete(), STAGE_UPLOAD, watchdog)
        except BaseException as e:
            self._set_state(AttemptState.FAILED)
            await self._shutdown(tasks, watchdog)
            if upload is not None:
                await upload.abort()
            if isinstance(e, ExportFailure) or not isinstance(e, Exception):
                raise
            raise PipelineError(f"Export pipeline failed: {e}") from e
        finally:
            watchdog.cancel()

        await self._report(self.throttle.final(self.records))
        self._set_state(AttemptState.DONE)
        self.logger.info(
            f"Export job {self.job.id} uploaded {self.records} records "
            f"({uploaded.size} bytes) to {uploaded.key}"
        )
        return ExportResult(
            key=uploaded.key,
            size=uploaded.size,
            record_count=self.records,
            format=self.job.format.value,
            content_type=self.encoder_cls.content_type,
            etag=uploaded.etag,
        )

    async def _read(self) -> None:
        self._busy(STAGE_READ)
        async for page in self.reader.pages():
            rows = [transform_record(record) for record in page]
            self._idle(STAGE_READ)
            self._check_cancelled()
            await self._page_queue.put(rows)
            self.records += len(rows)
            update = self.throttle.update(self.records)
            if update is not None:
                await self._report(update)
            self._busy(STAGE_READ)
        self._idle(STAGE_READ)
        await self._page_queue.put(_END)

    def _encode(self) -> None:
        """Encoder stage; runs in a worker thread."""
        sink = _PartWriter(self.orchestrator.part_size, self._emit_part)
        encoder: Optional[RowEncoder] = None
        try:
            encoder = create_encoder(self.job.format, sink, self.query)
            while True:
                rows = self._from_loop(self._page_queue.get())
                if rows is _END:
                    break
                self._busy(STAGE_ENCODE)
                encoder.write_rows(rows)
                self._idle(STAGE_ENCODE)
            self._busy(STAGE_ENCODE)
            encoder.close()
            sink.close()
            self._idle(STAGE_ENCODE)
            self._from_loop(self._part_queue.put(_END))
        except (ExportFailure, _Aborted):
            if encoder is not None:
                encoder.abort()
            raise
        except Exception as e:
            if encoder is not None:
                encoder.abort()
            raise EncodingError(f"Failed to encode {self.job.format.value} output: {e}") from e

    def _emit_part(self, part: bytes) -> None:
        self._idle(STAGE_ENCODE)
        self._from_loop(self._part_queue.put(part))
        self._busy(STAGE_ENCODE)

    def _from_loop(self, coro: Awaitable[Any]) -> Any:
        """Run a queue operation on the event loop and wait for it."""
        if self._aborted.is_set():
            coro.close()
            raise _Aborted()
        future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        self._blocked = future
        if self._aborted.is_set():
            future.cancel()
        try:
            return future.result()
        except concurrent.futures.CancelledError:
            raise _Aborted() from None
        finally:
            self._blocked = None

    async def _guarded(self, aw: Awaitable[Any], stage: str, watchdog: asyncio.Task) -> Any:
        """Await a single storage or source call while the watchdog runs."""
        task = asyncio.ensure_future(aw)
        self._busy(stage)
        try:
            done, _ = await asyncio.wait(
                {task, watchdog}, return_when=asyncio.FIRST_COMPLETED
            )
            if watchdog in done:
                watchdog.result()
            return task.result()
        finally:
            self._idle(stage)
            if not task.done():
                task.cancel()
                await asyncio.wait([task])

    async def _upload(self, upload: MultipartUpload) -> None:
        while True:
            part = await self._part_queue.get()
            if part is _END:
                return
            self._check_cancelled()
            self._busy(STAGE_UPLOAD)
            await upload.upload_part(part)
            self._idle(STAGE_UPLOAD)

    async def _watch(self, started: float) -> None:
        timeout = self.orchestrator.job_timeout_seconds
        stall = self.orchestrator.stage_stall_seconds
        tick = max(0.01, min(1.0, stall / 4, timeout / 4))
        while True:
            await asyncio.sleep(tick)
            self._check_cancelled()
            now = time.monotonic()
            if now - started > timeout:
                raise ExportTimeout(f"Export exceeded its {timeout:.0f}s time budget")
            for stage, since in list(self._busy_since.items()):
                if since is not None and now - since > stall:
                    raise StageStalled(stage, now - since)

    async def _shutdown(self, tasks: Dict[str, asyncio.Task], watchdog: asyncio.Task) -> None:
        """Stop every stage after a failure."""
        self._aborted.set()
        blocked = self._blocked
        if blocked is not None:
            blocked.cancel()

        others = [task for name, task in tasks.items() if name != STAGE_ENCODE]
        for task in others + [watchdog]:
            task.cancel()
        await asyncio.wait(others + [watchdog])

        # The encoder thread cannot be cancelled; it exits at its next queue call.
        encode_task = tasks.get(STAGE_ENCODE)
        if encode_task is None:
            still_running = set()
        else:
            _, still_running = await asyncio.wait(
                [encode_task], timeout=self.orchestrator.stage_stall_seconds
            )
        if still_running:
            self.logger.error(f"Export job {self.job.id}: encoder thread did not stop")

        for task in list(tasks.values()) + [watchdog]:
            if task.done() and not task.cancelled() and task.exception() is not None:
                self.logger.debug(
                    f"Export job {self.job.id}: stage ended with {task.exception()!r}"
                )

    async def _report(self, update: ProgressUpdate) -> None:
        if self.on_progress is None:
            return
        try:
            await self.on_progress(update)
        except Exception as e:
            self.logger.warning(f"Progress callback failed for job {self.job.id}: {e}")

    def _check_cancelled(self) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise Cancelled()

    def _busy(self, stage: str) -> None:
        self._busy_since[stage] = time.monotonic()

    def _idle(self, stage: str) -> None:
        self._busy_since[stage] = None
