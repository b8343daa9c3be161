"""
Chunked processing of large dump content.

The processor:
- Splits content into bounded chunks along structural breaks
- Drives every chunk through a caller-supplied processing function
- Runs at most ``max_concurrency`` chunks at once
- Reports progress with a damped ETA after every chunk
- Can be paused, saved, restored into another instance and resumed
- Stops dispatching when its cancellation token fires
"""

import asyncio
import inspect
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Tuple, Union

from ..chunker.service import ContentChunker
from ..core.config import settings
from ..core.exceptions import ChunkProcessingError, IngestionError, ResumeError
from ..core.logging import logger
from ..models.chunk import (
    Chunk,
    ChunkProcessingMetrics,
    ChunkProcessingOptions,
    ChunkStatistics,
    ProcessingProgress,
    ProcessingResult,
    ProcessingState,
    ResumableProcessingState,
)
from .metrics import MovingAverage, PerformanceMetricsCollector

ProcessFn = Callable[[Chunk], Union[Any, Awaitable[Any]]]


@dataclass
class _ChunkRun:
    """Live state of one run; survives pauses."""

    run_id: str
    content: str
    chunks: List[Chunk]
    options: ChunkProcessingOptions
    start_time: float = field(default_factory=time.time)
    errors: List[str] = field(default_factory=list)
    durations: MovingAverage = field(
        default_factory=lambda: MovingAverage(window_size=settings.ETA_WINDOW_SIZE)
    )
    active: int = 0
    peak_active: int = 0
    sequential_ms: float = 0.0
    wall_ms: float = 0.0
    segment_started: Optional[float] = None
    last_percentage: float = 0.0
    failure: Optional[Tuple[Chunk, BaseException]] = None

    @property
    def attempted(self) -> int:
        return sum(1 for c in self.chunks if c.attempted)

    @property
    def failed(self) -> int:
        return sum(1 for c in self.chunks if c.error is not None)

    @property
    def elapsed_ms(self) -> float:
        """Active time across all segments of the run, pauses excluded."""
        if self.segment_started is None:
            return self.wall_ms
        return self.wall_ms + (time.perf_counter() - self.segment_started) * 1000


class ChunkedProcessor:
    """
    Splits content and processes the chunks with bounded parallelism.

    One instance drives one run at a time. After a pause the same instance
    (or a fresh one given the saved state) can resume the run.
    """

    def __init__(
        self,
        chunker: Optional[ContentChunker] = None,
        metrics_collector: Optional[PerformanceMetricsCollector] = None,
    ):
        self.chunker = chunker or ContentChunker()
        self.metrics_collector = metrics_collector
        self._state = ProcessingState.PENDING
        self._pause_requested = False
        self._run: Optional[_ChunkRun] = None
        self._process_fn: Optional[ProcessFn] = None

    @property
    def state(self) -> ProcessingState:
        return self._state

    # ==================== Run control ====================

    async def process_content(
        self,
        content: str,
        process_fn: ProcessFn,
        options: Optional[ChunkProcessingOptions] = None,
    ) -> ProcessingResult:
        """
        Split ``content`` and run ``process_fn`` on every chunk.

        Args:
            content: Text to process
            process_fn: Called with each Chunk; may be sync or async
            options: Chunk size, concurrency, callbacks and policies

        Returns:
            ProcessingResult in state COMPLETED, PAUSED or CANCELLED

        Raises:
            ChunkProcessingError: a chunk failed and continue_on_error is off
        """
        if self._state == ProcessingState.RUNNING:
            raise IngestionError("A processing run is already active on this processor")

        options = options or ChunkProcessingOptions()
        run_id = uuid.uuid4().hex[:8]
        chunks = self.chunker.split(content, options.chunk_size, run_id=run_id)

        self._run = _ChunkRun(run_id=run_id, content=content, chunks=chunks, options=options)
        self._process_fn = process_fn

        if self._pause_requested and not options.enable_resumable:
            logger.warning(f"Ignoring pause request for run {run_id}: resumable processing is disabled")
            self._pause_requested = False

        logger.info(
            f"Starting chunked processing run {run_id}: {len(content)} characters, "
            f"{len(chunks)} chunks, concurrency {options.max_concurrency}"
        )
        return await self._execute(self._run, process_fn)

    def pause_processing(self):
        """
        Ask the active run to pause.

        Dispatch stops, in-flight chunks finish and the run ends in PAUSED.
        Only honoured when the run was started with ``enable_resumable``; a
        request made before the run starts is kept until it does.
        """
        if self._run is not None and self._state == ProcessingState.RUNNING:
            if not self._run.options.enable_resumable:
                logger.warning(f"Pause ignored for run {self._run.run_id}: resumable processing is disabled")
                return
            logger.info(f"Pause requested for run {self._run.run_id}")
        self._pause_requested = True

    async def resume_processing(
        self,
        process_fn: Optional[ProcessFn] = None,
        options: Optional[ChunkProcessingOptions] = None,
    ) -> ProcessingResult:
        """
        Continue a paused run with every chunk that was never attempted.

        Args:
            process_fn: Processing function; defaults to the one the run started with
            options: Replacement options; chunk_size is kept from the original split

        Raises:
            ResumeError: nothing to resume or no processing function available
        """
        run = self._run
        if run is None:
            raise ResumeError("No processing state to resume")
        if self._state != ProcessingState.PAUSED:
            raise ResumeError(
                f"Cannot resume run {run.run_id} from state {self._state.value}",
                details={"run_id": run.run_id, "state": self._state.value},
            )

        process_fn = process_fn or self._process_fn
        if process_fn is None:
            raise ResumeError(
                f"No processing function available to resume run {run.run_id}",
                details={"run_id": run.run_id},
            )

        if options is not None:
            run.options = options.model_copy(update={"chunk_size": run.options.chunk_size})
        self._process_fn = process_fn
        self._pause_requested = False

        remaining = len(run.chunks) - run.attempted
        logger.info(f"Resuming run {run.run_id}: {remaining} of {len(run.chunks)} chunks remaining")
        return await self._execute(run, process_fn)

    # ==================== State save / restore ====================

    def get_processing_state(self) -> Optional[ResumableProcessingState]:
        """Serializable snapshot of the current run, or None if there is none."""
        run = self._run
        if run is None:
            return None

        next_index = next((c.index for c in run.chunks if not c.attempted), len(run.chunks))
        return ResumableProcessingState(
            run_id=run.run_id,
            state=self._state,
            content=run.content,
            options=run.options.serializable(),
            chunks=[c.model_copy(update={"result": None}) for c in run.chunks],
            current_index=next_index,
            start_time=run.start_time,
            saved_at=time.time(),
            errors=list(run.errors),
        )

    def restore_processing_state(self, state: ResumableProcessingState):
        """
        Load a saved run into this processor.

        A run saved while RUNNING is restored as PAUSED: chunks that were in
        flight were never marked attempted and are dispatched again on resume.
        """
        if self._state == ProcessingState.RUNNING:
            raise ResumeError("Cannot restore state while a run is active")

        options = ChunkProcessingOptions.model_validate(state.options)
        chunks = [Chunk.model_validate(c.model_dump()) for c in state.chunks]
        self._run = _ChunkRun(
            run_id=state.run_id,
            content=state.content,
            chunks=chunks,
            options=options,
            start_time=state.start_time,
            errors=list(state.errors),
        )
        self._state = (
            ProcessingState.PAUSED
            if state.state in (ProcessingState.RUNNING, ProcessingState.PAUSED)
            else state.state
        )
        self._pause_requested = False
        logger.info(
            f"Restored run {state.run_id} in state {self._state.value}: "
            f"{state.attempted_chunks}/{state.total_chunks} chunks attempted"
        )

    # ==================== Execution ====================

    async def _execute(self, run: _ChunkRun, process_fn: ProcessFn) -> ProcessingResult:
        options = run.options
        token = options.cancellation_token
        run.segment_started = time.perf_counter()
        run.failure = None

        self._state = ProcessingState.RUNNING
        await self._emit_progress(run)

        semaphore = asyncio.Semaphore(options.max_concurrency)
        tasks: List[asyncio.Task] = []
        stop_state: Optional[ProcessingState] = None

        try:
            for chunk in [c for c in run.chunks if not c.attempted]:
                await semaphore.acquire()
                if token is not None and token.cancelled:
                    semaphore.release()
                    stop_state = ProcessingState.CANCELLED
                    break
                if self._pause_requested and options.enable_resumable:
                    semaphore.release()
                    stop_state = ProcessingState.PAUSED
                    break
                if run.failure is not None:
                    semaphore.release()
                    break

                task = asyncio.create_task(self._process_chunk(run, chunk, process_fn))
                task.add_done_callback(lambda _: semaphore.release())
                tasks.append(task)

            # In-flight chunks always finish
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            self._state = ProcessingState.CANCELLED
            raise
        finally:
            run.wall_ms = run.elapsed_ms
            run.segment_started = None

        if run.failure is not None:
            chunk, error = run.failure
            self._state = ProcessingState.ERROR
            await self._emit_progress(run)
            self._record_metrics(run)
            logger.error(f"Chunked processing run {run.run_id} stopped at chunk {chunk.index}: {error}")
            raise ChunkProcessingError(chunk.index, chunk.id, str(error)) from error

        if stop_state == ProcessingState.PAUSED:
            self._state = ProcessingState.PAUSED
            self._pause_requested = False
            logger.info(
                f"Run {run.run_id} paused: {run.attempted}/{len(run.chunks)} chunks attempted"
            )
        elif stop_state == ProcessingState.CANCELLED:
            self._state = ProcessingState.CANCELLED
            reason = f" ({token.reason})" if token is not None and token.reason else ""
            logger.info(
                f"Run {run.run_id} cancelled{reason}: {run.attempted}/{len(run.chunks)} chunks attempted"
            )
        else:
            self._state = ProcessingState.COMPLETED
            self._pause_requested = False

        await self._emit_progress(run)
        result = self._build_result(run)
        if self._state == ProcessingState.COMPLETED:
            self._record_metrics(run, result)
            logger.info(
                f"Chunked processing run {run.run_id} completed: {result.processed_chunks} chunks, "
                f"{result.failed_chunks} failed in {result.end_time - result.start_time:.2f}s"
            )
        return result

    async def _process_chunk(self, run: _ChunkRun, chunk: Chunk, process_fn: ProcessFn):
        run.active += 1
        run.peak_active = max(run.peak_active, run.active)
        chunk.error = None
        chunk.processing_start_time = time.time()
        started = time.perf_counter()
        try:
            outcome = process_fn(chunk)
            if inspect.isawaitable(outcome):
                outcome = await outcome
            chunk.result = outcome
            chunk.processed = True
        except Exception as e:
            chunk.error = str(e) or type(e).__name__
            run.errors.append(f"Chunk {chunk.index}: {chunk.error}")
            logger.warning(f"Chunk {chunk.index} ({chunk.id}) failed: {chunk.error}")
            if not run.options.continue_on_error and run.failure is None:
                run.failure = (chunk, e)
        finally:
            duration_ms = (time.perf_counter() - started) * 1000
            chunk.processing_end_time = time.time()
            run.active -= 1
            run.sequential_ms += duration_ms
            run.durations.add(duration_ms)

        await self._emit_progress(run, current_chunk_id=chunk.id)

    # ==================== Progress and results ====================

    async def _emit_progress(self, run: _ChunkRun, current_chunk_id: Optional[str] = None):
        callback = run.options.progress_callback
        if callback is None:
            return

        total = len(run.chunks)
        attempted = run.attempted
        percentage = attempted / total * 100 if total else 100.0
        if self._state == ProcessingState.RUNNING and not total:
            percentage = 0.0
        percentage = max(run.last_percentage, percentage)
        run.last_percentage = percentage

        eta_ms = None
        chunks_per_second = None
        if run.options.enable_eta and len(run.durations) > 0:
            eta_ms = run.durations.value * (total - attempted)
            elapsed = run.elapsed_ms / 1000
            if elapsed > 0:
                chunks_per_second = attempted / elapsed

        progress = ProcessingProgress(
            state=self._state,
            processed_chunks=attempted,
            total_chunks=total,
            percentage=percentage,
            estimated_time_remaining_ms=eta_ms,
            chunks_per_second=chunks_per_second,
            active_concurrent_processes=run.active,
            current_chunk_id=current_chunk_id,
        )
        try:
            outcome = callback(progress)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            logger.warning(f"Progress callback raised: {e}")

    def _build_result(self, run: _ChunkRun) -> ProcessingResult:
        options = run.options
        total = len(run.chunks)
        concurrency_used = max(1, min(options.max_concurrency, total))

        metrics = None
        statistics = None
        if options.collect_metrics:
            metrics = self._build_metrics(run, concurrency_used)
            statistics = self._build_statistics(run)

        return ProcessingResult(
            state=self._state,
            chunks=run.chunks,
            processed_chunks=run.attempted,
            failed_chunks=run.failed,
            total_chunks=total,
            errors=list(run.errors),
            results=[c.result for c in run.chunks if c.processed],
            parallel_processing_used=options.max_concurrency > 1 and total > 1,
            max_concurrency_used=concurrency_used,
            performance_metrics=metrics,
            chunk_statistics=statistics,
            start_time=run.start_time,
            end_time=time.time(),
        )

    def _build_metrics(self, run: _ChunkRun, concurrency_used: int) -> ChunkProcessingMetrics:
        wall_ms = run.wall_ms
        timed = [c.processing_time_ms for c in run.chunks if c.attempted and c.processing_time_ms is not None]
        average_ms = sum(timed) / len(timed) if timed else 0.0
        efficiency = 0.0
        if wall_ms > 0:
            efficiency = min(100.0, run.sequential_ms / (wall_ms * concurrency_used) * 100)

        return ChunkProcessingMetrics(
            total_processing_time_ms=wall_ms,
            average_chunk_processing_time_ms=average_ms,
            chunks_per_second=run.attempted / (wall_ms / 1000) if wall_ms > 0 else 0.0,
            parallel_efficiency_score=efficiency,
            peak_concurrent_processes=run.peak_active,
            total_wait_time_ms=max(0.0, wall_ms - run.sequential_ms),
        )

    def _build_statistics(self, run: _ChunkRun) -> ChunkStatistics:
        sizes = [c.size for c in run.chunks]
        return ChunkStatistics(
            average_chunk_size=sum(sizes) / len(sizes) if sizes else 0.0,
            min_chunk_size=min(sizes) if sizes else 0,
            max_chunk_size=max(sizes) if sizes else 0,
            total_content_size=sum(sizes),
            chunks_with_errors=run.failed,
        )

    def _record_metrics(self, run: _ChunkRun, result: Optional[ProcessingResult] = None):
        if self.metrics_collector is None or not run.options.collect_metrics:
            return
        self.metrics_collector.record_processing_result(result or self._build_result(run))
