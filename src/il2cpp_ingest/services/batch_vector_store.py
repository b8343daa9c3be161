"""
Batched embedding and upsert of content records.

BatchVectorStore groups records into batches (fixed size, byte budget or
adaptive), then for every batch acquires a pooled connection slot, embeds
the batch and upserts it into the remote store. Failed batches are retried
with exponential backoff; what still fails is accounted for per batch so
that ``successful_inserts + failed_inserts == total_documents`` always holds.
"""

import asyncio
import inspect
import math
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

from pydantic import ValidationError

from ..core.config import settings
from ..core.exceptions import (
    BatchInsertError,
    BatchTimeoutError,
    EmbeddingMismatchError,
    RecordValidationError,
    TransientIngestionError,
)
from ..core.logging import logger
from ..models.record import (
    BatchError,
    BatchingStrategy,
    BatchInsertMetrics,
    BatchInsertOptions,
    BatchInsertProgress,
    BatchInsertResult,
    ConnectionPoolConfig,
    ConnectionPoolHealth,
    ContentRecord,
    VectorRecord,
)
from ..utils.retry import RetryConfig, build_async_retrying
from .batching import AdaptiveBatchSizer, Batch, partition_content_aware, partition_fixed, take_by_bytes
from .connection_pool import ConnectionPool
from .metrics import PerformanceMetricsCollector
from .protocols import EmbeddingProvider, VectorStoreClient

RecordInput = Union[ContentRecord, Mapping[str, Any]]


@dataclass
class _InsertRun:
    """Mutable bookkeeping for one batch_insert call."""

    options: BatchInsertOptions
    records: List[ContentRecord]
    total_documents: int
    started_at: float = field(default_factory=time.perf_counter)
    successful: int = 0
    failed: int = 0
    errors: List[BatchError] = field(default_factory=list)
    batches_processed: int = 0
    documents_in_batches: int = 0
    embedding_ms: float = 0.0
    database_ms: float = 0.0
    retries: int = 0
    dispatched_batches: int = 0
    planned_batches: int = 0
    busy_baseline_ms: float = 0.0
    failure: Optional[Tuple[Batch, BaseException]] = None
    sizer: Optional[AdaptiveBatchSizer] = None

    @property
    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self.started_at) * 1000

    @property
    def documents_done(self) -> int:
        return self.successful + self.failed


class BatchVectorStore:
    """
    Embeds and upserts content records in concurrent, retried batches.

    Args:
        embedder: Anything implementing ``async embed(texts)``
        store: Anything implementing ``async upsert(records)``
        pool_config: Connection pool limits (defaults from settings)
        connection_factory: Optional factory for per-slot client handles
        metrics_collector: Optional shared collector fed with every result
    """

    def __init__(
        self,
        embedder: EmbeddingProvider,
        store: VectorStoreClient,
        pool_config: Optional[ConnectionPoolConfig] = None,
        connection_factory: Optional[Callable[[], Any]] = None,
        metrics_collector: Optional[PerformanceMetricsCollector] = None,
    ):
        self.embedder = embedder
        self.store = store
        self.pool = ConnectionPool(pool_config, factory=connection_factory)
        self.metrics_collector = metrics_collector

    # ==================== Connection pool ====================

    def configure_connection_pool(
        self, config: Optional[ConnectionPoolConfig] = None, **updates: Any
    ) -> ConnectionPoolConfig:
        """Replace or update pool limits; raises ConfigurationError on invalid values."""
        return self.pool.configure(config, **updates)

    def get_connection_pool_config(self) -> ConnectionPoolConfig:
        return self.pool.config.model_copy()

    def get_connection_pool_health(self) -> ConnectionPoolHealth:
        return self.pool.health()

    async def close(self):
        await self.pool.close()

    async def _warm_pool(self):
        """Bring the pool up to min_connections before dispatching."""
        try:
            await self.pool.warm_up()
        except TransientIngestionError as e:
            # Batches still acquire lazily and account for the failure themselves
            logger.warning(f"Connection pool warm-up failed: {e}")

    # ==================== Batch insert ====================

    async def batch_insert(
        self,
        records: Sequence[RecordInput],
        options: Optional[BatchInsertOptions] = None,
    ) -> BatchInsertResult:
        """
        Embed and upsert ``records``.

        Returns:
            BatchInsertResult with per-batch error entries

        Raises:
            BatchInsertError: a batch (or record) failed and
                ``continue_on_error`` is disabled; ``partial_result`` holds
                what was reached. Batches already upserted stay in the store.
        """
        options = options or BatchInsertOptions()

        if not records:
            logger.debug("batch_insert called with no records")
            return BatchInsertResult(
                metrics=BatchInsertMetrics(
                    adaptive_batching_used=options.batching_strategy == BatchingStrategy.ADAPTIVE
                )
            )

        valid, invalid = self._validate_records(records)
        run = _InsertRun(
            options=options,
            records=valid,
            total_documents=len(records),
            busy_baseline_ms=self.pool.busy_time_ms,
        )

        for error in invalid:
            run.failed += 1
            run.errors.append(
                BatchError(batch_index=-1, error=error.message, document_count=1, attempts=0)
            )
        if invalid and not options.continue_on_error:
            first = invalid[0]
            logger.error(f"Rejecting batch insert: {first.message}")
            result = self._build_result(run, abort=True)
            raise BatchInsertError(first.message, batch_index=-1, partial_result=result) from first

        logger.info(
            f"Starting batch insert of {len(valid)} records "
            f"(strategy={options.batching_strategy.value}, concurrency={options.max_concurrency})"
        )

        await self._warm_pool()
        batches = self._batch_source(run)
        await self._emit_progress(run, "starting", current_batch=0)
        await self._dispatch(run, batches)

        if run.failure is not None:
            batch, exc = run.failure
            result = self._build_result(run, abort=True)
            await self._emit_progress(run, "failed", current_batch=batch.index + 1)
            self._record_metrics(result)
            logger.error(
                f"Batch insert aborted at batch {batch.index}: "
                f"{result.successful_inserts}/{result.total_documents} documents inserted"
            )
            raise BatchInsertError(
                f"Batch {batch.index} failed: {exc}",
                batch_index=batch.index,
                partial_result=result,
            ) from exc

        result = self._build_result(run)
        await self._emit_progress(run, "completed", current_batch=run.dispatched_batches)
        self._record_metrics(result)
        logger.info(
            f"Batch insert finished: {result.successful_inserts} inserted, "
            f"{result.failed_inserts} failed in {result.metrics.batches_processed} batches "
            f"({result.metrics.throughput_docs_per_second:.1f} docs/sec, "
            f"{result.metrics.retries_performed} retries)"
        )
        return result

    def _validate_records(
        self, records: Sequence[RecordInput]
    ) -> Tuple[List[ContentRecord], List[RecordValidationError]]:
        valid: List[ContentRecord] = []
        invalid: List[RecordValidationError] = []
        for position, item in enumerate(records):
            if isinstance(item, ContentRecord):
                valid.append(item)
                continue
            if not isinstance(item, Mapping):
                invalid.append(RecordValidationError(position, f"unsupported type {type(item).__name__}"))
                continue
            try:
                valid.append(ContentRecord.model_validate(dict(item)))
            except ValidationError as e:
                reason = "; ".join(err["msg"] for err in e.errors())
                invalid.append(RecordValidationError(position, reason))
        return valid, invalid

    def _batch_source(self, run: _InsertRun) -> Iterator[Batch]:
        """Yield batches on demand; adaptive cuts depend on earlier outcomes."""
        options = run.options
        if options.batching_strategy == BatchingStrategy.FIXED_SIZE:
            planned = partition_fixed(run.records, options.fixed_batch_size)
        elif options.batching_strategy == BatchingStrategy.CONTENT_AWARE:
            planned = partition_content_aware(run.records, options.max_batch_size_bytes)
        else:
            planned = None
        if planned is not None:
            run.planned_batches = len(planned)
            return iter(planned)

        run.sizer = AdaptiveBatchSizer()
        return self._adaptive_batches(run)

    def _adaptive_batches(self, run: _InsertRun) -> Iterator[Batch]:
        position = 0
        index = 0
        while position < len(run.records):
            end = take_by_bytes(
                run.records, position, run.sizer.current_size, run.options.max_batch_size_bytes
            )
            yield Batch(index=index, records=run.records[position:end])
            position = end
            index += 1

    async def _dispatch(self, run: _InsertRun, batches: Iterator[Batch]):
        """Run batches with at most ``max_concurrency`` in flight."""
        semaphore = asyncio.Semaphore(run.options.max_concurrency)
        tasks: List[asyncio.Task] = []

        try:
            while True:
                await semaphore.acquire()
                if run.failure is not None:
                    semaphore.release()
                    break
                batch = next(batches, None)
                if batch is None:
                    semaphore.release()
                    break
                run.dispatched_batches += 1
                task = asyncio.create_task(self._process_batch(run, batch))
                task.add_done_callback(lambda _: semaphore.release())
                tasks.append(task)

            if run.failure is not None:
                for task in tasks:
                    if not task.done():
                        task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def _process_batch(self, run: _InsertRun, batch: Batch):
        options = run.options
        retries = 0

        def count_retry(_state):
            nonlocal retries
            retries += 1

        retrying = build_async_retrying(
            RetryConfig.from_delay_ms(
                options.max_retries, options.retry_delay_ms, settings.RETRY_MAX_DELAY_MS
            ),
            on_retry=count_retry,
        )

        started = time.perf_counter()
        error: Optional[BaseException] = None
        try:
            async for attempt in retrying:
                with attempt:
                    await self._attempt_batch(run, batch)
        except Exception as e:
            error = e
        latency_ms = (time.perf_counter() - started) * 1000

        # Aggregation is append-only once the batch has finished
        run.retries += retries
        run.batches_processed += 1
        run.documents_in_batches += batch.size
        if run.sizer is not None:
            run.sizer.observe(latency_ms, retried=retries > 0, failed=error is not None)

        if error is None:
            run.successful += batch.size
            logger.debug(f"Batch {batch.index} inserted {batch.size} records in {latency_ms:.0f}ms")
        else:
            run.failed += batch.size
            run.errors.append(
                BatchError(
                    batch_index=batch.index,
                    error=str(error),
                    document_count=batch.size,
                    attempts=retries + 1,
                )
            )
            logger.warning(
                f"Batch {batch.index} failed after {retries + 1} attempts: {error}"
            )
            if not options.continue_on_error and run.failure is None:
                run.failure = (batch, error)

        await self._emit_progress(run, "inserting", current_batch=batch.index + 1)

    async def _attempt_batch(self, run: _InsertRun, batch: Batch):
        """One attempt: pooled slot, then embed and upsert under the call timeout."""
        async with self.pool.connection():
            try:
                await asyncio.wait_for(
                    self._embed_and_upsert(run, batch),
                    timeout=run.options.timeout_ms / 1000,
                )
            except asyncio.TimeoutError:
                raise BatchTimeoutError(batch.index, run.options.timeout_ms) from None

    async def _embed_and_upsert(self, run: _InsertRun, batch: Batch):
        texts = [record.content for record in batch.records]

        started = time.perf_counter()
        vectors = await self.embedder.embed(texts)
        run.embedding_ms += (time.perf_counter() - started) * 1000

        if len(vectors) != len(texts):
            raise EmbeddingMismatchError(expected=len(texts), received=len(vectors))

        vector_records = [
            VectorRecord(
                id=record.record_id,
                content=record.content,
                metadata=record.metadata,
                vector=[float(x) for x in vector],
            )
            for record, vector in zip(batch.records, vectors)
        ]

        started = time.perf_counter()
        await self.store.upsert(vector_records)
        run.database_ms += (time.perf_counter() - started) * 1000

    # ==================== Results and progress ====================

    def _build_result(self, run: _InsertRun, abort: bool = False) -> BatchInsertResult:
        total_ms = run.elapsed_ms
        failed = run.failed
        if abort:
            # Anything not confirmed as inserted counts as failed
            failed = run.total_documents - run.successful

        usable_slots = max(
            1,
            min(
                self.pool.config.max_connections,
                run.options.max_concurrency,
                run.batches_processed or 1,
            ),
        )
        busy_ms = self.pool.busy_time_ms - run.busy_baseline_ms
        efficiency = min(100.0, busy_ms / (total_ms * usable_slots) * 100) if total_ms > 0 else 0.0

        metrics = BatchInsertMetrics(
            total_processing_time_ms=total_ms,
            embedding_generation_time_ms=run.embedding_ms,
            database_insertion_time_ms=run.database_ms,
            batches_processed=run.batches_processed,
            average_batch_size_used=(
                run.documents_in_batches / run.batches_processed if run.batches_processed else 0.0
            ),
            connection_pool_efficiency=max(0.0, efficiency),
            throughput_docs_per_second=(
                run.total_documents / total_ms * 1000 if total_ms > 0 else 0.0
            ),
            retries_performed=run.retries,
            adaptive_batching_used=run.options.batching_strategy == BatchingStrategy.ADAPTIVE,
        )
        return BatchInsertResult(
            total_documents=run.total_documents,
            successful_inserts=run.successful,
            failed_inserts=failed,
            errors=list(run.errors),
            metrics=metrics,
        )

    def _estimate_total_batches(self, run: _InsertRun) -> int:
        if run.sizer is None:
            return run.planned_batches
        remaining = len(run.records) - run.documents_in_batches
        in_flight = run.dispatched_batches - run.batches_processed
        return run.batches_processed + in_flight + math.ceil(max(0, remaining) / run.sizer.current_size)

    async def _emit_progress(self, run: _InsertRun, operation: str, current_batch: int):
        callback = run.options.progress_callback
        if callback is None:
            return

        done = run.documents_done
        total = run.total_documents
        eta_ms = None
        if 0 < done < total:
            eta_ms = run.elapsed_ms / done * (total - done)

        progress = BatchInsertProgress(
            percent_complete=round(done / total * 100, 2) if total else 100.0,
            documents_processed=done,
            total_documents=total,
            current_batch=current_batch,
            total_batches=self._estimate_total_batches(run),
            operation=operation,
            estimated_time_remaining_ms=eta_ms,
        )
        try:
            outcome = callback(progress)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            logger.warning(f"Batch insert progress callback raised: {e}")

    def _record_metrics(self, result: BatchInsertResult):
        if self.metrics_collector is not None:
            self.metrics_collector.record_batch_insert(result)
