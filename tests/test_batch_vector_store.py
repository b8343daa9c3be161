"""Tests for batched embedding and upsert."""

import pytest

from il2cpp_ingest.core.exceptions import (
    BatchInsertError,
    ConfigurationError,
    PoolExhaustedError,
    RecordValidationError,
)
from il2cpp_ingest.models.record import (
    BatchingStrategy,
    BatchInsertOptions,
    ConnectionPoolConfig,
    ContentRecord,
)
from il2cpp_ingest.services.batch_vector_store import BatchVectorStore
from il2cpp_ingest.services.metrics import PerformanceMetricsCollector

from conftest import FakeEmbedder, FakeStore, make_records


def fast_options(**overrides) -> BatchInsertOptions:
    """Options with millisecond retry delays so failing tests stay quick."""
    values = dict(retry_delay_ms=1, max_retries=1)
    values.update(overrides)
    return BatchInsertOptions(**values)


class TestBatchingStrategies:
    """Tests for how records are grouped into batches."""

    @pytest.mark.asyncio
    async def test_fixed_size_batches(self, batch_store, fake_store):
        """200 records in groups of 25 give 8 batches."""
        result = await batch_store.batch_insert(
            make_records(200),
            fast_options(batching_strategy=BatchingStrategy.FIXED_SIZE, fixed_batch_size=25),
        )

        assert result.metrics.batches_processed == 8
        assert result.metrics.average_batch_size_used == 25
        assert sorted(fake_store.batch_sizes) == [25] * 8
        assert result.successful_inserts == 200
        assert result.failed_inserts == 0
        assert result.reconciled
        assert result.metrics.adaptive_batching_used is False

    @pytest.mark.asyncio
    async def test_fixed_size_last_batch_shorter(self, batch_store, fake_store):
        """The remainder forms a final, shorter batch."""
        result = await batch_store.batch_insert(
            make_records(53),
            fast_options(batching_strategy=BatchingStrategy.FIXED_SIZE, fixed_batch_size=25),
        )

        assert result.metrics.batches_processed == 3
        assert sorted(fake_store.batch_sizes) == [3, 25, 25]

    @pytest.mark.asyncio
    async def test_content_aware_respects_byte_budget(self, batch_store, fake_store):
        """Batches stay under max_batch_size_bytes."""
        records = make_records(40, content_size=100)
        budget = records[0].size_bytes * 4 + 10

        result = await batch_store.batch_insert(
            records,
            fast_options(batching_strategy=BatchingStrategy.CONTENT_AWARE, max_batch_size_bytes=budget),
        )

        assert result.successful_inserts == 40
        assert max(fake_store.batch_sizes) <= 4
        assert result.metrics.batches_processed == 10

    @pytest.mark.asyncio
    async def test_content_aware_oversized_records_are_isolated(self, batch_store, fake_store):
        """Each record larger than the budget becomes its own batch."""
        records = [ContentRecord(content="y" * 2000, metadata={"n": i}) for i in range(6)]

        result = await batch_store.batch_insert(
            records,
            fast_options(batching_strategy=BatchingStrategy.CONTENT_AWARE, max_batch_size_bytes=1000),
        )

        assert result.successful_inserts == 6
        assert result.metrics.batches_processed == 6
        assert result.metrics.average_batch_size_used == 1

    @pytest.mark.asyncio
    async def test_adaptive_oversized_record_is_isolated(self, batch_store, fake_store):
        """Under ADAPTIVE an oversized record closes the running batch and goes alone."""
        records = make_records(10)
        records.insert(5, ContentRecord(content="y" * 2000, metadata={"n": "big"}))

        result = await batch_store.batch_insert(
            records,
            fast_options(
                batching_strategy=BatchingStrategy.ADAPTIVE,
                max_batch_size_bytes=1000,
                max_concurrency=1,
            ),
        )

        assert result.successful_inserts == 11
        assert fake_store.batch_sizes == [5, 1, 5]
        assert result.metrics.batches_processed == 3

    @pytest.mark.asyncio
    async def test_adaptive_batching(self, batch_store, fake_store):
        """Adaptive batching starts at the initial size and grows on fast batches."""
        result = await batch_store.batch_insert(
            make_records(300),
            fast_options(batching_strategy=BatchingStrategy.ADAPTIVE, max_concurrency=1),
        )

        assert result.metrics.adaptive_batching_used is True
        assert result.successful_inserts == 300
        assert fake_store.batch_sizes[0] == 50
        assert fake_store.batch_sizes[1] > 50
        assert sum(fake_store.batch_sizes) == 300

    @pytest.mark.asyncio
    async def test_adaptive_shrinks_after_failure(self, fake_embedder):
        """A failed batch makes the next batch smaller."""
        store = FakeStore(fail_when=lambda records: records[0].metadata["n"] == 0)
        batch_store = BatchVectorStore(fake_embedder, store)

        result = await batch_store.batch_insert(
            make_records(120),
            fast_options(
                batching_strategy=BatchingStrategy.ADAPTIVE,
                max_concurrency=1,
                max_retries=0,
                continue_on_error=True,
            ),
        )

        assert result.failed_inserts == 50
        assert store.batch_sizes[0] == 35
        assert result.reconciled


class TestPartialFailure:
    """Tests for failure accounting."""

    @pytest.mark.asyncio
    async def test_every_second_batch_fails(self, fake_embedder):
        """Alternate failing batches leave both counts positive and reconciled."""
        store = FakeStore(fail_when=lambda records: (records[0].metadata["n"] // 25) % 2 == 1)
        batch_store = BatchVectorStore(fake_embedder, store)

        result = await batch_store.batch_insert(
            make_records(200),
            fast_options(
                batching_strategy=BatchingStrategy.FIXED_SIZE,
                fixed_batch_size=25,
                continue_on_error=True,
            ),
        )

        assert result.successful_inserts == 100
        assert result.failed_inserts == 100
        assert result.reconciled
        assert len(result.errors) == 4
        assert sorted(e.batch_index for e in result.errors) == [1, 3, 5, 7]
        assert all(e.attempts == 2 and e.document_count == 25 for e in result.errors)
        assert result.metrics.retries_performed == 4
        assert len(store.records) == 100

    @pytest.mark.asyncio
    async def test_always_failing_store_raises(self, fake_embedder):
        """With continue_on_error off a failing store raises BatchInsertError."""
        store = FakeStore(fail_when=lambda records: True)
        batch_store = BatchVectorStore(fake_embedder, store)

        with pytest.raises(BatchInsertError) as exc_info:
            await batch_store.batch_insert(
                make_records(60),
                fast_options(batching_strategy=BatchingStrategy.FIXED_SIZE, fixed_batch_size=20),
            )

        partial = exc_info.value.partial_result
        assert partial is not None
        assert partial.successful_inserts == 0
        assert partial.reconciled
        assert store.records == {}

    @pytest.mark.asyncio
    async def test_transient_failure_recovers_on_retry(self, fake_store):
        """A transient embedding failure is retried and succeeds."""
        batch_store = BatchVectorStore(FakeEmbedder(fail_times=1), fake_store)

        result = await batch_store.batch_insert(
            make_records(10),
            fast_options(batching_strategy=BatchingStrategy.FIXED_SIZE, fixed_batch_size=10, max_retries=2),
        )

        assert result.successful_inserts == 10
        assert result.metrics.retries_performed == 1
        assert result.errors == []

    @pytest.mark.asyncio
    async def test_embedding_mismatch_is_not_retried(self, fake_store):
        """A vector count mismatch is permanent and fails on the first attempt."""
        embedder = FakeEmbedder(drop_one=True)
        batch_store = BatchVectorStore(embedder, fake_store)

        result = await batch_store.batch_insert(
            make_records(5),
            fast_options(
                batching_strategy=BatchingStrategy.FIXED_SIZE,
                fixed_batch_size=5,
                max_retries=3,
                continue_on_error=True,
            ),
        )

        assert result.failed_inserts == 5
        assert result.errors[0].attempts == 1
        assert result.metrics.retries_performed == 0
        assert len(embedder.calls) == 1

    @pytest.mark.asyncio
    async def test_batch_timeout(self, fake_embedder):
        """A round trip slower than timeout_ms fails the batch."""
        batch_store = BatchVectorStore(fake_embedder, FakeStore(delay=0.2))

        result = await batch_store.batch_insert(
            make_records(3),
            fast_options(timeout_ms=20, max_retries=0, continue_on_error=True),
        )

        assert result.failed_inserts == 3
        assert "timed out" in result.errors[0].error

    @pytest.mark.asyncio
    async def test_malformed_records_fail_without_retry(self, batch_store, fake_store):
        """Mappings that fail validation are counted as failed immediately."""
        records = [{"content": "ok", "metadata": {}}, {"metadata": {"no": "content"}}, "not a record"]

        result = await batch_store.batch_insert(records, fast_options(continue_on_error=True))

        assert result.total_documents == 3
        assert result.successful_inserts == 1
        assert result.failed_inserts == 2
        assert all(e.attempts == 0 for e in result.errors)
        assert len(fake_store.records) == 1

    @pytest.mark.asyncio
    async def test_malformed_records_raise_when_stopping_on_error(self, batch_store, fake_store):
        """A malformed record aborts the call before anything is written."""
        with pytest.raises(BatchInsertError) as exc_info:
            await batch_store.batch_insert([{"metadata": {}}], fast_options())

        assert isinstance(exc_info.value.__cause__, RecordValidationError)
        assert fake_store.upsert_calls == 0


class TestPoolExhaustion:
    """Pool acquire timeouts inside batch_insert are transient batch failures."""

    @staticmethod
    def single_slot_store(fake_embedder) -> BatchVectorStore:
        # One slot held for 200ms by whichever batch gets it first
        return BatchVectorStore(
            fake_embedder,
            FakeStore(delay=0.2),
            pool_config=ConnectionPoolConfig(
                max_connections=1, min_connections=0, acquire_timeout_ms=20, max_retries=0
            ),
        )

    @pytest.mark.asyncio
    async def test_exhaustion_retried_then_recorded(self, fake_embedder):
        """The starved batch is retried, then counted as failed."""
        batch_store = self.single_slot_store(fake_embedder)

        result = await batch_store.batch_insert(
            make_records(10),
            fast_options(
                batching_strategy=BatchingStrategy.FIXED_SIZE,
                fixed_batch_size=5,
                max_concurrency=2,
                max_retries=1,
                continue_on_error=True,
            ),
        )

        assert result.successful_inserts == 5
        assert result.failed_inserts == 5
        assert result.reconciled
        assert len(result.errors) == 1
        assert result.errors[0].attempts == 2
        assert "unable to acquire connection" in result.errors[0].error
        assert result.metrics.retries_performed == 1
        assert batch_store.get_connection_pool_health().acquire_timeouts == 2

    @pytest.mark.asyncio
    async def test_exhaustion_raises_when_stopping_on_error(self, fake_embedder):
        batch_store = self.single_slot_store(fake_embedder)

        with pytest.raises(BatchInsertError) as exc_info:
            await batch_store.batch_insert(
                make_records(10),
                fast_options(
                    batching_strategy=BatchingStrategy.FIXED_SIZE,
                    fixed_batch_size=5,
                    max_concurrency=2,
                    max_retries=0,
                ),
            )

        assert isinstance(exc_info.value.__cause__, PoolExhaustedError)
        assert exc_info.value.partial_result.reconciled
        assert exc_info.value.partial_result.failed_inserts >= 5


class TestBatchInsertBehaviour:
    """General behaviour of batch_insert."""

    @pytest.mark.asyncio
    async def test_empty_input_does_not_touch_pool(self, batch_store, fake_store):
        """Empty input returns a zero result without acquiring a connection."""
        result = await batch_store.batch_insert([])

        assert result.total_documents == 0
        assert result.successful_inserts == 0
        assert result.failed_inserts == 0
        assert batch_store.get_connection_pool_health().total_acquires == 0
        assert fake_store.upsert_calls == 0

    @pytest.mark.asyncio
    async def test_stable_ids_make_upserts_idempotent(self, batch_store, fake_store):
        """Inserting the same records twice leaves one copy of each."""
        records = make_records(10)

        await batch_store.batch_insert(records, fast_options())
        await batch_store.batch_insert(records, fast_options())

        assert len(fake_store.records) == 10
        assert set(fake_store.records) == {r.record_id for r in records}

    @pytest.mark.asyncio
    async def test_dict_records_are_accepted(self, batch_store, fake_store):
        """Plain mappings are validated into records."""
        result = await batch_store.batch_insert(
            [{"content": "public class Foo {}", "metadata": {"kind": "class"}, "id": "Foo"}]
        )

        assert result.successful_inserts == 1
        assert fake_store.records["Foo"].metadata == {"kind": "class"}
        assert len(fake_store.records["Foo"].vector) == 8

    @pytest.mark.asyncio
    async def test_metrics(self, batch_store):
        """Timing and throughput metrics are filled in."""
        result = await batch_store.batch_insert(
            make_records(40),
            fast_options(batching_strategy=BatchingStrategy.FIXED_SIZE, fixed_batch_size=10),
        )

        metrics = result.metrics
        assert metrics.total_processing_time_ms > 0
        assert metrics.embedding_generation_time_ms >= 0
        assert metrics.database_insertion_time_ms >= 0
        assert metrics.throughput_docs_per_second > 0
        assert 0 <= metrics.connection_pool_efficiency <= 100

    @pytest.mark.asyncio
    async def test_progress_callback(self, batch_store):
        """Progress goes from starting through each batch to completed."""
        progress = []

        await batch_store.batch_insert(
            make_records(30),
            fast_options(
                batching_strategy=BatchingStrategy.FIXED_SIZE,
                fixed_batch_size=10,
                progress_callback=progress.append,
            ),
        )

        assert progress[0].operation == "starting"
        assert progress[0].percent_complete == 0
        assert progress[-1].operation == "completed"
        assert progress[-1].percent_complete == 100
        assert progress[-1].documents_processed == 30
        assert all(p.total_batches == 3 for p in progress)
        assert len([p for p in progress if p.operation == "inserting"]) == 3

    @pytest.mark.asyncio
    async def test_reports_to_collector(self, fake_embedder, fake_store):
        """A shared collector receives each insert result."""
        collector = PerformanceMetricsCollector()
        batch_store = BatchVectorStore(fake_embedder, fake_store, metrics_collector=collector)

        await batch_store.batch_insert(make_records(12), fast_options())

        snapshot = collector.snapshot()
        assert snapshot["documents_inserted"] == 12
        assert PerformanceMetricsCollector.BATCH_INSERT in snapshot["operations"]


class TestConnectionPoolAccess:
    """Pool configuration and health through the batch store."""

    def test_configure_connection_pool(self, batch_store):
        """Valid updates are reflected in the reported config."""
        batch_store.configure_connection_pool(max_connections=4, min_connections=1)

        config = batch_store.get_connection_pool_config()
        assert config.max_connections == 4
        assert config.min_connections == 1

    def test_configure_with_config_object(self, batch_store):
        """A whole ConnectionPoolConfig can be passed in place of keyword updates."""
        batch_store.configure_connection_pool(
            ConnectionPoolConfig(max_connections=6, min_connections=3, acquire_timeout_ms=500)
        )

        config = batch_store.get_connection_pool_config()
        assert config.max_connections == 6
        assert config.min_connections == 3
        assert config.acquire_timeout_ms == 500

    def test_invalid_pool_config(self, batch_store):
        """Invalid pool settings are rejected at configuration time."""
        with pytest.raises(ConfigurationError):
            batch_store.configure_connection_pool(max_connections=0)
        with pytest.raises(ConfigurationError):
            batch_store.configure_connection_pool(min_connections=20, max_connections=5)

    @pytest.mark.asyncio
    async def test_health_after_insert(self, batch_store):
        """All slots are released once batch_insert returns."""
        await batch_store.batch_insert(
            make_records(50),
            fast_options(batching_strategy=BatchingStrategy.FIXED_SIZE, fixed_batch_size=10),
        )

        health = batch_store.get_connection_pool_health()
        assert health.active_connections == 0
        assert health.total_acquires == 5
        assert health.acquire_timeouts == 0
        assert 0 <= health.health_score <= 100

    @pytest.mark.asyncio
    async def test_close(self, batch_store):
        """close() shuts the pool down."""
        await batch_store.batch_insert(make_records(5), fast_options())
        await batch_store.close()

        assert batch_store.get_connection_pool_health().idle_connections == 0

    @pytest.mark.asyncio
    async def test_insert_warms_pool_to_minimum(self, fake_embedder, fake_store):
        """min_connections are created before the first batch is dispatched."""
        batch_store = BatchVectorStore(
            fake_embedder,
            fake_store,
            pool_config=ConnectionPoolConfig(max_connections=4, min_connections=2),
        )

        await batch_store.batch_insert(make_records(1), fast_options())

        health = batch_store.get_connection_pool_health()
        assert health.total_connections >= 2
        assert health.active_connections == 0

    @pytest.mark.asyncio
    async def test_failed_warm_up_is_accounted_per_batch(self, fake_embedder, fake_store):
        """A factory that never works fails the batches instead of the whole call."""

        def broken_factory():
            raise ConnectionError("store unreachable")

        batch_store = BatchVectorStore(
            fake_embedder,
            fake_store,
            pool_config=ConnectionPoolConfig(max_connections=2, min_connections=1, max_retries=0),
            connection_factory=broken_factory,
        )

        result = await batch_store.batch_insert(
            make_records(4), fast_options(max_retries=0, continue_on_error=True)
        )

        assert result.successful_inserts == 0
        assert result.failed_inserts == 4
        assert result.reconciled
        assert fake_store.upsert_calls == 0
