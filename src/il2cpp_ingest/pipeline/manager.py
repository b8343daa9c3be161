import asyncio
import hashlib
from pathlib import Path
from typing import Any, List, Optional, Protocol

from pydantic import BaseModel, Field

from ..core.exceptions import IngestionError
from ..core.logging import logger
from ..models.chunk import (
    Chunk,
    ChunkProcessingOptions,
    ProcessingResult,
    ProcessingState,
    ResumableProcessingState,
)
from ..models.record import BatchInsertOptions, BatchInsertResult, ContentRecord
from ..services.batch_vector_store import BatchVectorStore
from ..services.chunked_processor import ChunkedProcessor
from ..services.metrics import PerformanceMetricsCollector
from ..services.protocols import EmbeddingProvider, VectorStoreClient


class RecordExtractor(Protocol):
    """Turns one chunk of dump text into the records to embed."""

    def extract(self, chunk: Chunk, source: str) -> List[ContentRecord]:
        ...


class ChunkRecordExtractor:
    """
    Default extractor: one record per non-blank chunk, with positional metadata.

    The record id is derived from the source and the chunk's position and
    text, so re-ingesting the same dump overwrites instead of duplicating.
    """

    def extract(self, chunk: Chunk, source: str) -> List[ContentRecord]:
        if not chunk.content.strip():
            return []
        key = f"{source}:{chunk.start_position}:{chunk.content}"
        return [
            ContentRecord(
                id=hashlib.sha256(key.encode("utf-8")).hexdigest(),
                content=chunk.content,
                metadata={
                    "source": source,
                    "chunk_id": chunk.id,
                    "chunk_index": chunk.index,
                    "start_position": chunk.start_position,
                    "end_position": chunk.end_position,
                },
            )
        ]


class IngestionReport(BaseModel):
    """Summary of one ingest call."""

    run_id: Optional[str] = None
    source: str
    state: ProcessingState
    total_chunks: int
    processed_chunks: int
    failed_chunks: int
    documents_inserted: int = 0
    documents_failed: int = 0
    errors: List[str] = Field(default_factory=list)
    duration_seconds: float = 0.0


class IngestionPipeline:
    """
    Orchestrator for dump ingestion: chunked processing feeding batched upserts.

    A chunk is only marked processed once all of its records were upserted.
    """

    def __init__(
        self,
        embedder: Optional[EmbeddingProvider] = None,
        store: Optional[VectorStoreClient] = None,
        extractor: Optional[RecordExtractor] = None,
        metrics_collector: Optional[PerformanceMetricsCollector] = None,
    ):
        if embedder is None:
            from ..services.embedder import get_embedder
            embedder = get_embedder()
        if store is None:
            from ..services.vector_store import get_vector_store
            store = get_vector_store()

        self.metrics = metrics_collector or PerformanceMetricsCollector()
        self.extractor = extractor or ChunkRecordExtractor()
        self.processor = ChunkedProcessor(metrics_collector=self.metrics)
        self.batch_store = BatchVectorStore(embedder, store, metrics_collector=self.metrics)

        self._source = "inline"
        self._insert_options: Optional[BatchInsertOptions] = None

    async def ingest_content(
        self,
        content: str,
        source: str = "inline",
        chunk_options: Optional[ChunkProcessingOptions] = None,
        insert_options: Optional[BatchInsertOptions] = None,
    ) -> IngestionReport:
        """
        Ingest dump text.

        Args:
            content: Dump text
            source: Name recorded in every record's metadata
            chunk_options: Options for the chunked processor
            insert_options: Options for each chunk's batch insert

        Returns:
            IngestionReport; ChunkProcessingError propagates when the chunk
            options disable continue_on_error.
        """
        self._source = source
        self._insert_options = insert_options
        logger.info(f"Starting ingestion of {source} ({len(content)} characters)")

        result = await self.processor.process_content(content, self._process_chunk, chunk_options)
        return self._report(result)

    async def ingest_file(self, path: str, **kwargs: Any) -> IngestionReport:
        """Ingest a dump file; ``source`` defaults to the file name."""
        file_path = Path(path)
        if not file_path.is_file():
            raise IngestionError(f"Dump file not found: {path}", details={"path": str(path)})

        read_dump = self.metrics.timed("dump_read")(file_path.read_text)
        content = await asyncio.to_thread(read_dump, encoding="utf-8", errors="replace")
        kwargs.setdefault("source", file_path.name)
        return await self.ingest_content(content, **kwargs)

    def pause(self):
        self.processor.pause_processing()

    async def resume(self, chunk_options: Optional[ChunkProcessingOptions] = None) -> IngestionReport:
        """Resume a paused ingestion with the same source and insert options."""
        result = await self.processor.resume_processing(self._process_chunk, chunk_options)
        return self._report(result)

    def save_state(self, path: str) -> bool:
        """Write the current run state as JSON; False when there is no run."""
        state = self.processor.get_processing_state()
        if state is None:
            return False
        Path(path).write_text(state.model_dump_json(), encoding="utf-8")
        logger.info(f"Saved run {state.run_id} ({state.attempted_chunks}/{state.total_chunks} chunks) to {path}")
        return True

    async def resume_from_file(
        self,
        path: str,
        source: str = "inline",
        chunk_options: Optional[ChunkProcessingOptions] = None,
        insert_options: Optional[BatchInsertOptions] = None,
    ) -> IngestionReport:
        """Restore a run saved with save_state() and finish it."""
        state = ResumableProcessingState.model_validate_json(Path(path).read_text(encoding="utf-8"))
        self.processor.restore_processing_state(state)
        self._source = source
        self._insert_options = insert_options
        return await self.resume(chunk_options)

    async def close(self):
        await self.batch_store.close()

    async def _process_chunk(self, chunk: Chunk) -> BatchInsertResult:
        with self.metrics.track("record_extraction"):
            records = self.extractor.extract(chunk, self._source)
        if not records:
            return BatchInsertResult()

        result = await self.batch_store.batch_insert(records, self._insert_options)
        if result.failed_inserts:
            # Leaves the chunk unprocessed so the failure is visible per chunk
            raise IngestionError(
                f"{result.failed_inserts} of {result.total_documents} records failed to insert",
                details={"chunk_id": chunk.id, "errors": [e.error for e in result.errors]},
            )
        return result

    def _report(self, result: ProcessingResult) -> IngestionReport:
        inserted = sum(r.successful_inserts for r in result.results if isinstance(r, BatchInsertResult))
        failed_documents = sum(
            len(self.extractor.extract(c, self._source)) for c in result.chunks if c.error is not None
        )
        state = self.processor.get_processing_state()
        report = IngestionReport(
            run_id=state.run_id if state else None,
            source=self._source,
            state=result.state,
            total_chunks=result.total_chunks,
            processed_chunks=result.processed_chunks,
            failed_chunks=result.failed_chunks,
            documents_inserted=inserted,
            documents_failed=failed_documents,
            errors=result.errors,
            duration_seconds=round(result.end_time - result.start_time, 3),
        )
        logger.info(
            f"Ingestion of {report.source} {report.state.value}: "
            f"{report.processed_chunks}/{report.total_chunks} chunks, "
            f"{report.documents_inserted} documents inserted, {report.failed_chunks} chunks failed"
        )
        return report


# Singleton instance
_pipeline_instance: Optional[IngestionPipeline] = None


def get_pipeline() -> IngestionPipeline:
    """Get or create the singleton IngestionPipeline backed by ChromaDB."""
    global _pipeline_instance
    if _pipeline_instance is None:
        _pipeline_instance = IngestionPipeline()
    return _pipeline_instance
