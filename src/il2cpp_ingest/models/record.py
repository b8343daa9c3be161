"""Content record and batch insertion models."""
import hashlib
import json
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..core.config import settings


def _metadata_json(metadata: Dict[str, Any]) -> str:
    return json.dumps(metadata, sort_keys=True, default=str)


class ContentRecord(BaseModel):
    """
    One unit to be embedded and stored.
    """
    content: str = Field(..., description="Text that will be embedded")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Opaque key/value metadata")
    size_bytes: int = Field(default=0, ge=0, description="UTF-8 size of content plus metadata")
    id: Optional[str] = Field(default=None, description="Stable upsert key; derived from content when omitted")

    @model_validator(mode="after")
    def _fill_size(self) -> "ContentRecord":
        if not self.size_bytes:
            self.size_bytes = len(self.content.encode("utf-8")) + len(
                _metadata_json(self.metadata).encode("utf-8")
            )
        return self

    @property
    def record_id(self) -> str:
        """Stable identifier, so repeated upserts of the same record are safe."""
        if self.id:
            return self.id
        payload = self.content + _metadata_json(self.metadata)
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class VectorRecord(BaseModel):
    """A record ready for the remote store."""
    id: str
    content: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    vector: List[float]


class BatchingStrategy(str, Enum):
    """Batching strategies for vector insertions."""

    FIXED_SIZE = "fixed_size"
    CONTENT_AWARE = "content_aware"
    ADAPTIVE = "adaptive"


class ConnectionPoolConfig(BaseModel):
    """Configuration for connection pool management."""

    max_connections: int = settings.POOL_MAX_CONNECTIONS
    min_connections: int = settings.POOL_MIN_CONNECTIONS
    acquire_timeout_ms: int = settings.POOL_ACQUIRE_TIMEOUT_MS
    idle_timeout_ms: int = settings.POOL_IDLE_TIMEOUT_MS
    max_retries: int = settings.POOL_MAX_RETRIES


class ConnectionPoolHealth(BaseModel):
    """Connection pool health information."""

    active_connections: int
    idle_connections: int
    total_connections: int
    health_score: int = Field(..., ge=0, le=100)
    average_response_time_ms: float
    total_acquires: int
    acquire_timeouts: int
    waiting: int


class BatchInsertProgress(BaseModel):
    """Progress information for batch operations."""

    model_config = ConfigDict(frozen=True)

    percent_complete: float
    documents_processed: int
    total_documents: int
    current_batch: int
    total_batches: int
    operation: str
    estimated_time_remaining_ms: Optional[float] = None


class BatchInsertOptions(BaseModel):
    """Options for BatchVectorStore.batch_insert."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    progress_callback: Optional[Callable[[BatchInsertProgress], Any]] = None
    batching_strategy: BatchingStrategy = BatchingStrategy(settings.BATCH_STRATEGY)
    fixed_batch_size: int = Field(default=settings.FIXED_BATCH_SIZE, ge=1)
    max_batch_size_bytes: int = Field(default=settings.MAX_BATCH_SIZE_BYTES, ge=1)
    max_concurrency: int = Field(default=settings.BATCH_MAX_CONCURRENCY, ge=1)
    max_retries: int = Field(default=settings.BATCH_MAX_RETRIES, ge=0)
    retry_delay_ms: int = Field(default=settings.RETRY_DELAY_MS, ge=1)
    timeout_ms: int = Field(default=settings.BATCH_TIMEOUT_MS, ge=1)
    continue_on_error: bool = False


class BatchError(BaseModel):
    """A batch that could not be inserted."""

    batch_index: int
    error: str
    document_count: int
    attempts: int = 1


class BatchInsertMetrics(BaseModel):
    """Performance metrics for batch operations."""

    total_processing_time_ms: float = 0.0
    embedding_generation_time_ms: float = 0.0
    database_insertion_time_ms: float = 0.0
    batches_processed: int = 0
    average_batch_size_used: float = 0.0
    connection_pool_efficiency: float = 0.0
    throughput_docs_per_second: float = 0.0
    retries_performed: int = 0
    adaptive_batching_used: bool = False


class BatchInsertResult(BaseModel):
    """Result of a batch insert operation."""

    total_documents: int = 0
    successful_inserts: int = 0
    failed_inserts: int = 0
    errors: List[BatchError] = Field(default_factory=list)
    metrics: BatchInsertMetrics = Field(default_factory=BatchInsertMetrics)

    @property
    def reconciled(self) -> bool:
        return self.successful_inserts + self.failed_inserts == self.total_documents
