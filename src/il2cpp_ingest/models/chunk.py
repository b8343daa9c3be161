"""Chunk and chunked-processing models."""
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..core.config import settings
from ..utils.cancellation import CancellationToken


class ProcessingState(str, Enum):
    """Lifecycle of a chunked processing run."""

    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    ERROR = "error"
    COMPLETED = "completed"

    @property
    def is_terminal(self) -> bool:
        return self in (
            ProcessingState.COMPLETED,
            ProcessingState.CANCELLED,
            ProcessingState.ERROR,
        )


class Chunk(BaseModel):
    """
    A bounded slice of the input content.
    """
    id: str = Field(..., description="Unique identifier for the chunk within a run")
    index: int = Field(..., description="Order index of the chunk in the content")
    start_position: int = Field(..., description="Start offset in the original content")
    end_position: int = Field(..., description="End offset (exclusive) in the original content")
    content: str = Field(..., description="The text of the chunk")
    size: int = Field(..., description="Length in characters")
    size_bytes: int = Field(..., description="Length of the UTF-8 encoding")

    processed: bool = False
    error: Optional[str] = None
    processing_start_time: Optional[float] = None
    processing_end_time: Optional[float] = None

    # Whatever the processing function returned; not part of saved state
    result: Optional[Any] = Field(default=None, exclude=True)

    @property
    def attempted(self) -> bool:
        """True once the chunk has either succeeded or failed."""
        return self.processed or self.error is not None

    @property
    def processing_time_ms(self) -> Optional[float]:
        if self.processing_start_time is None or self.processing_end_time is None:
            return None
        return (self.processing_end_time - self.processing_start_time) * 1000


class ProcessingProgress(BaseModel):
    """Immutable progress snapshot emitted to progress callbacks."""

    model_config = ConfigDict(frozen=True)

    state: ProcessingState
    processed_chunks: int
    total_chunks: int
    percentage: float
    estimated_time_remaining_ms: Optional[float] = None
    chunks_per_second: Optional[float] = None
    active_concurrent_processes: int = 0
    current_chunk_id: Optional[str] = None


class ChunkProcessingOptions(BaseModel):
    """Options for ChunkedProcessor.process_content."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    chunk_size: int = Field(default=settings.CHUNK_SIZE, ge=1)
    max_concurrency: int = Field(default=settings.CHUNK_MAX_CONCURRENCY, ge=1)
    progress_callback: Optional[Callable[[ProcessingProgress], Any]] = None
    cancellation_token: Optional[CancellationToken] = None
    enable_resumable: bool = False
    enable_eta: bool = True
    continue_on_error: bool = True
    collect_metrics: bool = True

    def serializable(self) -> Dict[str, Any]:
        """Option values that survive a save/restore cycle."""
        return self.model_dump(exclude={"progress_callback", "cancellation_token"})


class ChunkProcessingMetrics(BaseModel):
    """Performance metrics for a chunked processing run."""

    total_processing_time_ms: float
    average_chunk_processing_time_ms: float
    chunks_per_second: float
    parallel_efficiency_score: float
    peak_concurrent_processes: int
    total_wait_time_ms: float


class ChunkStatistics(BaseModel):
    """Size statistics of the chunks produced by the split phase."""

    average_chunk_size: float
    min_chunk_size: int
    max_chunk_size: int
    total_content_size: int
    chunks_with_errors: int


class ProcessingResult(BaseModel):
    """Outcome of a (possibly partial) chunked processing run."""

    state: ProcessingState
    chunks: List[Chunk]
    processed_chunks: int
    failed_chunks: int
    total_chunks: int
    errors: List[str] = Field(default_factory=list)
    results: List[Any] = Field(default_factory=list)
    parallel_processing_used: bool
    max_concurrency_used: int
    performance_metrics: Optional[ChunkProcessingMetrics] = None
    chunk_statistics: Optional[ChunkStatistics] = None
    start_time: float
    end_time: float


class ResumableProcessingState(BaseModel):
    """
    Plain, serializable snapshot of a run.

    Holds no callbacks, tasks or tokens so it can be written to disk and
    restored into another processor instance.
    """

    run_id: str
    state: ProcessingState
    content: str = ""
    options: Dict[str, Any] = Field(default_factory=dict)
    chunks: List[Chunk] = Field(default_factory=list)
    current_index: int = 0
    start_time: float
    saved_at: float
    errors: List[str] = Field(default_factory=list)

    @property
    def total_chunks(self) -> int:
        return len(self.chunks)

    @property
    def attempted_chunks(self) -> int:
        return sum(1 for c in self.chunks if c.attempted)
