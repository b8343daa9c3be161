"""Exception hierarchy for the ingestion core.

Transient errors are retried within a batch's retry budget, permanent errors
are recorded as failures straight away.
"""
from typing import Any, Dict, Optional


class IngestionError(Exception):
    """Base exception for ingestion errors."""

    def __init__(self, message: str, details: Dict[str, Any] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class ConfigurationError(IngestionError):
    """Raised when a component is configured with invalid values."""


# ==================== Transient ====================


class TransientIngestionError(IngestionError):
    """A failure that may succeed when the attempt is repeated."""


class PoolExhaustedError(TransientIngestionError):
    """No connection slot became free within the acquire timeout."""

    def __init__(self, timeout_ms: float, active: int, max_connections: int):
        super().__init__(
            f"Connection pool timeout: unable to acquire connection within {timeout_ms:.0f}ms",
            details={
                "timeout_ms": timeout_ms,
                "active_connections": active,
                "max_connections": max_connections,
            },
        )


class BatchTimeoutError(TransientIngestionError):
    """An embed + upsert round trip exceeded the per-call timeout."""

    def __init__(self, batch_index: int, timeout_ms: float):
        super().__init__(
            f"Batch {batch_index} timed out after {timeout_ms:.0f}ms",
            details={"batch_index": batch_index, "timeout_ms": timeout_ms},
        )


class EmbeddingError(TransientIngestionError):
    """The embedding provider failed to produce vectors."""


class StoreWriteError(TransientIngestionError):
    """The remote store rejected an upsert."""


# ==================== Permanent ====================


class PermanentIngestionError(IngestionError):
    """A failure that will not succeed on retry."""


class RecordValidationError(PermanentIngestionError):
    """A record could not be turned into a ContentRecord."""

    def __init__(self, position: int, reason: str):
        super().__init__(
            f"Invalid record at position {position}: {reason}",
            details={"position": position, "reason": reason},
        )


class EmbeddingMismatchError(PermanentIngestionError):
    """The embedding provider returned a different number of vectors than texts."""

    def __init__(self, expected: int, received: int):
        super().__init__(
            f"Embedding provider returned {received} vectors for {expected} texts",
            details={"expected": expected, "received": received},
        )


# ==================== Run-level ====================


class ChunkProcessingError(IngestionError):
    """A chunk failed while continue_on_error was disabled."""

    def __init__(self, chunk_index: int, chunk_id: str, reason: str):
        self.chunk_index = chunk_index
        self.chunk_id = chunk_id
        super().__init__(
            f"Chunk {chunk_index} ({chunk_id}) failed: {reason}",
            details={"chunk_index": chunk_index, "chunk_id": chunk_id},
        )


class BatchInsertError(IngestionError):
    """A batch insert could not complete.

    ``partial_result`` holds the counts reached before the failure; batches
    that were already upserted stay in the store.
    """

    def __init__(self, message: str, batch_index: int, partial_result: Optional[Any] = None):
        self.batch_index = batch_index
        self.partial_result = partial_result
        super().__init__(message, details={"batch_index": batch_index})


class ResumeError(IngestionError):
    """Processing cannot be resumed from the current state."""
