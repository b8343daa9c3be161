"""IL2CPP Ingest services."""

from .batch_vector_store import BatchVectorStore
from .chunked_processor import ChunkedProcessor
from .connection_pool import ConnectionPool, PooledConnection
from .metrics import MovingAverage, PerformanceMetricsCollector
from .protocols import EmbeddingProvider, VectorQueryClient, VectorStoreClient

__all__ = [
    "BatchVectorStore",
    "ChunkedProcessor",
    "ConnectionPool",
    "PooledConnection",
    "MovingAverage",
    "PerformanceMetricsCollector",
    "EmbeddingProvider",
    "VectorQueryClient",
    "VectorStoreClient",
]
