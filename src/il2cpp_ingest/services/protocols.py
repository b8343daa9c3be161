"""Protocols for the external collaborators of the ingestion core.

Any object with matching methods can be plugged in; the ChromaDB and
sentence-transformers services in this package are the default
implementations.
"""

from typing import Any, Dict, List, Protocol, Sequence, runtime_checkable

from ..models.record import VectorRecord


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Turns an ordered list of texts into an ordered list of vectors."""

    async def embed(self, texts: Sequence[str]) -> List[List[float]]:
        ...


@runtime_checkable
class VectorStoreClient(Protocol):
    """Idempotent batched write keyed by each record's stable id."""

    async def upsert(self, records: Sequence[VectorRecord]) -> None:
        ...


@runtime_checkable
class VectorQueryClient(Protocol):
    """Similarity query against the remote store."""

    async def query(self, query_embedding: List[float], n_results: int = 5) -> Dict[str, Any]:
        ...
