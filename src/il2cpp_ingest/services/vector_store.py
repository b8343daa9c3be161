import asyncio
import json
from typing import Any, Dict, List, Optional, Sequence

import chromadb

from ..core.config import settings
from ..core.exceptions import StoreWriteError
from ..core.logging import logger
from ..models.record import VectorRecord


def _flatten_metadata(metadata: Dict[str, Any]) -> Dict[str, Any]:
    """ChromaDB only accepts scalar metadata values; serialize the rest."""
    flat = {}
    for key, value in metadata.items():
        if value is None:
            continue
        if isinstance(value, (str, int, float, bool)):
            flat[key] = value
        else:
            flat[key] = json.dumps(value, sort_keys=True, default=str)
    return flat


class VectorStoreService:
    """
    Service to interact with ChromaDB for vector storage.
    Implements the VectorStoreClient protocol used by BatchVectorStore.
    """

    def __init__(self, persist_path: str = settings.CHROMA_PERSIST_DIR, collection_name: str = settings.CHROMA_COLLECTION_NAME):
        logger.info(f"Initializing VectorStoreService at {persist_path}, collection: {collection_name}")
        try:
            self.client = chromadb.PersistentClient(path=persist_path)
            self.collection = self.client.get_or_create_collection(
                name=collection_name,
                metadata={"hnsw:space": "cosine"} # Cosine similarity
            )
        except Exception as e:
            logger.error(f"Failed to initialize ChromaDB: {e}")
            raise

    def upsert_batch(self, records: Sequence[VectorRecord]):
        """
        Upsert a single batch of records to ChromaDB (synchronous).

        Args:
            records: Records with precomputed vectors
        """
        if not records:
            return
        metadatas = [_flatten_metadata(r.metadata) or None for r in records]
        try:
            self.collection.upsert(
                ids=[r.id for r in records],
                documents=[r.content for r in records],
                metadatas=metadatas if any(metadatas) else None,
                embeddings=[r.vector for r in records],
            )
        except Exception as e:
            logger.error(f"Error upserting {len(records)} records to ChromaDB: {e}")
            raise StoreWriteError(f"ChromaDB upsert failed: {e}") from e

    async def upsert(self, records: Sequence[VectorRecord]) -> None:
        """Upsert without blocking the event loop."""
        await asyncio.to_thread(self.upsert_batch, list(records))

    async def query(self, query_embedding: List[float], n_results: int = 5) -> Dict[str, Any]:
        """
        Query the vector store.
        """
        try:
            return await asyncio.to_thread(
                self.collection.query,
                query_embeddings=[query_embedding],
                n_results=n_results,
            )
        except Exception as e:
            logger.error(f"Error querying ChromaDB: {e}")
            return {}

    def count(self) -> int:
        return self.collection.count()

    def get_by_ids(self, ids: List[str]) -> Dict[str, Any]:
        """
        Get records by their IDs.

        Returns:
            Dict containing documents, metadatas, and ids
        """
        if not ids:
            return {"ids": [], "documents": [], "metadatas": []}

        try:
            return self.collection.get(ids=ids)
        except Exception as e:
            logger.error(f"Error getting vectors by IDs: {e}")
            return {"ids": [], "documents": [], "metadatas": []}


# Singleton instance
_vector_store_instance: Optional[VectorStoreService] = None


def get_vector_store() -> VectorStoreService:
    """Get or create the singleton VectorStoreService instance."""
    global _vector_store_instance
    if _vector_store_instance is None:
        _vector_store_instance = VectorStoreService()
    return _vector_store_instance
