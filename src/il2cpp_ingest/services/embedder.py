import os
import asyncio
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional, Sequence
from sentence_transformers import SentenceTransformer
from ..core.config import settings
from ..core.exceptions import EmbeddingError
from ..core.logging import logger


# Global thread pool for CPU-bound embedding operations
# This prevents blocking the async event loop
_embedding_executor: Optional[ThreadPoolExecutor] = None


def get_embedding_executor() -> ThreadPoolExecutor:
    """Get or create the embedding thread pool executor."""
    global _embedding_executor
    if _embedding_executor is None:
        workers = settings.EMBEDDING_WORKERS
        _embedding_executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="embedder")
        logger.info(f"Created embedding ThreadPoolExecutor with {workers} workers")
    return _embedding_executor


class EmbedderService:
    """
    Generates vector embeddings for text using HuggingFace models.
    Implements the EmbeddingProvider protocol used by BatchVectorStore.
    """

    def __init__(self, model_name: str = settings.HF_EMBEDDING_MODEL):
        logger.info(f"Initializing EmbedderService with model: {model_name}")
        logger.info(f"Using HF_HOME: {settings.HF_HOME}")

        # Set HF_HOME to use local model cache
        os.environ['HF_HOME'] = settings.HF_HOME

        try:
            self.model = SentenceTransformer(model_name)
        except Exception as e:
            logger.error(f"Failed to load embedding model {model_name}: {e}")
            raise

    def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        """
        Generate embeddings for a batch of texts (synchronous).
        """
        try:
            embeddings = self.model.encode(list(texts), show_progress_bar=False)
            return embeddings.tolist()
        except Exception as e:
            logger.error(f"Error embedding batch of {len(texts)} texts: {e}")
            raise EmbeddingError(f"Embedding failed: {e}") from e

    async def embed(self, texts: Sequence[str]) -> List[List[float]]:
        """
        Generate embeddings for a batch of texts (async - runs in thread pool).
        Use this in async contexts to avoid blocking the event loop.
        """
        if not texts:
            return []
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(get_embedding_executor(), self.embed_batch, texts)


# Singleton instance
_embedder_instance: Optional[EmbedderService] = None


def get_embedder() -> EmbedderService:
    """Get or create the singleton EmbedderService instance."""
    global _embedder_instance
    if _embedder_instance is None:
        _embedder_instance = EmbedderService()
    return _embedder_instance
