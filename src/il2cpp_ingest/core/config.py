"""Application configuration using Pydantic Settings."""
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    # Application
    APP_NAME: str = "IL2CPP Ingest"
    APP_VERSION: str = "1.0.0"
    APP_ENV: str = "development"
    LOG_LEVEL: str = "INFO"
    LOG_DIR: str = "./logs"
    LOG_FILE: str = "ingest.log"

    # Chunked processing
    CHUNK_SIZE: int = 10000
    CHUNK_MAX_CONCURRENCY: int = 4
    ETA_WINDOW_SIZE: int = 20

    # Batch insertion
    BATCH_STRATEGY: str = "adaptive"
    FIXED_BATCH_SIZE: int = 100
    MAX_BATCH_SIZE_BYTES: int = 1024 * 1024  # 1MB
    BATCH_MAX_CONCURRENCY: int = 5
    BATCH_MAX_RETRIES: int = 3
    RETRY_DELAY_MS: int = 1000
    RETRY_MAX_DELAY_MS: int = 30000
    BATCH_TIMEOUT_MS: int = 30000

    # Adaptive batching: batch size moves between MIN and MAX depending on
    # the latency of the previous batch
    ADAPTIVE_INITIAL_BATCH_SIZE: int = 50
    ADAPTIVE_MIN_BATCH_SIZE: int = 10
    ADAPTIVE_MAX_BATCH_SIZE: int = 200
    ADAPTIVE_TARGET_LATENCY_MS: float = 1000.0
    ADAPTIVE_SLOW_LATENCY_MS: float = 5000.0
    ADAPTIVE_GROWTH_FACTOR: float = 1.5
    ADAPTIVE_SHRINK_FACTOR: float = 0.7

    # Connection pool
    POOL_MAX_CONNECTIONS: int = 10
    POOL_MIN_CONNECTIONS: int = 2
    POOL_ACQUIRE_TIMEOUT_MS: int = 10000
    POOL_IDLE_TIMEOUT_MS: int = 60000
    POOL_MAX_RETRIES: int = 3

    # Performance thresholds for bottleneck and regression detection
    PERF_MAX_OPERATION_MS: float = 1000.0
    PERF_MAX_MEMORY_BYTES: int = 512 * 1024 * 1024  # 512MB
    PERF_MAX_CPU_PERCENT: float = 80.0
    PERF_MAX_ERROR_RATE_PERCENT: float = 10.0
    PERF_REGRESSION_PERCENT: float = 20.0

    # ChromaDB
    CHROMA_PERSIST_DIR: str = "./data/chroma_db"
    CHROMA_COLLECTION_NAME: str = "il2cpp_documents"

    # Models
    HF_EMBEDDING_MODEL: str = "sentence-transformers/all-MiniLM-L6-v2"
    HF_HOME: str = "./models/embeddings"
    EMBEDDING_DIM: int = 384  # Dimension for all-MiniLM-L6-v2
    EMBEDDING_WORKERS: int = 2

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )


settings = Settings()
