"""IL2CPP dump ingestion: chunked processing and batched vector upserts."""

__version__ = "1.0.0"
