"""Pytest fixtures for IL2CPP Ingest tests."""

import asyncio
import shutil
import tempfile
from pathlib import Path
from typing import Callable, Dict, Generator, List, Optional, Sequence

import pytest

from il2cpp_ingest.core.exceptions import EmbeddingError, StoreWriteError
from il2cpp_ingest.models.record import ContentRecord, VectorRecord
from il2cpp_ingest.services.batch_vector_store import BatchVectorStore
from il2cpp_ingest.services.chunked_processor import ChunkedProcessor


class FakeEmbedder:
    """In-memory embedding provider with failure injection."""

    def __init__(self, dim: int = 8, delay: float = 0.0, fail_times: int = 0, drop_one: bool = False):
        self.dim = dim
        self.delay = delay
        self.fail_times = fail_times
        self.drop_one = drop_one
        self.calls: List[List[str]] = []

    async def embed(self, texts: Sequence[str]) -> List[List[float]]:
        self.calls.append(list(texts))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_times > 0:
            self.fail_times -= 1
            raise EmbeddingError("embedding backend unavailable")
        vectors = [[float((len(text) + i) % 13) for i in range(self.dim)] for text in texts]
        if self.drop_one:
            return vectors[:-1]
        return vectors


class FakeStore:
    """In-memory vector store; ``fail_when(records)`` decides whether an upsert is rejected."""

    def __init__(
        self,
        fail_when: Optional[Callable[[Sequence[VectorRecord]], bool]] = None,
        delay: float = 0.0,
        on_upsert: Optional[Callable[[Sequence[VectorRecord]], None]] = None,
    ):
        self.fail_when = fail_when
        self.delay = delay
        self.on_upsert = on_upsert
        self.records: Dict[str, VectorRecord] = {}
        self.batch_sizes: List[int] = []
        self.upsert_calls = 0

    async def upsert(self, records: Sequence[VectorRecord]) -> None:
        self.upsert_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_when is not None and self.fail_when(records):
            raise StoreWriteError("store rejected batch")
        self.batch_sizes.append(len(records))
        for record in records:
            self.records[record.id] = record
        if self.on_upsert is not None:
            self.on_upsert(records)


def make_dump(classes: int = 40) -> str:
    """Build IL2CPP-style dump text with one class block per type."""
    parts = []
    for i in range(classes):
        parts.append(
            f"// Namespace: Game.Module{i % 5}\n"
            f"public class Type{i} : MonoBehaviour // TypeDefIndex: {1000 + i}\n"
            "{\n"
            "\t// Fields\n"
            f"\tprivate int _value{i}; // 0x10\n"
            "\tpublic string name; // 0x18\n"
            "\n"
            "\t// Methods\n"
            f"\t// RVA: 0x{i:06X} Offset: 0x{i:06X} VA: 0x{i:06X}\n"
            "\tpublic void Update() { }\n"
            "}\n"
            "\n"
        )
    return "".join(parts)


def make_records(count: int, content_size: int = 40) -> List[ContentRecord]:
    """Records tagged with their position so failures can target whole batches."""
    return [
        ContentRecord(content=f"record {i} " + "x" * content_size, metadata={"n": i})
        for i in range(count)
    ]


@pytest.fixture(scope="function")
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    temp_path = Path(tempfile.mkdtemp(prefix="il2cpp_ingest_test_"))
    yield temp_path
    if temp_path.exists():
        shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture(scope="function")
def dump_content() -> str:
    """Sample IL2CPP dump content."""
    return make_dump()


@pytest.fixture(scope="function")
def dump_file(temp_dir: Path, dump_content: str) -> Path:
    """Write the sample dump to disk."""
    file_path = temp_dir / "dump.cs"
    file_path.write_text(dump_content, encoding="utf-8")
    return file_path


@pytest.fixture(scope="function")
def fake_embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture(scope="function")
def fake_store() -> FakeStore:
    return FakeStore()


@pytest.fixture(scope="function")
def batch_store(fake_embedder: FakeEmbedder, fake_store: FakeStore) -> BatchVectorStore:
    """BatchVectorStore wired to the in-memory fakes."""
    return BatchVectorStore(fake_embedder, fake_store)


@pytest.fixture(scope="function")
def processor() -> ChunkedProcessor:
    return ChunkedProcessor()
