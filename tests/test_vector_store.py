"""Tests for the ChromaDB-backed vector store."""

import pytest

from il2cpp_ingest.models.record import VectorRecord
from il2cpp_ingest.services.protocols import VectorQueryClient, VectorStoreClient
from il2cpp_ingest.services.vector_store import VectorStoreService, _flatten_metadata


def test_flatten_metadata():
    """Scalars pass through, None is dropped, containers become JSON."""
    flat = _flatten_metadata({"name": "Type1", "offset": 16, "ok": True, "skip": None, "tags": ["b", "a"]})

    assert flat == {"name": "Type1", "offset": 16, "ok": True, "tags": '["b", "a"]'}


class TestVectorStoreService:
    """Tests against a throwaway persistent collection."""

    @pytest.fixture
    def store(self, temp_dir):
        return VectorStoreService(persist_path=str(temp_dir / "chroma"), collection_name="test_dump")

    def test_implements_protocols(self, store):
        assert isinstance(store, VectorStoreClient)
        assert isinstance(store, VectorQueryClient)

    @pytest.mark.asyncio
    async def test_upsert_is_idempotent(self, store):
        """Upserting the same ids twice keeps one copy of each."""
        records = [
            VectorRecord(id=f"type-{i}", content=f"public class Type{i}", metadata={"i": i}, vector=[float(i), 1.0, 0.5])
            for i in range(3)
        ]

        await store.upsert(records)
        await store.upsert(records)

        assert store.count() == 3
        fetched = store.get_by_ids(["type-1"])
        assert fetched["documents"] == ["public class Type1"]
        assert fetched["metadatas"][0]["i"] == 1

    @pytest.mark.asyncio
    async def test_query(self, store):
        await store.upsert([
            VectorRecord(id="a", content="class A", metadata={"name": "A"}, vector=[1.0, 0.0, 0.0]),
            VectorRecord(id="b", content="class B", metadata={"name": "B"}, vector=[0.0, 1.0, 0.0]),
        ])

        results = await store.query([0.9, 0.1, 0.0], n_results=1)

        assert results["ids"] == [["a"]]

    def test_get_by_ids_empty(self, store):
        assert store.get_by_ids([]) == {"ids": [], "documents": [], "metadatas": []}
