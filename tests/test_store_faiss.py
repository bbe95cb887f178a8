"""Tests for per-bot FAISS collections."""
import pytest

from plugrag.exceptions import VectorStoreError
from plugrag.rag.store_faiss import FAISSVectorStore, VectorHit

pytestmark = pytest.mark.asyncio


def _entry(document_id, index, content, tenant_id="tenant-a"):
    return {
        "tenant_id": tenant_id,
        "document_id": document_id,
        "chunk_index": index,
        "content": content,
        "file_name": f"{document_id}.txt",
        "fragment_type": "paragraph_boundary",
    }


async def test_search_on_missing_collection_is_empty(vector_store):
    assert await vector_store.search("nobody", [1.0, 0.0, 0.0]) == []
    assert vector_store.count("nobody") == 0
    assert vector_store.get_stats("nobody")["exists"] is False


async def test_upsert_and_search(vector_store):
    await vector_store.upsert(
        "bot-a",
        [[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]],
        [_entry("doc", 0, "first"), _entry("doc", 1, "second")],
        "test-model",
    )

    hits = await vector_store.search("bot-a", [0.0, 1.0, 0.0], top_k=2)

    assert [hit.entry["content"] for hit in hits] == ["second", "first"]
    assert hits[0].relevance_score == pytest.approx(1.0)
    stats = vector_store.get_stats("bot-a")
    assert stats == {"exists": True, "points_count": 2, "dimension": 3, "embedding_model": "test-model"}


async def test_collections_are_isolated_per_bot(vector_store):
    await vector_store.upsert("bot-a", [[1.0, 0.0]], [_entry("doc-a", 0, "secret a")], "m")
    await vector_store.upsert("bot-b", [[1.0, 0.0]], [_entry("doc-b", 0, "secret b", "tenant-b")], "m")

    hits_a = await vector_store.search("bot-a", [1.0, 0.0], top_k=10)
    hits_b = await vector_store.search("bot-b", [1.0, 0.0], top_k=10)

    assert [hit.entry["content"] for hit in hits_a] == ["secret a"]
    assert [hit.entry["content"] for hit in hits_b] == ["secret b"]


async def test_upsert_same_ordinal_overwrites(vector_store):
    await vector_store.upsert("bot-a", [[1.0, 0.0]], [_entry("doc", 0, "old")], "m")
    await vector_store.upsert("bot-a", [[0.0, 1.0]], [_entry("doc", 0, "new")], "m")

    hits = await vector_store.search("bot-a", [0.0, 1.0], top_k=5)

    assert vector_store.count("bot-a") == 1
    assert [hit.entry["content"] for hit in hits] == ["new"]


async def test_dimension_mismatch_raises(vector_store):
    await vector_store.upsert("bot-a", [[1.0, 0.0]], [_entry("doc", 0, "x")], "m")

    with pytest.raises(VectorStoreError, match="dimension mismatch"):
        await vector_store.upsert("bot-a", [[1.0, 0.0, 0.0]], [_entry("doc", 1, "y")], "m")
    with pytest.raises(VectorStoreError):
        await vector_store.search("bot-a", [1.0, 0.0, 0.0])


async def test_delete_document_keeps_others(vector_store):
    await vector_store.upsert(
        "bot-a",
        [[1.0, 0.0], [0.0, 1.0]],
        [_entry("keep", 0, "kept"), _entry("drop", 0, "dropped")],
        "m",
    )

    removed = await vector_store.delete_document("bot-a", "drop")

    assert removed == 1
    hits = await vector_store.search("bot-a", [0.0, 1.0], top_k=5)
    assert [hit.entry["content"] for hit in hits] == ["kept"]


async def test_delete_collection_only_touches_one_bot(vector_store):
    await vector_store.upsert("bot-a", [[1.0, 0.0]], [_entry("doc", 0, "a")], "m")
    await vector_store.upsert("bot-b", [[1.0, 0.0]], [_entry("doc", 0, "b", "tenant-b")], "m")

    assert await vector_store.delete_collection("bot-a") is True

    assert not vector_store.collection_exists("bot-a")
    assert vector_store.count("bot-b") == 1
    assert await vector_store.delete_collection("bot-a") is False


async def test_collection_survives_reload(db, tmp_path, vector_store):
    await vector_store.upsert("bot-a", [[1.0, 0.0]], [_entry("doc", 0, "persisted")], "m")

    reopened = FAISSVectorStore(db, tmp_path / "vectors")
    hits = await reopened.search("bot-a", [1.0, 0.0])

    assert [hit.entry["content"] for hit in hits] == ["persisted"]


async def test_relevance_score_decreases_with_distance():
    assert VectorHit(1, 0.0).relevance_score == 1.0
    assert VectorHit(1, 2.0).relevance_score < VectorHit(1, 1.0).relevance_score


async def test_reader_sees_vectors_written_by_another_store(db, tmp_path, vector_store):
    reader = FAISSVectorStore(db, tmp_path / "vectors")
    await vector_store.upsert("bot-a", [[1.0, 0.0]], [_entry("d1", 0, "apples red")], "m")
    assert [hit.entry["document_id"] for hit in await reader.search("bot-a", [1.0, 0.0])] == ["d1"]

    await vector_store.upsert("bot-a", [[0.0, 1.0]], [_entry("d2", 0, "bananas yellow")], "m")
    hits = await reader.search("bot-a", [0.0, 1.0], top_k=1)

    assert reader.count("bot-a") == 2
    assert hits[0].entry["document_id"] == "d2"


async def test_reader_sees_overwritten_vector(db, tmp_path, vector_store):
    reader = FAISSVectorStore(db, tmp_path / "vectors")
    await vector_store.upsert("bot-a", [[1.0, 0.0]], [_entry("doc", 0, "old")], "m")
    await reader.search("bot-a", [1.0, 0.0])

    await vector_store.upsert("bot-a", [[0.0, 1.0]], [_entry("doc", 0, "new")], "m")
    hits = await reader.search("bot-a", [0.0, 1.0])

    assert [hit.entry["content"] for hit in hits] == ["new"]
    assert hits[0].relevance_score == pytest.approx(1.0)


async def test_collection_deleted_elsewhere_is_not_resurrected(db, tmp_path, vector_store):
    other = FAISSVectorStore(db, tmp_path / "vectors")
    await vector_store.upsert("bot-a", [[1.0, 0.0]], [_entry("d1", 0, "stale")], "m")
    assert other.count("bot-a") == 1

    assert await other.delete_collection("bot-a") is True
    await vector_store.upsert("bot-a", [[0.0, 1.0]], [_entry("d2", 0, "fresh")], "m")

    assert other.count("bot-a") == 1
    hits = await other.search("bot-a", [1.0, 0.0], top_k=5)
    assert [hit.entry["content"] for hit in hits] == ["fresh"]
