"""Tests for the embedding manager."""
import asyncio

import pytest

from plugrag.exceptions import BotNotFoundError, CredentialError, StepTimeoutError
from plugrag.rag.chunker import Chunk
from plugrag.rag.embeddings import embedding_cost, normalize
from plugrag.rag.tokens import TokenCounter

pytestmark = pytest.mark.asyncio


def _chunks(*texts):
    return [
        Chunk(content=text, tokens=len(text) // 4, type="paragraph_boundary", chunk_index=i)
        for i, text in enumerate(texts)
    ]


async def test_embed_and_store_batches(embeddings, fake_client, bots):
    fragments = _chunks(*(f"fragment number {i} about llamas" for i in range(10)))

    result = await embeddings.embed_and_store("tenant-a", "bot-a", fragments, "doc-1", "llamas.txt")

    assert result.documents_stored == 10
    assert [len(call) for call in fake_client.embedding_calls] == [4, 4, 2]
    assert result.total_tokens > 0
    assert result.estimated_cost == pytest.approx(result.total_tokens / 1000 * 0.00002)
    assert embeddings.collection_status("bot-a")["points_count"] == 10


async def test_on_batch_reports_each_stored_batch(embeddings, bots):
    fragments = _chunks(*(f"fragment number {i} about llamas" for i in range(10)))
    progress = []

    await embeddings.embed_and_store(
        "tenant-a", "bot-a", fragments, "doc-1", "llamas.txt",
        on_batch=lambda stored, total: progress.append((stored, total)),
    )

    assert progress == [(4, 10), (8, 10), (10, 10)]


async def test_entries_keep_the_recounted_tokens(db, embeddings, bots):
    class SevenTokens(TokenCounter):
        def count(self, text, model):
            return 7

    embeddings.token_counter = SevenTokens()
    fragments = _chunks("a fragment whose estimate is not seven tokens at all")

    result = await embeddings.embed_and_store("tenant-a", "bot-a", fragments, "doc-1", "t.txt")

    assert fragments[0].tokens != 7
    assert result.total_tokens == 7
    assert [entry["token_count"] for entry in db.sample_vector_entries("bot-a")] == [7]


async def test_search_returns_best_match_first(embeddings, bots):
    fragments = _chunks(
        "The cafeteria serves lunch from noon until two.",
        "Parking permits are issued by the front desk.",
        "Annual leave requests go through the HR portal.",
    )
    await embeddings.embed_and_store("tenant-a", "bot-a", fragments, "doc-1", "handbook.txt")

    hits = await embeddings.search("tenant-a", "bot-a", "parking permits front desk", k=2)

    assert len(hits) == 2
    assert hits[0].content.startswith("Parking permits")
    assert hits[0].source_document == "doc-1"
    assert hits[0].file_name == "handbook.txt"
    assert hits[0].ordinal == 1
    assert hits[0].score >= hits[1].score


async def test_search_empty_query_or_collection(embeddings, fake_client, bots):
    assert await embeddings.search("tenant-a", "bot-a", "   ") == []
    assert await embeddings.search("tenant-a", "bot-a", "anything") == []
    assert fake_client.embedding_calls == []


async def test_bots_never_see_each_others_vectors(embeddings, bots):
    await embeddings.embed_and_store("tenant-a", "bot-a", _chunks("alpha secret plans"), "doc-a")
    await embeddings.embed_and_store("tenant-b", "bot-b", _chunks("beta public notes"), "doc-b")

    hits = await embeddings.search("tenant-b", "bot-b", "alpha secret plans", k=10)

    assert [hit.source_document for hit in hits] == ["doc-b"]


async def test_retry_overwrites_by_ordinal(embeddings, bots):
    await embeddings.embed_and_store("tenant-a", "bot-a", _chunks("one", "two"), "doc-1")
    await embeddings.embed_and_store("tenant-a", "bot-a", _chunks("one again", "two again"), "doc-1")

    assert embeddings.collection_status("bot-a")["points_count"] == 2


async def test_missing_document_id_is_unassigned(db, embeddings, bots):
    await embeddings.embed_and_store("tenant-a", "bot-a", _chunks("orphan fragment"))

    assert db.vector_entry_ids("bot-a", "unassigned")


async def test_wrong_tenant_is_rejected(embeddings, bots):
    with pytest.raises(BotNotFoundError):
        await embeddings.embed_and_store("tenant-b", "bot-a", _chunks("x"), "doc")


async def test_missing_credential_is_rejected(embeddings, bots):
    with pytest.raises(CredentialError):
        await embeddings.embed_and_store("tenant-c", "bot-nokey", _chunks("x"), "doc")


async def test_embedding_timeout(embeddings, bots):
    class SlowClient:
        async def embeddings(self, texts, model=None):
            await asyncio.sleep(1)

    embeddings.client_factory = lambda credential: SlowClient()
    embeddings.timeout = 0.01

    with pytest.raises(StepTimeoutError):
        await embeddings.embed_and_store("tenant-a", "bot-a", _chunks("slow"), "doc")


async def test_client_cached_until_key_changes(db, embeddings, bots):
    first, _ = embeddings.get_client("tenant-a", "bot-a")
    again, _ = embeddings.get_client("tenant-a", "bot-a")
    assert first is again

    built = []
    embeddings.client_factory = lambda credential: built.append(credential) or object()
    db.upsert_bot("bot-a", "tenant-a", api_key="sk-rotated-key-000011112222")
    embeddings.invalidate("bot-a")

    _, credential = embeddings.get_client("tenant-a", "bot-a")
    assert credential.api_key == "sk-rotated-key-000011112222"
    assert len(built) == 1


async def test_delete_document_vectors(embeddings, bots):
    await embeddings.embed_and_store("tenant-a", "bot-a", _chunks("a", "b"), "doc-1")
    await embeddings.embed_and_store("tenant-a", "bot-a", _chunks("c"), "doc-2")

    assert await embeddings.delete_document_vectors("bot-a", "doc-1") == 2
    assert embeddings.collection_status("bot-a")["points_count"] == 1


async def test_debug_bot(db, embeddings, bots, make_document):
    await make_document("doc-1", "notes.txt", b"some notes here")
    await embeddings.embed_and_store("tenant-a", "bot-a", _chunks("note fragment"), "doc-1")

    report = embeddings.debug_bot("bot-a")

    assert report["documents"] == 1
    assert report["document_states"] == {"uploaded": 1}
    assert report["sample_entries"][0]["document_id"] == "doc-1"


async def test_normalize_and_cost():
    rows = normalize([[3.0, 4.0], [0.0, 0.0]])

    assert rows[0].tolist() == pytest.approx([0.6, 0.8])
    assert rows[1].tolist() == [0.0, 0.0]
    assert embedding_cost(1000, "text-embedding-3-small") == pytest.approx(0.00002)
