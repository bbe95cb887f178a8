"""Tests for the per-document processing pipeline."""
import pytest

from plugrag.db import DocumentRecord
from plugrag.exceptions import CredentialError, JobError, ObjectNotFoundError
from plugrag.jobs import PROGRESS, DocumentProcessor, JobPayload

pytestmark = pytest.mark.asyncio

HANDBOOK = b"""# Office handbook

## Opening hours

The office opens at nine and closes at six on weekdays.

## Parking

Parking permits are issued by the front desk on request.
"""


@pytest.fixture
def processor(db, object_store, embeddings):
    return DocumentProcessor(db, object_store, embeddings)


def _payload(document, **overrides):
    fields = dict(
        document_id=document.id,
        bot_id=document.bot_id,
        owner_id=document.owner_id,
        storage_key=document.storage_key,
        filename=document.original_name,
        declared_size=document.byte_size,
    )
    fields.update(overrides)
    return JobPayload(**fields)


async def test_process_reports_every_checkpoint(db, processor, bots, make_document):
    document = await make_document("doc-1", "handbook.md", HANDBOOK)
    progress = []

    result = await processor.process(_payload(document), progress.append)

    assert progress == [10, 30, 40, 50, 60, 95, 100]
    assert progress == sorted(PROGRESS.values())
    assert result["vector_count"] == result["chunk_count"] > 0

    stored = db.get_document("doc-1")
    assert stored.status == "completed"
    assert stored.embedding_status == "completed"
    assert stored.detected_kind == "txt"
    assert stored.vector_count == result["vector_count"]
    assert stored.token_count > 0
    assert stored.estimated_cost > 0
    assert stored.processed_at is not None
    assert stored.metadata["extraction_method"] == "txt"


async def test_processed_document_is_searchable(processor, embeddings, bots, make_document):
    document = await make_document("doc-1", "handbook.md", HANDBOOK)
    await processor.process(_payload(document))

    hits = await embeddings.search("tenant-a", "bot-a", "parking permits front desk", k=1)

    assert "Parking permits" in hits[0].content
    assert hits[0].file_name == "handbook.md"


async def test_empty_object_is_rejected(db, processor, bots, make_document):
    document = await make_document("doc-1", "empty.txt", b"")
    progress = []

    with pytest.raises(ObjectNotFoundError):
        await processor.process(_payload(document), progress.append)

    assert progress == []
    assert db.get_document("doc-1").status == "processing"


async def test_missing_object_is_rejected(db, processor, bots):
    db.create_document(DocumentRecord(
        id="doc-1",
        bot_id="bot-a",
        owner_id="tenant-a",
        original_name="gone.txt",
        storage_key="bot-a/doc-1/gone.txt",
    ))

    with pytest.raises(ObjectNotFoundError):
        await processor.process(_payload(db.get_document("doc-1")))


async def test_unknown_document_record(processor, bots, make_document):
    document = await make_document("doc-1", "notes.txt", b"some notes for the bot")
    payload = _payload(document, document_id="doc-404")

    with pytest.raises(ObjectNotFoundError, match="record not found"):
        await processor.process(payload)


async def test_payload_must_match_record(processor, bots, make_document):
    document = await make_document("doc-1", "notes.txt", b"some notes for the bot")

    with pytest.raises(JobError):
        await processor.process(_payload(document, bot_id="bot-b"))


async def test_missing_credentials_stop_before_embedding(processor, fake_client, bots, make_document):
    document = await make_document(
        "doc-1", "notes.txt", b"notes that cannot be embedded", bot_id="bot-nokey", owner_id="tenant-c"
    )
    progress = []

    with pytest.raises(CredentialError):
        await processor.process(_payload(document), progress.append)

    assert progress == [10, 30, 40]
    assert fake_client.embedding_calls == []


async def test_record_failure(db, processor, bots, make_document):
    await make_document("doc-1", "notes.txt", b"some notes for the bot")

    processor.record_failure("doc-1", "timed out", terminal=False)
    document = db.get_document("doc-1")
    assert document.status == "uploaded"
    assert document.processing_error == "timed out"

    processor.record_failure("doc-1", "gave up", terminal=True)
    document = db.get_document("doc-1")
    assert document.status == "failed"
    assert document.embedding_status == "failed"
    assert document.processing_error == "gave up"

    processor.record_failure("doc-missing", "ignored", terminal=True)
