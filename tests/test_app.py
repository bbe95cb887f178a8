"""Tests for the HTTP endpoints."""
import pytest
import pytest_asyncio

from plugrag.main import MAX_MESSAGE_LENGTH, create_app
from plugrag.rag.orchestrator import FALLBACK_MODEL
from plugrag.services import build_services

pytestmark = pytest.mark.asyncio


@pytest.fixture
def services(tmp_path, object_store, fake_client, token_counter):
    services = build_services(
        db_path=tmp_path / "app.sqlite",
        object_store=object_store,
        vector_dir=tmp_path / "vectors",
        client_factory=lambda credential: fake_client,
    )
    services.embeddings.token_counter = token_counter
    services.db.upsert_bot("bot-a", "tenant-a", api_key="sk-bot-a-1234567890")
    return services


@pytest_asyncio.fixture
async def client(services):
    app = create_app(services)
    async with app.test_app() as test_app:
        yield test_app.test_client()


async def _upload(services, document_id="doc-1", data=b"The office opens at nine on weekdays."):
    from plugrag.db import DocumentRecord

    key = f"bot-a/{document_id}/hours.txt"
    await services.object_store.put(key, data)
    return services.db.create_document(DocumentRecord(
        id=document_id,
        bot_id="bot-a",
        owner_id="tenant-a",
        original_name="hours.txt",
        storage_key=key,
        byte_size=len(data),
    ))


async def test_process_document_is_idempotent(client, services):
    await _upload(services)

    first = await client.post("/api/documents/doc-1/process")
    second = await client.post("/api/documents/doc-1/process")

    assert first.status_code == 202
    assert (await first.get_json())["created"] is True
    body = await second.get_json()
    assert body == {"job_id": "doc-1", "state": "waiting", "created": False}


async def test_process_unknown_document(client):
    response = await client.post("/api/documents/missing/process")

    assert response.status_code == 404


async def test_document_status_follows_the_job(client, services):
    await _upload(services)
    await client.post("/api/documents/doc-1/process")

    await services.create_worker(concurrency=1).run_until_empty()
    response = await client.get("/api/documents/doc-1/status")

    body = await response.get_json()
    assert body["status"] == "completed"
    assert body["vector_count"] >= 1
    assert body["job"]["state"] == "completed"
    assert body["job"]["progress"] == 100


async def test_remove_job(client, services):
    await _upload(services)
    await client.post("/api/documents/doc-1/process")

    assert (await client.delete("/api/documents/doc-1/job")).status_code == 204
    assert (await client.delete("/api/documents/doc-1/job")).status_code == 404


async def test_remove_running_job_conflicts(client, services):
    await _upload(services)
    await client.post("/api/documents/doc-1/process")
    services.queue.claim()

    response = await client.delete("/api/documents/doc-1/job")

    assert response.status_code == 409


async def test_chat_without_documents_returns_fallback(client, fake_client):
    response = await client.post("/api/chat/bot-a", json={"message": "Where do I park?"})

    assert response.status_code == 200
    body = await response.get_json()
    assert body["model"] == FALLBACK_MODEL
    assert body["session_id"]
    assert fake_client.chat_calls == []


async def test_chat_keeps_session_history(client, services, fake_client):
    await _upload(services)
    await client.post("/api/documents/doc-1/process")
    await services.create_worker(concurrency=1).run_until_empty()

    first = await (await client.post("/api/chat/bot-a", json={"message": "When does the office open?"})).get_json()
    session_id = first["session_id"]
    await client.post("/api/chat/bot-a", json={"message": "And on weekends?", "session_id": session_id})

    assert first["has_relevant_context"] is True
    second_prompt = fake_client.chat_calls[1]["messages"][1]["content"]
    assert "USER: When does the office open?" in second_prompt
    assert len(services.conversations.get_recent_messages(session_id)) == 4


async def test_chat_validation(client):
    missing = await client.post("/api/chat/bot-a", json={})
    too_long = await client.post("/api/chat/bot-a", json={"message": "x" * (MAX_MESSAGE_LENGTH + 1)})
    bad_session = await client.post("/api/chat/bot-a", json={"message": "hi", "session_id": "nope"})

    assert missing.status_code == 400
    assert too_long.status_code == 400
    assert bad_session.status_code == 404


async def test_collection_status(client, services):
    response = await client.get("/api/bots/bot-a/collection")
    assert (await response.get_json())["exists"] is False

    response = await client.get("/api/bots/bot-a/collection?debug=1")
    body = await response.get_json()
    assert body["bot_id"] == "bot-a"
    assert body["documents"] == 0


async def test_health(client):
    live = await client.get("/health/live")
    ready = await client.get("/health/ready")

    assert live.status_code == 200
    assert ready.status_code == 200
    assert (await ready.get_json())["jobs"]["total"] == 0
