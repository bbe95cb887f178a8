"""Shared fixtures: temp database, stores and a deterministic fake model client."""
import math
import re
import zlib
from typing import Any, Dict, List, Optional

import pytest

from plugrag.credentials import CredentialResolver
from plugrag.db import Database, DocumentRecord
from plugrag.rag.embeddings import EmbeddingManager
from plugrag.rag.store_faiss import FAISSVectorStore
from plugrag.rag.tokens import TokenCounter
from plugrag.storage import LocalObjectStore

DIMENSION = 64
WORD = re.compile(r"[a-z0-9]+")


def bag_of_words(text: str) -> List[float]:
    """Deterministic embedding: hashed word counts."""
    vector = [0.0] * DIMENSION
    for word in WORD.findall(text.lower()):
        vector[zlib.crc32(word.encode()) % DIMENSION] += 1.0
    if not any(vector):
        vector[0] = 1.0
    return vector


class FakeModelClient:
    """Stands in for OpenAIClient without touching the network."""

    def __init__(self, answer: str = "Paris is the capital [Source 1: geo.txt (Chunk 1)] of France."):
        self.answer = answer
        self.embedding_calls: List[List[str]] = []
        self.chat_calls: List[Dict[str, Any]] = []
        self.embedding_error: Optional[Exception] = None
        self.chat_error: Optional[Exception] = None

    async def embeddings(self, texts: List[str], model: str = None) -> Dict[str, Any]:
        self.embedding_calls.append(list(texts))
        if self.embedding_error is not None:
            raise self.embedding_error
        return {
            "embeddings": [bag_of_words(text) for text in texts],
            "usage": {"total_tokens": sum(math.ceil(len(t) / 4) for t in texts)},
        }

    async def chat(self, messages, model=None, temperature=None, max_tokens=None) -> Dict[str, Any]:
        self.chat_calls.append({
            "messages": messages,
            "model": model,
            "temperature": temperature,
            "max_tokens": max_tokens,
        })
        if self.chat_error is not None:
            raise self.chat_error
        return {"content": self.answer, "model": model, "usage": {"total_tokens": 42}}


class EstimatingTokenCounter(TokenCounter):
    """Token counter that never loads a tiktoken encoding."""

    def _encoding_for(self, model):
        return None


@pytest.fixture
def db(tmp_path) -> Database:
    database = Database(tmp_path / "test.sqlite")
    database.init_schema()
    return database


@pytest.fixture
def bots(db):
    """Two bots owned by different tenants, plus one without any usable key."""
    db.upsert_bot("bot-a", "tenant-a", name="Bot A", api_key="sk-bot-a-1234567890")
    db.upsert_bot("bot-b", "tenant-b", name="Bot B")
    db.upsert_bot("bot-nokey", "tenant-c", name="No key", fallback_to_global=False)
    return {"bot-a": "tenant-a", "bot-b": "tenant-b", "bot-nokey": "tenant-c"}


@pytest.fixture
def resolver(db) -> CredentialResolver:
    return CredentialResolver(db, global_api_key="sk-global-0987654321")


@pytest.fixture
def vector_store(db, tmp_path) -> FAISSVectorStore:
    return FAISSVectorStore(db, tmp_path / "vectors")


@pytest.fixture
def fake_client() -> FakeModelClient:
    return FakeModelClient()


@pytest.fixture
def token_counter() -> TokenCounter:
    return EstimatingTokenCounter()


@pytest.fixture
def embeddings(db, resolver, vector_store, fake_client, token_counter) -> EmbeddingManager:
    return EmbeddingManager(
        db,
        resolver,
        store=vector_store,
        client_factory=lambda credential: fake_client,
        token_counter=token_counter,
        batch_size=4,
        timeout=5,
    )


@pytest.fixture
def object_store(tmp_path) -> LocalObjectStore:
    return LocalObjectStore(tmp_path / "objects")


@pytest.fixture
def make_document(db, object_store):
    """Store bytes and create the matching document record."""

    async def _make(document_id: str, filename: str, data: bytes, bot_id="bot-a", owner_id="tenant-a"):
        key = f"{bot_id}/{document_id}/{filename}"
        await object_store.put(key, data)
        record = DocumentRecord(
            id=document_id,
            bot_id=bot_id,
            owner_id=owner_id,
            original_name=filename,
            storage_key=key,
            byte_size=len(data),
        )
        return db.create_document(record)

    return _make
