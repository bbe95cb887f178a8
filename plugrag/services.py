"""Wiring of the pipeline components shared by the app and the scripts."""
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import structlog

from plugrag import config
from plugrag.credentials import CredentialCache, CredentialResolver
from plugrag.db import Database
from plugrag.jobs import DocumentProcessor, JobQueue, RateLimiter, Worker
from plugrag.memory import ConversationManager
from plugrag.rag.chunker import get_chunker
from plugrag.rag.embeddings import ClientFactory, EmbeddingManager
from plugrag.rag.orchestrator import DatabaseUsageSink, RAGOrchestrator
from plugrag.rag.store_faiss import FAISSVectorStore
from plugrag.storage import LocalObjectStore, ObjectStore

logger = structlog.get_logger()


@dataclass
class Services:
    """Everything the HTTP app and the worker need, built once."""

    db: Database
    object_store: ObjectStore
    resolver: CredentialResolver
    embeddings: EmbeddingManager
    queue: JobQueue
    processor: DocumentProcessor
    orchestrator: RAGOrchestrator
    conversations: ConversationManager

    def create_worker(self, concurrency: int = None, rate: int = None) -> Worker:
        rate_limiter = RateLimiter(rate or config.WORKER_RATE_MAX, config.WORKER_RATE_PERIOD)
        return Worker(self.queue, self.processor, concurrency=concurrency, rate_limiter=rate_limiter)


def build_services(
    db_path: Optional[Path] = None,
    object_store: Optional[ObjectStore] = None,
    vector_dir: Optional[Path] = None,
    client_factory: Optional[ClientFactory] = None,
) -> Services:
    """Build and connect the pipeline components.

    Args:
        db_path: SQLite file (default from config)
        object_store: Source of uploaded bytes (default: local filesystem store)
        vector_dir: Directory for FAISS collections (default from config)
        client_factory: Builds model clients (default: OpenAI client)

    Returns:
        Services with an initialised database schema
    """
    if db_path is None or vector_dir is None or object_store is None:
        config.ensure_dirs()

    db = Database(db_path)
    db.init_schema()

    resolver = CredentialResolver(db, cache=CredentialCache())
    embeddings = EmbeddingManager(
        db,
        resolver,
        store=FAISSVectorStore(db, vector_dir),
        client_factory=client_factory,
    )
    object_store = object_store or LocalObjectStore()

    services = Services(
        db=db,
        object_store=object_store,
        resolver=resolver,
        embeddings=embeddings,
        queue=JobQueue(db),
        processor=DocumentProcessor(db, object_store, embeddings, chunker=get_chunker()),
        orchestrator=RAGOrchestrator(embeddings, resolver, usage_sink=DatabaseUsageSink(db)),
        conversations=ConversationManager(db),
    )
    logger.info("services_built", db_path=str(db.path))
    return services
