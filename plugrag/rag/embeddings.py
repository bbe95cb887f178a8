"""Embedding generation and per-bot vector storage.

Handles:
- Credential resolution and one API client per (bot, tenant)
- Accurate token counting and cost estimation
- Batched embedding calls with a per-call timeout
- Writes to and searches over the bot's own FAISS collection
"""
import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

import numpy as np
import structlog

from plugrag import config
from plugrag.credentials import Credential, CredentialResolver
from plugrag.db import Database
from plugrag.exceptions import StepTimeoutError
from plugrag.llm_client import OpenAIClient
from plugrag.rag.chunker import Chunk
from plugrag.rag.store_faiss import FAISSVectorStore
from plugrag.rag.tokens import TokenCounter

logger = structlog.get_logger()

UNASSIGNED_DOCUMENT = "unassigned"


class ModelClient(Protocol):
    """The subset of the model API the pipeline needs."""

    async def embeddings(self, texts: List[str], model: str = None) -> Dict[str, Any]:
        ...

    async def chat(
        self,
        messages: List[Dict[str, str]],
        model: str = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> Dict[str, Any]:
        ...


ClientFactory = Callable[[Credential], ModelClient]

# Called with (fragments stored so far, fragments in total) after each batch
BatchCallback = Callable[[int, int], None]


def default_client_factory(credential: Credential) -> ModelClient:
    return OpenAIClient(api_key=credential.api_key)


@dataclass
class StoreResult:
    """Outcome of embedding and storing one batch of fragments."""

    documents_stored: int
    total_tokens: int
    total_characters: int
    estimated_cost: float
    processing_time_ms: int


@dataclass
class SearchHit:
    """A retrieved fragment."""

    content: str
    source_document: str
    file_name: Optional[str]
    ordinal: float
    score: float
    fragment_type: Optional[str] = None
    page_number: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


def normalize(vectors: List[List[float]]) -> np.ndarray:
    """L2-normalise rows; zero vectors are left as they are."""
    matrix = np.asarray(vectors, dtype=np.float32)
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return matrix / norms


def embedding_cost(tokens: int, model: str) -> float:
    """Estimated USD cost of embedding ``tokens`` tokens with ``model``."""
    price = config.EMBEDDING_PRICES.get(model, config.DEFAULT_EMBEDDING_PRICE)
    return tokens / 1000 * price


class EmbeddingManager:
    """Embeds fragments and answers similarity searches, per bot."""

    def __init__(
        self,
        db: Database,
        resolver: CredentialResolver,
        store: Optional[FAISSVectorStore] = None,
        client_factory: ClientFactory = None,
        token_counter: Optional[TokenCounter] = None,
        batch_size: int = None,
        timeout: float = None,
    ):
        """Initialize the manager.

        Args:
            db: Database with vector entry metadata
            resolver: Credential resolver for bot API keys
            store: Vector store (default: FAISS store under VECTOR_DIR)
            client_factory: Builds a model client from a credential
            token_counter: Token counter (default: tiktoken-backed)
            batch_size: Texts per embedding call (default from config)
            timeout: Seconds allowed per embedding call (default from config)
        """
        self.db = db
        self.resolver = resolver
        self.store = store or FAISSVectorStore(db)
        self.client_factory = client_factory or default_client_factory
        self.token_counter = token_counter or TokenCounter()
        self.batch_size = batch_size or config.EMBEDDING_BATCH_SIZE
        self.timeout = timeout or config.EMBEDDING_TIMEOUT
        self._clients: Dict[Tuple[str, str], Tuple[str, ModelClient]] = {}

    def get_client(self, tenant_id: str, bot_id: str) -> Tuple[ModelClient, Credential]:
        """Client and credential for a bot, built once per (bot, tenant).

        A cached client is rebuilt only if the resolved key changed.

        Raises:
            BotNotFoundError: If the bot is unknown or not the tenant's
            CredentialError: If no API key is available
        """
        credential = self.resolver.resolve(bot_id, tenant_id)
        key = (bot_id, tenant_id)
        cached = self._clients.get(key)
        if cached is not None and cached[0] == credential.api_key:
            return cached[1], credential

        client = self.client_factory(credential)
        self._clients[key] = (credential.api_key, client)
        logger.debug("model_client_created", bot_id=bot_id, source=credential.source)
        return client, credential

    def invalidate(self, bot_id: str, tenant_id: Optional[str] = None) -> None:
        """Forget cached clients and credentials after a key rotation."""
        for key in list(self._clients):
            if key[0] == bot_id and (tenant_id is None or key[1] == tenant_id):
                self._clients.pop(key, None)
        self.resolver.cache.invalidate(bot_id, tenant_id)
        logger.info("model_client_invalidated", bot_id=bot_id, tenant_id=tenant_id)

    async def _embed(self, client: ModelClient, texts: List[str], model: str) -> Dict[str, Any]:
        try:
            async with asyncio.timeout(self.timeout):
                return await client.embeddings(texts, model=model)
        except TimeoutError as e:
            raise StepTimeoutError(f"Embedding call timed out after {self.timeout}s") from e

    async def embed_and_store(
        self,
        tenant_id: str,
        bot_id: str,
        fragments: List[Chunk],
        document_id: Optional[str] = None,
        file_name: Optional[str] = None,
        on_batch: Optional[BatchCallback] = None,
    ) -> StoreResult:
        """Embed fragments and upsert them into the bot's collection.

        Batches are written as they complete, so a failure part way leaves
        earlier batches stored; a retry overwrites them by ordinal.

        Args:
            tenant_id: Owner of the bot
            bot_id: Bot whose collection receives the vectors
            fragments: Chunker output
            document_id: Source document of the fragments
            file_name: Original file name, kept for citations
            on_batch: Called after each stored batch (the worker renews its job lease here)

        Returns:
            StoreResult with counts, tokens and estimated cost

        Raises:
            CredentialError: If the bot has no usable API key
            StepTimeoutError: If an embedding call exceeds its timeout
            TransientError: On retryable API failures
            VectorStoreError: If the collection cannot be written
        """
        start = time.perf_counter()
        client, credential = self.get_client(tenant_id, bot_id)
        model = credential.embedding_model
        document_id = document_id or UNASSIGNED_DOCUMENT

        fragments = [f for f in fragments if f.content.strip()]
        stored = 0
        total_tokens = 0
        total_characters = 0

        for offset in range(0, len(fragments), self.batch_size):
            batch = fragments[offset:offset + self.batch_size]
            texts = []
            token_counts = []
            for fragment in batch:
                tokens = self.token_counter.count(fragment.content, model)
                text = fragment.content
                if tokens > config.EMBEDDING_MAX_INPUT_TOKENS:
                    logger.warning(
                        "fragment_over_embedding_limit",
                        bot_id=bot_id,
                        document_id=document_id,
                        chunk_index=fragment.chunk_index,
                        tokens=tokens,
                    )
                    text = self.token_counter.truncate(text, model, config.EMBEDDING_MAX_INPUT_TOKENS)
                    tokens = config.EMBEDDING_MAX_INPUT_TOKENS
                texts.append(text)
                token_counts.append(tokens)
                total_tokens += tokens
                total_characters += len(fragment.content)

            response = await self._embed(client, texts, model)
            entries = [
                {
                    "tenant_id": tenant_id,
                    "document_id": document_id,
                    "chunk_index": fragment.chunk_index,
                    "file_name": file_name,
                    "fragment_type": fragment.type,
                    "token_count": tokens,
                    "content": fragment.content,
                    "metadata": {
                        **fragment.metadata,
                        "heading": fragment.heading,
                        "page_number": fragment.page_number,
                        "has_overlap": fragment.has_overlap,
                    },
                }
                for fragment, tokens in zip(batch, token_counts)
            ]
            vectors = normalize(response["embeddings"])
            await self.store.upsert(bot_id, vectors.tolist(), entries, model)
            stored += len(batch)

            logger.debug(
                "embedding_batch_stored",
                bot_id=bot_id,
                document_id=document_id,
                batch_start=offset,
                batch_size=len(batch),
            )
            if on_batch is not None:
                on_batch(stored, len(fragments))

        result = StoreResult(
            documents_stored=stored,
            total_tokens=total_tokens,
            total_characters=total_characters,
            estimated_cost=embedding_cost(total_tokens, model),
            processing_time_ms=int((time.perf_counter() - start) * 1000),
        )
        logger.info(
            "fragments_embedded",
            bot_id=bot_id,
            document_id=document_id,
            model=model,
            documents_stored=result.documents_stored,
            total_tokens=result.total_tokens,
            estimated_cost=result.estimated_cost,
            processing_time_ms=result.processing_time_ms,
        )
        return result

    async def search(
        self, tenant_id: str, bot_id: str, query: str, k: int = None
    ) -> List[SearchHit]:
        """Most similar fragments in the bot's collection, best first.

        Returns an empty list for an empty query or an empty collection.
        """
        if not query or not query.strip():
            logger.warning("empty_query_provided", bot_id=bot_id)
            return []
        if self.store.count(bot_id) == 0:
            logger.info("search_skipped_empty_collection", bot_id=bot_id)
            return []

        k = k or config.RETRIEVAL_TOP_K
        client, credential = self.get_client(tenant_id, bot_id)
        response = await self._embed(client, [query], credential.embedding_model)
        query_vector = normalize(response["embeddings"])[0]

        hits = await self.store.search(bot_id, query_vector.tolist(), top_k=k)
        results = []
        for hit in hits:
            entry = hit.entry
            metadata = entry.get("metadata") or {}
            results.append(SearchHit(
                content=entry["content"],
                source_document=entry["document_id"],
                file_name=entry.get("file_name"),
                ordinal=entry["chunk_index"],
                score=hit.relevance_score,
                fragment_type=entry.get("fragment_type"),
                page_number=metadata.get("page_number"),
                metadata=metadata,
            ))

        logger.info(
            "search_completed",
            bot_id=bot_id,
            results=len(results),
            top_score=results[0].score if results else None,
        )
        return results

    def collection_status(self, bot_id: str) -> Dict[str, Any]:
        """Existence, size and dimension of a bot's collection."""
        return self.store.get_stats(bot_id)

    async def delete_collection(self, bot_id: str) -> bool:
        """Delete a bot's knowledge base vectors."""
        return await self.store.delete_collection(bot_id)

    async def delete_document_vectors(self, bot_id: str, document_id: str) -> int:
        """Delete the vectors of one document from a bot's collection."""
        return await self.store.delete_document(bot_id, document_id)

    def debug_bot(self, bot_id: str) -> Dict[str, Any]:
        """Collection status, document states and sample entries for a bot."""
        documents = self.db.list_documents(bot_id)
        states: Dict[str, int] = {}
        for document in documents:
            states[document.status] = states.get(document.status, 0) + 1

        return {
            "bot_id": bot_id,
            "collection": self.collection_status(bot_id),
            "documents": len(documents),
            "document_states": states,
            "sample_entries": self.db.sample_vector_entries(bot_id),
        }
