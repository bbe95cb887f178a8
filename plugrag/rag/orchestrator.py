"""Retrieval-augmented answer generation.

Turns a question into either a grounded answer with sources or an honest
"nothing relevant" response. Every failure ends in a fallback answer; this
module never raises to its caller.
"""
import asyncio
import re
import time
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Protocol, Set

import structlog

from plugrag import config
from plugrag.credentials import CredentialResolver
from plugrag.db import Database
from plugrag.exceptions import StepTimeoutError, error_text
from plugrag.rag.embeddings import EmbeddingManager, SearchHit

logger = structlog.get_logger()

CITATION_PATTERN = re.compile(r"\s*\[Source \d+:[^\]]+\]\s*")

SYSTEM_PROMPT = """You are an AI assistant that answers questions based strictly on the provided context from uploaded documents.

IMPORTANT RULES:
1. ONLY answer questions using information from the provided context
2. If the context doesn't contain relevant information, politely decline and suggest topics you can help with
3. Be concise but comprehensive in your answers
4. Maintain a helpful and professional tone
5. If asked about topics outside your knowledge base, explain that you can only help with information from the uploaded documents"""

PROMPT_TEMPLATE = """CONTEXT:
{context}

CONVERSATION HISTORY:
{history}

QUESTION: {question}"""

NO_HISTORY = "No previous conversation."

FALLBACK_MESSAGE = (
    "I'm sorry, but I couldn't find relevant information in my knowledge base "
    "to answer your question.\n\n"
    "I can help you with questions about the documents that have been uploaded "
    "to this bot. You can:\n"
    "• Ask about the content in the uploaded documents\n"
    "• Request summaries of specific topics\n"
    "• Ask for details about processes or procedures mentioned in the files\n"
    "• Inquire about data or information contained in the knowledge base\n\n"
    "Please feel free to ask me about any topics covered in the uploaded documents!"
)

ERROR_MESSAGE = (
    "I apologize, but I encountered an error while processing your question. "
    "Please try again later."
)

FALLBACK_MODEL = "fallback"
ERROR_MODEL = "error-fallback"


@dataclass
class Answer:
    """A chat answer and what it was built from."""

    content: str
    sources: List[Dict[str, Any]]
    tokens_used: int
    response_time_ms: int
    model: str
    has_relevant_context: bool
    documents_found: int
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class UsageSink(Protocol):
    """Receives one usage event per answer."""

    def record(self, event: Dict[str, Any]) -> None:
        ...


class DatabaseUsageSink:
    """Writes usage events to the usage_events table."""

    def __init__(self, db: Database):
        self.db = db

    def record(self, event: Dict[str, Any]) -> None:
        self.db.insert_usage_event(
            bot_id=event["bot_id"],
            event_type=event["event_type"],
            owner_id=event.get("owner_id"),
            model=event.get("model"),
            tokens_used=event.get("tokens_used", 0),
            response_time_ms=event.get("response_time_ms"),
            has_relevant_context=event.get("has_relevant_context"),
            metadata={"documents_found": event.get("documents_found", 0)},
        )


def format_history(history: Optional[List[Dict[str, str]]], limit: int) -> str:
    """Render recent messages as ``ROLE: content`` lines."""
    messages = [m for m in (history or []) if m.get("content")][-limit:] if limit else []
    if not messages:
        return NO_HISTORY
    return "\n".join(f"{m.get('role', 'user').upper()}: {m['content']}" for m in messages)


def format_context(hits: List[SearchHit], max_chars: int) -> str:
    """Render retrieved fragments as numbered source blocks.

    Blocks are added best first until ``max_chars`` is reached; the first
    block is always included, truncated if necessary.
    """
    blocks: List[str] = []
    used = 0
    for i, hit in enumerate(hits, 1):
        chunk_number = int(hit.ordinal) + 1
        block = f"[Source {i}: {hit.file_name or 'Unknown'} (Chunk {chunk_number})]\n{hit.content}"
        if blocks and used + len(block) > max_chars:
            break
        if not blocks and len(block) > max_chars:
            block = block[:max_chars]
        blocks.append(block)
        used += len(block) + 2
    return "\n\n".join(blocks)


def strip_citations(text: str) -> str:
    """Remove inline ``[Source n: ...]`` markers from a generated answer."""
    return CITATION_PATTERN.sub(" ", text).strip()


def build_sources(hits: List[SearchHit]) -> List[Dict[str, Any]]:
    sources = []
    for hit in hits:
        source: Dict[str, Any] = {
            "file_name": hit.file_name or "Unknown",
            "chunk_index": hit.ordinal,
            "score": round(hit.score, 4),
        }
        if hit.page_number is not None:
            source["page_number"] = hit.page_number
        sources.append(source)
    return sources


class RAGOrchestrator:
    """Answers questions from a bot's knowledge base."""

    def __init__(
        self,
        embeddings: EmbeddingManager,
        resolver: CredentialResolver,
        usage_sink: Optional[UsageSink] = None,
        top_k: int = None,
        history_limit: int = None,
        max_context_chars: int = None,
        temperature: float = None,
        max_tokens: int = None,
        timeout: float = None,
    ):
        """Initialize the orchestrator.

        Args:
            embeddings: Embedding manager used for search and model clients
            resolver: Resolves bot owners
            usage_sink: Receives usage events (none recorded if omitted)
            top_k: Fragments retrieved per question
            history_limit: Previous messages included in the prompt
            max_context_chars: Character budget for the context block
            temperature: Generation temperature
            max_tokens: Generation token limit
            timeout: Seconds allowed for the generation call
        """
        self.embeddings = embeddings
        self.resolver = resolver
        self.usage_sink = usage_sink
        self.top_k = top_k or config.RETRIEVAL_TOP_K
        self.history_limit = config.HISTORY_MAX_MESSAGES if history_limit is None else history_limit
        self.max_context_chars = max_context_chars or config.MAX_CONTEXT_CHARS
        self.temperature = config.GENERATION_TEMPERATURE if temperature is None else temperature
        self.max_tokens = max_tokens or config.GENERATION_MAX_TOKENS
        self.timeout = timeout or config.GENERATION_TIMEOUT
        self._usage_tasks: Set[asyncio.Task] = set()

    async def answer(
        self,
        bot_id: str,
        question: str,
        conversation_history: Optional[List[Dict[str, str]]] = None,
    ) -> Answer:
        """Answer a question from the bot's documents.

        Args:
            bot_id: Bot whose knowledge base is searched
            question: The user's question
            conversation_history: Previous messages, oldest first, without
                the current question

        Returns:
            Answer; on any failure an error fallback with ``error`` set
        """
        start = time.perf_counter()
        owner_id = None

        try:
            owner_id = self.resolver.resolve_owner(bot_id)
            hits = await self._retrieve(owner_id, bot_id, question)

            if not hits:
                logger.info("rag_no_relevant_context", bot_id=bot_id)
                answer = Answer(
                    content=FALLBACK_MESSAGE,
                    sources=[],
                    tokens_used=0,
                    response_time_ms=_elapsed_ms(start),
                    model=FALLBACK_MODEL,
                    has_relevant_context=False,
                    documents_found=0,
                )
            else:
                answer = await self._generate(owner_id, bot_id, question, conversation_history, hits)
                answer.response_time_ms = _elapsed_ms(start)

        except Exception as e:
            logger.error(
                "rag_answer_failed",
                bot_id=bot_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            answer = Answer(
                content=ERROR_MESSAGE,
                sources=[],
                tokens_used=0,
                response_time_ms=_elapsed_ms(start),
                model=ERROR_MODEL,
                has_relevant_context=False,
                documents_found=0,
                error=error_text(e),
            )

        self._track_usage(bot_id, owner_id, answer)
        logger.info(
            "rag_answer_completed",
            bot_id=bot_id,
            model=answer.model,
            documents_found=answer.documents_found,
            tokens_used=answer.tokens_used,
            response_time_ms=answer.response_time_ms,
        )
        return answer

    async def _retrieve(self, owner_id: str, bot_id: str, question: str) -> List[SearchHit]:
        try:
            return await self.embeddings.search(owner_id, bot_id, question, k=self.top_k)
        except Exception as e:
            logger.error(
                "rag_retrieval_failed",
                bot_id=bot_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return []

    async def _generate(
        self,
        owner_id: str,
        bot_id: str,
        question: str,
        history: Optional[List[Dict[str, str]]],
        hits: List[SearchHit],
    ) -> Answer:
        client, credential = self.embeddings.get_client(owner_id, bot_id)
        prompt = PROMPT_TEMPLATE.format(
            context=format_context(hits, self.max_context_chars),
            history=format_history(history, self.history_limit),
            question=question,
        )
        messages = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ]

        try:
            async with asyncio.timeout(self.timeout):
                response = await client.chat(
                    messages,
                    model=credential.chat_model,
                    temperature=self.temperature,
                    max_tokens=self.max_tokens,
                )
        except TimeoutError as e:
            raise StepTimeoutError(f"Generation timed out after {self.timeout}s") from e

        usage = response.get("usage") or {}
        return Answer(
            content=strip_citations(response["content"]),
            sources=build_sources(hits),
            tokens_used=usage.get("total_tokens", 0),
            response_time_ms=0,
            model=response.get("model") or credential.chat_model,
            has_relevant_context=True,
            documents_found=len(hits),
        )

    def _track_usage(self, bot_id: str, owner_id: Optional[str], answer: Answer) -> None:
        """Hand the usage event to the sink without waiting for it."""
        if self.usage_sink is None:
            return
        event = {
            "bot_id": bot_id,
            "owner_id": owner_id,
            "event_type": "chat_answer",
            "model": answer.model,
            "tokens_used": answer.tokens_used,
            "response_time_ms": answer.response_time_ms,
            "has_relevant_context": answer.has_relevant_context,
            "documents_found": answer.documents_found,
        }
        task = asyncio.create_task(self._record_usage(event))
        self._usage_tasks.add(task)
        task.add_done_callback(self._usage_tasks.discard)

    async def _record_usage(self, event: Dict[str, Any]) -> None:
        try:
            await asyncio.to_thread(self.usage_sink.record, event)
        except Exception as e:
            logger.warning(
                "usage_tracking_failed",
                bot_id=event["bot_id"],
                error=str(e),
                error_type=type(e).__name__,
            )

    async def drain_usage(self) -> None:
        """Wait for pending usage events (used at shutdown and in tests)."""
        if self._usage_tasks:
            await asyncio.gather(*list(self._usage_tasks), return_exceptions=True)


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)
