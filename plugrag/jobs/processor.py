"""Document processing pipeline run by the worker for each job.

download -> extract -> chunk -> credentials -> embed and store -> finalize
"""
import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import structlog

from plugrag import config
from plugrag.db import Database, utc_now
from plugrag.exceptions import ContentError, JobError, ObjectNotFoundError, StepTimeoutError
from plugrag.jobs.queue import JobPayload
from plugrag.rag.chunker import Chunker, chunk_document, get_chunker
from plugrag.rag.embeddings import EmbeddingManager
from plugrag.rag.extractors import extract_document
from plugrag.storage import ObjectStore

logger = structlog.get_logger()

T = TypeVar("T")

ProgressCallback = Callable[[int], None]
Heartbeat = Callable[[], None]

# Progress reported once each step has finished
PROGRESS = {
    "download": 10,
    "extract": 30,
    "chunk": 40,
    "credentials": 50,
    "embed": 60,
    "finalize": 95,
    "done": 100,
}

# Extraction metadata copied onto the document record
RECORDED_METADATA = (
    "extraction_method",
    "detected_file_type",
    "encoding",
    "title",
    "author",
    "total_pages",
    "total_rows",
    "total_columns",
    "original_error",
)


async def run_step(name: str, timeout: float, awaitable: Awaitable[T]) -> T:
    """Await one pipeline step under its own timeout.

    Raises:
        StepTimeoutError: If the step takes longer than ``timeout`` seconds
    """
    try:
        async with asyncio.timeout(timeout):
            return await awaitable
    except TimeoutError as e:
        raise StepTimeoutError(f"Step '{name}' timed out after {timeout}s") from e


class DocumentProcessor:
    """Turns one uploaded document into stored vectors."""

    def __init__(
        self,
        db: Database,
        object_store: ObjectStore,
        embeddings: EmbeddingManager,
        chunker: Optional[Chunker] = None,
        download_timeout: float = None,
        extraction_timeout: float = None,
    ):
        self.db = db
        self.object_store = object_store
        self.embeddings = embeddings
        self.chunker = chunker or get_chunker()
        self.download_timeout = download_timeout or config.DOWNLOAD_TIMEOUT
        self.extraction_timeout = extraction_timeout or config.EXTRACTION_TIMEOUT

    async def process(
        self,
        payload: JobPayload,
        report_progress: Optional[ProgressCallback] = None,
        heartbeat: Optional[Heartbeat] = None,
    ) -> Dict[str, Any]:
        """Run the whole pipeline for one document.

        Args:
            payload: Job payload naming the document
            report_progress: Called with each progress checkpoint
            heartbeat: Called after every embedding batch to keep the job's lease

        Returns:
            Summary stored as the job result

        Raises:
            ObjectNotFoundError: If the record or its bytes are missing
            ContentError: If the document yields no fragments
            StepTimeoutError: If a step exceeds its timeout
            Any error raised by the embedding step
        """
        report = report_progress or (lambda progress: None)
        document_id = payload.document_id

        document = self.db.get_document(document_id)
        if document is None:
            raise ObjectNotFoundError(f"Document record not found: {document_id}")
        if document.bot_id != payload.bot_id or document.owner_id != payload.owner_id:
            raise JobError(f"Job payload does not match document {document_id}")

        log = logger.bind(document_id=document_id, bot_id=payload.bot_id)
        log.info("document_processing_started", filename=payload.filename)
        self.db.update_document(
            document_id,
            status="processing",
            embedding_status="processing",
            processing_started_at=utc_now(),
            processing_error=None,
        )

        buffer = await run_step(
            "download", self.download_timeout, self.object_store.get(payload.storage_key)
        )
        if not buffer:
            raise ObjectNotFoundError(f"Object is empty: {payload.storage_key}")
        if payload.declared_size and payload.declared_size != len(buffer):
            log.warning("document_size_mismatch", declared=payload.declared_size, actual=len(buffer))
        report(PROGRESS["download"])

        extraction = await run_step(
            "extract",
            self.extraction_timeout,
            asyncio.to_thread(extract_document, buffer, payload.filename),
        )
        report(PROGRESS["extract"])

        chunks = chunk_document(extraction, self.chunker)
        if not chunks:
            raise ContentError(f"No text fragments could be produced from {payload.filename}")
        stats = self.chunker.get_chunk_stats(chunks)
        log.info("document_chunked", **stats)
        report(PROGRESS["chunk"])

        self.embeddings.get_client(payload.owner_id, payload.bot_id)
        report(PROGRESS["credentials"])

        stored = await self.embeddings.embed_and_store(
            payload.owner_id,
            payload.bot_id,
            chunks,
            document_id=document_id,
            file_name=payload.filename,
            on_batch=(lambda stored, total: heartbeat()) if heartbeat else None,
        )
        report(PROGRESS["embed"])

        if stored.documents_stored == 0:
            raise ContentError(f"No fragments were stored for {payload.filename}")

        now = utc_now()
        metadata = {
            key: extraction.metadata[key]
            for key in RECORDED_METADATA
            if extraction.metadata.get(key) not in (None, "")
        }
        metadata["chunk_types"] = stats.get("types", {})
        self.db.update_document(
            document_id,
            status="completed",
            embedding_status="completed",
            detected_kind=extraction.kind,
            chunk_count=len(chunks),
            vector_count=stored.documents_stored,
            token_count=stored.total_tokens,
            estimated_cost=stored.estimated_cost,
            processing_error=None,
            processed_at=now,
            embedded_at=now,
            metadata=metadata,
        )
        report(PROGRESS["finalize"])

        result = {
            "document_id": document_id,
            "kind": extraction.kind,
            "chunk_count": len(chunks),
            "vector_count": stored.documents_stored,
            "total_tokens": stored.total_tokens,
            "estimated_cost": stored.estimated_cost,
            "processing_time_ms": stored.processing_time_ms,
        }
        log.info("document_processing_completed", **result)
        report(PROGRESS["done"])
        return result

    def record_failure(self, document_id: str, error: str, terminal: bool) -> None:
        """Write a failed attempt onto the document record.

        Only a terminal failure moves the document to 'failed'; a failure
        that will be retried keeps it in 'processing' with the error text.
        """
        if self.db.get_document(document_id) is None:
            logger.warning("failure_for_unknown_document", document_id=document_id)
            return

        if terminal:
            self.db.update_document(
                document_id,
                status="failed",
                embedding_status="failed",
                processing_error=error,
                processed_at=utc_now(),
            )
        else:
            self.db.update_document(document_id, processing_error=error)
