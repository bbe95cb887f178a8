"""Tests for the worker pool."""
import asyncio

import pytest

from plugrag.exceptions import RateLimitError
from plugrag.jobs import DocumentProcessor, JobPayload, JobQueue, RateLimiter, Worker, enqueue_document

pytestmark = pytest.mark.asyncio


@pytest.fixture
def queue(db):
    return JobQueue(db, max_attempts=3, backoff_seconds=5)


@pytest.fixture
def processor(db, object_store, embeddings):
    return DocumentProcessor(db, object_store, embeddings)


def _worker(queue, processor, concurrency=2):
    return Worker(
        queue,
        processor,
        concurrency=concurrency,
        rate_limiter=RateLimiter(100, period=1.0),
        poll_interval=0.01,
    )


def _payload(document_id):
    return JobPayload(
        document_id=document_id,
        bot_id="bot-a",
        owner_id="tenant-a",
        storage_key=f"bot-a/{document_id}/notes.txt",
        filename="notes.txt",
    )


class BlockingProcessor:
    """Processor whose jobs run until released."""

    def __init__(self):
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.failures = []

    async def process(self, payload, report_progress, heartbeat=None):
        report_progress(10)
        self.started.set()
        await self.release.wait()
        return {"document_id": payload.document_id}

    def record_failure(self, document_id, error, terminal):
        self.failures.append((document_id, error, terminal))


class CountingProcessor(BlockingProcessor):
    """Tracks how many jobs run at the same time."""

    def __init__(self):
        super().__init__()
        self.running = 0
        self.max_running = 0

    async def process(self, payload, report_progress, heartbeat=None):
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        await asyncio.sleep(0.01)
        self.running -= 1
        return {}


async def test_processes_queued_documents(db, queue, processor, bots, make_document):
    for document_id in ("doc-1", "doc-2"):
        document = await make_document(document_id, "notes.txt", f"notes number {document_id}".encode())
        enqueue_document(db, queue, document)

    await _worker(queue, processor).run_until_empty()

    for document_id in ("doc-1", "doc-2"):
        assert queue.status(document_id)["state"] == "completed"
        assert db.get_document(document_id).status == "completed"


async def test_transient_failure_is_retried(db, queue, processor, fake_client, bots, make_document):
    fake_client.embedding_error = RateLimitError("429 Too Many Requests")
    document = await make_document("doc-1", "notes.txt", b"notes that will be retried")
    enqueue_document(db, queue, document)

    await _worker(queue, processor).run_until_empty()

    status = queue.status("doc-1")
    assert status["state"] == "waiting"
    assert status["attempts_made"] == 1
    stored = db.get_document("doc-1")
    assert stored.status == "processing"
    assert stored.processing_error == "429 Too Many Requests"


async def test_configuration_failure_is_terminal(db, queue, processor, bots, make_document):
    document = await make_document(
        "doc-1", "notes.txt", b"notes for a bot without a key", bot_id="bot-nokey", owner_id="tenant-c"
    )
    enqueue_document(db, queue, document)

    await _worker(queue, processor).run_until_empty()

    assert queue.status("doc-1")["state"] == "failed"
    stored = db.get_document("doc-1")
    assert stored.status == "failed"
    assert "No API key available" in stored.processing_error


async def test_concurrency_limit(queue):
    processor = CountingProcessor()
    for i in range(6):
        queue.enqueue(_payload(f"doc-{i}"))

    await _worker(queue, processor, concurrency=2).run_until_empty()

    assert processor.max_running == 2
    assert queue.metrics()["completed"] == 6


async def test_graceful_shutdown_waits_for_running_job(queue):
    processor = BlockingProcessor()
    queue.enqueue(_payload("doc-1"))
    worker = _worker(queue, processor)

    task = asyncio.create_task(worker.run())
    await asyncio.wait_for(processor.started.wait(), timeout=2)
    assert queue.status("doc-1")["progress"] == 10

    worker.request_stop()
    await asyncio.sleep(0.05)
    assert not task.done()
    assert queue.status("doc-1")["state"] == "active"

    processor.release.set()
    await asyncio.wait_for(task, timeout=2)

    assert queue.status("doc-1")["state"] == "completed"
    assert worker.in_flight == 0


class SlowProcessor(CountingProcessor):
    """Runs past its lease without reporting progress."""

    def __init__(self):
        super().__init__()
        self.runs = 0
        self.finished = asyncio.Event()

    async def process(self, payload, report_progress, heartbeat=None):
        self.runs += 1
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        report_progress(50)
        await asyncio.sleep(0.3)
        self.running -= 1
        self.finished.set()
        return {}


async def test_job_outliving_its_lease_runs_once(db):
    queue = JobQueue(db, max_attempts=3, backoff_seconds=5, lease_seconds=0.05)
    processor = SlowProcessor()
    queue.enqueue(_payload("doc-1"))
    worker = Worker(
        queue,
        processor,
        concurrency=2,
        rate_limiter=RateLimiter(100, period=1.0),
        poll_interval=0.01,
        maintenance_interval=0.01,
    )

    task = asyncio.create_task(worker.run())
    await asyncio.wait_for(processor.finished.wait(), timeout=2)
    worker.request_stop()
    await asyncio.wait_for(task, timeout=2)

    assert processor.runs == 1
    assert processor.max_running == 1
    assert queue.status("doc-1")["state"] == "completed"


async def test_worker_renews_lease_after_each_embedding_batch(db, processor, bots, make_document):
    queue = JobQueue(db, lease_seconds=300)
    beats = []
    original = queue.heartbeat

    def heartbeat(job_id):
        beats.append(job_id)
        return original(job_id)

    queue.heartbeat = heartbeat
    text = "\n\n".join(f"Paragraph {i}. " + "word " * 200 for i in range(12)).encode()
    document = await make_document("doc-1", "long.txt", text)
    enqueue_document(db, queue, document)

    await _worker(queue, processor).run_until_empty()

    stored = db.get_document("doc-1")
    assert stored.status == "completed"
    assert len(beats) == -(-stored.vector_count // 4)
    assert set(beats) == {"doc-1"}
