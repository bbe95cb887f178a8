"""Tests for the durable job queue."""
import pytest
from pydantic import ValidationError

from plugrag.exceptions import JobError
from plugrag.jobs import JobPayload, JobQueue, JobState, enqueue_document


class Clock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def queue(db, clock):
    return JobQueue(db, max_attempts=3, backoff_seconds=5, lease_seconds=300, clock=clock)


def _payload(document_id="doc-1"):
    return JobPayload(
        document_id=document_id,
        bot_id="bot-a",
        owner_id="tenant-a",
        storage_key=f"bot-a/{document_id}/file.txt",
        filename="file.txt",
    )


def test_enqueue_is_idempotent_while_pending(queue):
    first = queue.enqueue(_payload())
    second = queue.enqueue(_payload())

    assert first.created
    assert not second.created
    assert second.state == JobState.WAITING
    assert queue.metrics()["total"] == 1


def test_enqueue_rejects_incomplete_payload(queue):
    with pytest.raises(ValidationError):
        queue.enqueue({"document_id": "doc-1", "bot_id": "bot-a"})


def test_claim_leases_job_and_counts_attempt(queue, clock):
    queue.enqueue(_payload())

    job = queue.claim()

    assert job.state == JobState.ACTIVE
    assert job.attempts_made == 1
    assert job.lease_expires_at == clock.now + 300
    assert queue.claim() is None
    assert not queue.enqueue(_payload()).created


def test_retry_backoff_doubles(queue, clock):
    queue.enqueue(_payload())

    job = queue.claim()
    assert queue.fail(job.id, "network down") == JobState.WAITING
    assert queue.get(job.id).run_at == clock.now + 5
    assert queue.claim() is None

    clock.now += 5
    job = queue.claim()
    assert job.attempts_made == 2
    assert queue.fail(job.id, "network down") == JobState.WAITING
    assert queue.get(job.id).run_at == clock.now + 10


def test_fails_for_good_after_max_attempts(queue, clock):
    queue.enqueue(_payload())

    for _ in range(2):
        job = queue.claim()
        queue.fail(job.id, "flaky")
        clock.now += 60

    job = queue.claim()
    assert job.attempts_made == 3
    assert queue.fail(job.id, "flaky") == JobState.FAILED

    status = queue.status(job.id)
    assert status["state"] == "failed"
    assert status["failure_reason"] == "flaky"
    assert status["attempts_made"] == 3


def test_non_retryable_failure_is_terminal(queue):
    queue.enqueue(_payload())
    job = queue.claim()

    assert queue.fail(job.id, "no api key", retryable=False) == JobState.FAILED
    assert queue.status(job.id)["attempts_made"] == 1


def test_fail_unknown_job_raises(queue):
    with pytest.raises(JobError):
        queue.fail("missing", "boom")


def test_complete_records_result_and_progress(queue):
    queue.enqueue(_payload())
    job = queue.claim()
    queue.update_progress(job.id, 40)
    assert queue.status(job.id)["progress"] == 40

    queue.complete(job.id, {"chunk_count": 3})

    status = queue.status(job.id)
    assert status["state"] == "completed"
    assert status["progress"] == 100
    assert status["result"] == {"chunk_count": 3}


def test_finished_job_can_be_requeued(queue):
    queue.enqueue(_payload())
    queue.complete(queue.claim().id)

    handle = queue.enqueue(_payload())

    assert handle.created
    job = queue.get("doc-1")
    assert job.state == JobState.WAITING
    assert job.attempts_made == 0


def test_stalled_jobs_are_recovered(queue, clock):
    queue.enqueue(_payload("doc-1"))
    queue.claim()

    clock.now += 301
    assert queue.recover_stalled() == 1

    job = queue.claim()
    assert job.id == "doc-1"
    assert job.attempts_made == 2


def test_heartbeat_keeps_a_long_job_leased(queue, clock):
    queue.enqueue(_payload("doc-1"))
    queue.claim()

    clock.now += 200
    assert queue.heartbeat("doc-1") is True
    clock.now += 200

    assert queue.recover_stalled() == 0
    assert queue.status("doc-1")["state"] == "active"
    assert queue.claim() is None


def test_running_jobs_are_renewed_not_recovered(queue, clock):
    queue.enqueue(_payload("doc-1"))
    queue.enqueue(_payload("doc-2"))
    queue.claim()
    queue.claim()

    clock.now += 301
    assert queue.recover_stalled(running_ids={"doc-1"}) == 1

    assert queue.status("doc-1")["state"] == "active"
    assert queue.status("doc-2")["state"] == "waiting"
    assert queue.claim().id == "doc-2"


def test_heartbeat_on_finished_job_reports_lost_lease(queue):
    queue.enqueue(_payload())
    queue.complete(queue.claim().id)

    assert queue.heartbeat("doc-1") is False


def test_stalled_job_out_of_attempts_fails(db, clock):
    queue = JobQueue(db, max_attempts=1, lease_seconds=10, clock=clock)
    queue.enqueue(_payload())
    queue.claim()

    clock.now += 11
    queue.recover_stalled()

    assert queue.status("doc-1")["state"] == "failed"


def test_prune_respects_retention(queue, clock):
    queue.enqueue(_payload("old-done"))
    queue.complete(queue.claim().id)
    queue.enqueue(_payload("old-failed"))
    queue.fail(queue.claim().id, "bad", retryable=False)
    clock.now += 2 * 24 * 3600
    queue.enqueue(_payload("new-done"))
    queue.complete(queue.claim().id)

    deleted = queue.prune(
        keep_completed_seconds=24 * 3600,
        keep_completed_count=1000,
        keep_failed_seconds=7 * 24 * 3600,
    )

    assert deleted == 1
    assert queue.get("old-done") is None
    assert queue.get("new-done") is not None
    assert queue.get("old-failed") is not None


def test_prune_keeps_newest_completed(queue, clock):
    for document_id in ("a", "b", "c"):
        queue.enqueue(_payload(document_id))
        queue.complete(queue.claim().id)
        clock.now += 1

    queue.prune(keep_completed_seconds=10 ** 6, keep_completed_count=2)

    assert queue.get("a") is None
    assert queue.get("c") is not None


def test_remove(queue):
    queue.enqueue(_payload("waiting"))
    assert queue.remove("waiting") is True
    assert queue.remove("waiting") is False

    queue.enqueue(_payload("running"))
    queue.claim()
    with pytest.raises(JobError):
        queue.remove("running")


def test_metrics(queue, clock):
    queue.enqueue(_payload("a"))
    queue.enqueue(_payload("b"))
    queue.claim()

    metrics = queue.metrics()

    assert metrics["waiting"] == 1
    assert metrics["active"] == 1
    assert metrics["runnable"] == 1
    assert metrics["total"] == 2


async def _store(make_document, document_id="doc-1"):
    return await make_document(document_id, "notes.txt", b"plain text notes for the queue")


@pytest.mark.asyncio
async def test_enqueue_document_resets_state(db, queue, make_document):
    document = await _store(make_document)
    db.update_document(document.id, status="failed", embedding_status="failed", processing_error="old")

    handle = enqueue_document(db, queue, db.get_document(document.id))

    assert handle.created
    refreshed = db.get_document(document.id)
    assert refreshed.status == "uploaded"
    assert refreshed.embedding_status == "pending"
    assert refreshed.processing_error is None
    assert queue.get(document.id).payload.storage_key == document.storage_key
