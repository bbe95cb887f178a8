"""Durable document-processing queue on SQLite.

Handles:
- Idempotent enqueue (job id = document id)
- Atomic claiming with a lease, so a crashed worker's jobs come back
- Retry with exponential backoff, terminal failure after max attempts
- Progress reporting, retention pruning and per-state metrics
"""
import json
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Optional, Union

import structlog
from pydantic import BaseModel, Field

from plugrag import config
from plugrag.db import Database, DocumentRecord
from plugrag.exceptions import JobError

logger = structlog.get_logger()


class JobState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


PENDING_STATES = (JobState.WAITING.value, JobState.ACTIVE.value)


class JobPayload(BaseModel):
    """What a worker needs to process one uploaded document."""

    document_id: str = Field(..., min_length=1)
    bot_id: str = Field(..., min_length=1)
    owner_id: str = Field(..., min_length=1)
    storage_key: str = Field(..., min_length=1)
    filename: str = Field(..., min_length=1)
    mime_type: Optional[str] = None
    declared_size: int = Field(0, ge=0)


@dataclass
class Job:
    """A queued unit of work."""

    id: str
    payload: JobPayload
    state: JobState
    progress: int
    attempts_made: int
    max_attempts: int
    failure_reason: Optional[str]
    result: Optional[Dict[str, Any]]
    run_at: float
    lease_expires_at: Optional[float]
    created_at: float
    processed_at: Optional[float]
    finished_at: Optional[float]

    @classmethod
    def from_row(cls, row) -> "Job":
        return cls(
            id=row["id"],
            payload=JobPayload.model_validate_json(row["payload_json"]),
            state=JobState(row["state"]),
            progress=row["progress"],
            attempts_made=row["attempts_made"],
            max_attempts=row["max_attempts"],
            failure_reason=row["failure_reason"],
            result=json.loads(row["result_json"]) if row["result_json"] else None,
            run_at=row["run_at"],
            lease_expires_at=row["lease_expires_at"],
            created_at=row["created_at"],
            processed_at=row["processed_at"],
            finished_at=row["finished_at"],
        )


@dataclass
class JobHandle:
    """Returned by enqueue; ``created`` is False when an existing job was reused."""

    job_id: str
    state: JobState
    created: bool


class JobQueue:
    """At-least-once job queue stored in the ``jobs`` table."""

    def __init__(
        self,
        db: Database,
        max_attempts: int = None,
        backoff_seconds: float = None,
        lease_seconds: float = None,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the queue.

        Args:
            db: Database holding the jobs table
            max_attempts: Attempts before a job fails for good (default from config)
            backoff_seconds: Base of the exponential retry delay (default from config)
            lease_seconds: How long a claimed job may run before it counts as stalled
            clock: Wall clock, injectable for tests
        """
        self.db = db
        self.max_attempts = max_attempts or config.JOB_ATTEMPTS
        self.backoff_seconds = config.JOB_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds
        self.lease_seconds = lease_seconds or config.JOB_LEASE_SECONDS
        self.clock = clock

    def backoff_delay(self, attempts_made: int) -> float:
        """Delay before the next attempt after ``attempts_made`` failures."""
        return self.backoff_seconds * 2 ** max(attempts_made - 1, 0)

    def enqueue(self, payload: Union[JobPayload, Dict[str, Any]]) -> JobHandle:
        """Queue a document for processing.

        A job that is already waiting or active is left alone and its handle
        returned. A finished job (completed or failed) is replaced by a fresh
        one, which is how a document gets re-processed on request.

        Raises:
            pydantic.ValidationError: If the payload is incomplete
        """
        if not isinstance(payload, JobPayload):
            payload = JobPayload.model_validate(payload)
        job_id = payload.document_id
        now = self.clock()
        conn = self.db.get_connection()

        try:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute("SELECT state FROM jobs WHERE id = ?", (job_id,)).fetchone()
            if row and row["state"] in PENDING_STATES:
                conn.commit()
                logger.info("job_already_queued", job_id=job_id, state=row["state"])
                return JobHandle(job_id=job_id, state=JobState(row["state"]), created=False)

            conn.execute("""
                INSERT OR REPLACE INTO jobs (
                    id, payload_json, state, progress, attempts_made, max_attempts,
                    run_at, created_at
                ) VALUES (?, ?, ?, 0, 0, ?, ?, ?)
            """, (
                job_id,
                payload.model_dump_json(),
                JobState.WAITING.value,
                self.max_attempts,
                now,
                now,
            ))
            conn.commit()
            logger.info(
                "job_enqueued",
                job_id=job_id,
                bot_id=payload.bot_id,
                replaced=row is not None,
            )
            return JobHandle(job_id=job_id, state=JobState.WAITING, created=True)

        except Exception as e:
            conn.rollback()
            logger.error("job_enqueue_failed", error=str(e), job_id=job_id)
            raise
        finally:
            conn.close()

    def get(self, job_id: str) -> Optional[Job]:
        conn = self.db.get_connection()

        try:
            row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
            return Job.from_row(row) if row else None
        finally:
            conn.close()

    def status(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Polling view of a job, or None if there is no job for the id."""
        job = self.get(job_id)
        if job is None:
            return None
        return {
            "job_id": job.id,
            "state": job.state.value,
            "progress": job.progress,
            "attempts_made": job.attempts_made,
            "max_attempts": job.max_attempts,
            "failure_reason": job.failure_reason,
            "result": job.result,
            "processed_at": job.processed_at,
            "finished_at": job.finished_at,
        }

    def claim(self) -> Optional[Job]:
        """Atomically take the next runnable job and lease it.

        Returns:
            The claimed job (state active, attempts incremented) or None
        """
        now = self.clock()
        conn = self.db.get_connection()

        try:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute("""
                SELECT id FROM jobs
                WHERE state = ? AND run_at <= ?
                ORDER BY run_at, created_at
                LIMIT 1
            """, (JobState.WAITING.value, now)).fetchone()
            if not row:
                conn.commit()
                return None

            conn.execute("""
                UPDATE jobs SET
                    state = ?,
                    attempts_made = attempts_made + 1,
                    progress = 0,
                    lease_expires_at = ?,
                    processed_at = ?
                WHERE id = ?
            """, (JobState.ACTIVE.value, now + self.lease_seconds, now, row["id"]))
            claimed = conn.execute("SELECT * FROM jobs WHERE id = ?", (row["id"],)).fetchone()
            conn.commit()

            job = Job.from_row(claimed)
            logger.info("job_claimed", job_id=job.id, attempt=job.attempts_made)
            return job

        except Exception as e:
            conn.rollback()
            logger.error("job_claim_failed", error=str(e))
            raise
        finally:
            conn.close()

    def _update_active(self, job_id: str, assignments: str, params: tuple) -> bool:
        conn = self.db.get_connection()

        try:
            cursor = conn.execute(
                f"UPDATE jobs SET {assignments} WHERE id = ? AND state = ?",
                (*params, job_id, JobState.ACTIVE.value),
            )
            conn.commit()
            return cursor.rowcount > 0

        except Exception as e:
            conn.rollback()
            logger.error("job_update_failed", error=str(e), job_id=job_id)
            raise
        finally:
            conn.close()

    def update_progress(self, job_id: str, progress: int) -> None:
        """Record progress (0-100) and extend the lease."""
        progress = max(0, min(100, int(progress)))
        self._update_active(
            job_id,
            "progress = ?, lease_expires_at = ?",
            (progress, self.clock() + self.lease_seconds),
        )
        logger.debug("job_progress", job_id=job_id, progress=progress)

    def heartbeat(self, job_id: str) -> bool:
        """Extend the lease of an active job without touching its progress.

        Returns:
            False if the job is no longer active
        """
        return self._update_active(
            job_id, "lease_expires_at = ?", (self.clock() + self.lease_seconds,)
        )

    def complete(self, job_id: str, result: Optional[Dict[str, Any]] = None) -> None:
        """Mark an active job completed."""
        updated = self._update_active(
            job_id,
            "state = ?, progress = 100, result_json = ?, failure_reason = NULL, "
            "lease_expires_at = NULL, finished_at = ?",
            (JobState.COMPLETED.value, json.dumps(result) if result else None, self.clock()),
        )
        if not updated:
            logger.warning("job_complete_ignored", job_id=job_id)
            return
        logger.info("job_completed", job_id=job_id)

    def fail(self, job_id: str, reason: str, retryable: bool = True) -> JobState:
        """Record a failed attempt.

        The job goes back to waiting with a backoff delay while attempts
        remain and the error is retryable; otherwise it fails for good.

        Returns:
            The job's new state

        Raises:
            JobError: If the job does not exist
        """
        job = self.get(job_id)
        if job is None:
            raise JobError(f"Job not found: {job_id}")

        now = self.clock()
        if retryable and job.attempts_made < job.max_attempts:
            delay = self.backoff_delay(job.attempts_made)
            self._update_active(
                job_id,
                "state = ?, failure_reason = ?, run_at = ?, lease_expires_at = NULL",
                (JobState.WAITING.value, reason, now + delay),
            )
            logger.warning(
                "job_retry_scheduled",
                job_id=job_id,
                attempt=job.attempts_made,
                max_attempts=job.max_attempts,
                delay_seconds=delay,
                reason=reason,
            )
            return JobState.WAITING

        self._update_active(
            job_id,
            "state = ?, failure_reason = ?, lease_expires_at = NULL, finished_at = ?",
            (JobState.FAILED.value, reason, now),
        )
        logger.error(
            "job_failed",
            job_id=job_id,
            attempts_made=job.attempts_made,
            retryable=retryable,
            reason=reason,
        )
        return JobState.FAILED

    def recover_stalled(self, running_ids: Iterable[str] = ()) -> int:
        """Return active jobs whose lease expired to the waiting state.

        A stalled job that has used all its attempts fails instead.

        Args:
            running_ids: Jobs the caller is still running; their leases are
                renewed instead of being recovered

        Returns:
            Number of jobs recovered or failed
        """
        now = self.clock()
        running_ids = list(running_ids)
        conn = self.db.get_connection()

        try:
            conn.execute("BEGIN IMMEDIATE")
            if running_ids:
                placeholders = ",".join("?" for _ in running_ids)
                conn.execute(
                    f"UPDATE jobs SET lease_expires_at = ? WHERE state = ? AND id IN ({placeholders})",
                    (now + self.lease_seconds, JobState.ACTIVE.value, *running_ids),
                )
            failed = conn.execute("""
                UPDATE jobs SET state = ?, failure_reason = 'Job stalled: worker lease expired',
                    lease_expires_at = NULL, finished_at = ?
                WHERE state = ? AND lease_expires_at < ? AND attempts_made >= max_attempts
            """, (JobState.FAILED.value, now, JobState.ACTIVE.value, now)).rowcount
            requeued = conn.execute("""
                UPDATE jobs SET state = ?, lease_expires_at = NULL, run_at = ?
                WHERE state = ? AND lease_expires_at < ?
            """, (JobState.WAITING.value, now, JobState.ACTIVE.value, now)).rowcount
            conn.commit()

            if failed or requeued:
                logger.warning("stalled_jobs_recovered", requeued=requeued, failed=failed)
            return failed + requeued

        except Exception as e:
            conn.rollback()
            logger.error("stalled_job_recovery_failed", error=str(e))
            raise
        finally:
            conn.close()

    def prune(
        self,
        keep_completed_seconds: float = None,
        keep_completed_count: int = None,
        keep_failed_seconds: float = None,
    ) -> int:
        """Delete finished jobs past their retention.

        Returns:
            Number of jobs deleted
        """
        keep_completed_seconds = keep_completed_seconds or config.JOB_KEEP_COMPLETED_SECONDS
        keep_completed_count = keep_completed_count or config.JOB_KEEP_COMPLETED_COUNT
        keep_failed_seconds = keep_failed_seconds or config.JOB_KEEP_FAILED_SECONDS
        now = self.clock()
        conn = self.db.get_connection()

        try:
            deleted = conn.execute(
                "DELETE FROM jobs WHERE state = ? AND finished_at < ?",
                (JobState.COMPLETED.value, now - keep_completed_seconds),
            ).rowcount
            deleted += conn.execute("""
                DELETE FROM jobs WHERE state = ? AND id NOT IN (
                    SELECT id FROM jobs WHERE state = ?
                    ORDER BY finished_at DESC LIMIT ?
                )
            """, (JobState.COMPLETED.value, JobState.COMPLETED.value, keep_completed_count)).rowcount
            deleted += conn.execute(
                "DELETE FROM jobs WHERE state = ? AND finished_at < ?",
                (JobState.FAILED.value, now - keep_failed_seconds),
            ).rowcount
            conn.commit()

            if deleted:
                logger.info("jobs_pruned", deleted=deleted)
            return deleted

        except Exception as e:
            conn.rollback()
            logger.error("job_prune_failed", error=str(e))
            raise
        finally:
            conn.close()

    def remove(self, job_id: str) -> bool:
        """Delete a job that is not currently running.

        Raises:
            JobError: If the job is active
        """
        conn = self.db.get_connection()

        try:
            row = conn.execute("SELECT state FROM jobs WHERE id = ?", (job_id,)).fetchone()
            if not row:
                return False
            if row["state"] == JobState.ACTIVE.value:
                raise JobError(f"Cannot remove active job: {job_id}")
            conn.execute("DELETE FROM jobs WHERE id = ?", (job_id,))
            conn.commit()
            logger.info("job_removed", job_id=job_id)
            return True

        except JobError:
            raise
        except Exception as e:
            conn.rollback()
            logger.error("job_remove_failed", error=str(e), job_id=job_id)
            raise
        finally:
            conn.close()

    def metrics(self) -> Dict[str, int]:
        """Job counts per state, plus how many waiting jobs are due now."""
        conn = self.db.get_connection()

        try:
            counts = {state.value: 0 for state in JobState}
            for row in conn.execute("SELECT state, COUNT(*) AS n FROM jobs GROUP BY state"):
                counts[row["state"]] = row["n"]
            counts["runnable"] = conn.execute(
                "SELECT COUNT(*) FROM jobs WHERE state = ? AND run_at <= ?",
                (JobState.WAITING.value, self.clock()),
            ).fetchone()[0]
            counts["total"] = sum(counts[state.value] for state in JobState)
            return counts
        finally:
            conn.close()


def enqueue_document(db: Database, queue: JobQueue, document: DocumentRecord) -> JobHandle:
    """Queue a stored document, resetting its state when a new job is created."""
    handle = queue.enqueue(JobPayload(
        document_id=document.id,
        bot_id=document.bot_id,
        owner_id=document.owner_id,
        storage_key=document.storage_key,
        filename=document.original_name,
        mime_type=document.mime_type,
        declared_size=document.byte_size,
    ))
    if handle.created:
        db.update_document(
            document.id, status="uploaded", embedding_status="pending", processing_error=None
        )
    return handle
