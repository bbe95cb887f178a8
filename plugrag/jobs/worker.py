"""Worker pool that drains the job queue.

Concurrency (how many jobs run at once) and the rate limit (how many jobs
may start per period) are enforced independently.
"""
import asyncio
import time
from typing import Optional, Set

import structlog

from plugrag import config
from plugrag.exceptions import error_text, is_retryable
from plugrag.jobs.processor import DocumentProcessor
from plugrag.jobs.queue import Job, JobQueue, JobState
from plugrag.jobs.rate_limit import RateLimiter

logger = structlog.get_logger()


class Worker:
    """Claims jobs and runs them through the document processor."""

    def __init__(
        self,
        queue: JobQueue,
        processor: DocumentProcessor,
        concurrency: int = None,
        rate_limiter: Optional[RateLimiter] = None,
        poll_interval: float = None,
        maintenance_interval: float = 60.0,
    ):
        """Initialize the worker.

        Args:
            queue: Job queue to drain
            processor: Pipeline run for every job
            concurrency: Maximum jobs in flight (default from config)
            rate_limiter: Limits job starts (default from config)
            poll_interval: Seconds to wait when the queue is empty
            maintenance_interval: Seconds between stalled-job recovery and pruning
        """
        self.queue = queue
        self.processor = processor
        self.concurrency = concurrency or config.WORKER_CONCURRENCY
        self.rate_limiter = rate_limiter or RateLimiter(
            config.WORKER_RATE_MAX, config.WORKER_RATE_PERIOD
        )
        self.poll_interval = poll_interval or config.JOB_POLL_INTERVAL
        self.maintenance_interval = maintenance_interval

        self._slots = asyncio.Semaphore(self.concurrency)
        self._stopping = asyncio.Event()
        self._in_flight: Set[asyncio.Task] = set()
        self._running_ids: Set[str] = set()
        self._last_maintenance: Optional[float] = None

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def request_stop(self) -> None:
        """Stop claiming new jobs; running jobs carry on."""
        if not self._stopping.is_set():
            logger.info("worker_stop_requested", in_flight=self.in_flight)
        self._stopping.set()

    async def run(self) -> None:
        """Claim and run jobs until a stop is requested, then drain."""
        logger.info("worker_started", concurrency=self.concurrency)

        try:
            while not self._stopping.is_set():
                self._maintenance()

                await self._slots.acquire()
                if self._stopping.is_set():
                    self._slots.release()
                    break

                job = self.queue.claim()
                if job is None:
                    self._slots.release()
                    await self._idle()
                    continue

                await self.rate_limiter.acquire()
                self._start(job)
        finally:
            await self.shutdown()

    async def run_until_empty(self) -> None:
        """Process runnable jobs until none are left (one-shot mode for scripts)."""
        while True:
            await self._slots.acquire()
            job = self.queue.claim()
            if job is None:
                self._slots.release()
                break
            await self.rate_limiter.acquire()
            self._start(job)
        await self.shutdown()

    async def shutdown(self) -> None:
        """Stop claiming and wait for in-flight jobs to finish."""
        self.request_stop()
        if self._in_flight:
            logger.info("worker_draining", in_flight=self.in_flight)
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)
        logger.info("worker_stopped")

    async def _idle(self) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval)
        except TimeoutError:
            pass

    def _maintenance(self) -> None:
        now = time.monotonic()
        if self._last_maintenance is not None and now - self._last_maintenance < self.maintenance_interval:
            return
        self._last_maintenance = now
        try:
            # Jobs this worker is still running are renewed, never recovered
            self.queue.recover_stalled(running_ids=self._running_ids)
            self.queue.prune()
        except Exception as e:
            logger.error("queue_maintenance_failed", error=str(e), error_type=type(e).__name__)

    def _start(self, job: Job) -> None:
        self._running_ids.add(job.id)
        task = asyncio.create_task(self._run_job(job))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)

    async def _run_job(self, job: Job) -> None:
        log = logger.bind(job_id=job.id, attempt=job.attempts_made)

        def heartbeat() -> None:
            if not self.queue.heartbeat(job.id):
                log.warning("job_lease_lost")

        try:
            result = await self.processor.process(
                job.payload,
                lambda progress: self.queue.update_progress(job.id, progress),
                heartbeat=heartbeat,
            )
            self.queue.complete(job.id, result)

        except Exception as e:
            reason = error_text(e)
            retryable = is_retryable(e)
            log.error(
                "job_attempt_failed",
                error=reason,
                error_type=type(e).__name__,
                retryable=retryable,
            )
            try:
                state = self.queue.fail(job.id, reason, retryable)
                self.processor.record_failure(
                    job.payload.document_id, reason, terminal=state == JobState.FAILED
                )
            except Exception as record_error:
                log.error("job_failure_not_recorded", error=str(record_error))

        finally:
            self._running_ids.discard(job.id)
            self._slots.release()
