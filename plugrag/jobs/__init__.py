"""Background document processing: queue, worker pool and pipeline."""
from plugrag.jobs.processor import PROGRESS, DocumentProcessor
from plugrag.jobs.queue import Job, JobHandle, JobPayload, JobQueue, JobState, enqueue_document
from plugrag.jobs.rate_limit import RateLimiter
from plugrag.jobs.worker import Worker

__all__ = [
    "PROGRESS",
    "DocumentProcessor",
    "Job",
    "JobHandle",
    "JobPayload",
    "JobQueue",
    "JobState",
    "RateLimiter",
    "Worker",
    "enqueue_document",
]
