"""Database-backed durable job queue."""

from relay_core.queue.backoff import PollBackoff, failure_retry_delay
from relay_core.queue.job_queue import JobQueue

__all__ = ["JobQueue", "PollBackoff", "failure_retry_delay"]
