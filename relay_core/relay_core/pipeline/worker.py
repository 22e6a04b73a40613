"""Queue worker: reserve, handle, complete or fail.

Many workers may poll the same queue; :meth:`JobQueue.reserve_next` hands a
job to exactly one of them.  A failing job never stops the loop: the error
is logged with the job id and passed to the queue's fail path, which
re-queues with backoff or gives up.
"""

from __future__ import annotations

import asyncio
import logging
import socket
import uuid

from sqlalchemy.exc import InterfaceError, OperationalError

from relay_core.models.jobs import JobStatus
from relay_core.pipeline.handlers import PipelineHandlers
from relay_core.queue import JobQueue
from relay_core.telemetry.logging import bind_correlation_id
from relay_core.telemetry.metrics import JOBS_PROCESSED, MetricsSink, NullMetricsSink

logger = logging.getLogger(__name__)


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{uuid.uuid4().hex[:8]}"


class Worker:
    """Polls the queue and dispatches jobs to :class:`PipelineHandlers`.

    Parameters
    ----------
    queue:
        Queue to poll.
    handlers:
        Stage implementations.
    worker_id:
        Recorded as ``locked_by`` on claimed jobs.
    poll_interval:
        Seconds to wait after an empty poll.
    lease_seconds:
        When set, jobs locked longer than this are re-queued at the start of
        every poll.
    metrics:
        Receives ``relay_jobs_processed_total``.
    """

    def __init__(
        self,
        queue: JobQueue,
        handlers: PipelineHandlers,
        *,
        worker_id: str | None = None,
        poll_interval: float = 1.0,
        lease_seconds: int | None = None,
        metrics: MetricsSink | None = None,
    ) -> None:
        self._queue = queue
        self._handlers = handlers
        self.worker_id = worker_id or default_worker_id()
        self._poll_interval = poll_interval
        self._lease_seconds = lease_seconds
        self._metrics = metrics or NullMetricsSink()

    async def process_once(self) -> bool:
        """Handle at most one job.  Returns ``True`` if a job was reserved."""
        if self._lease_seconds:
            await self._give_up_expired(self._lease_seconds)

        job = await self._queue.reserve_next(self.worker_id)
        if job is None:
            return False

        with bind_correlation_id(job.correlation_id or job.payload.get("correlation_id"), job_id=job.id):
            try:
                await self._handlers.handle(job)
            except Exception as exc:
                message = str(exc) or type(exc).__name__
                logger.error("Job %s (%s) failed: %s", job.id, job.type.value, message, exc_info=True)
                outcome = await self._queue.fail(job.id, message)
                self._metrics.increment(
                    JOBS_PROCESSED,
                    {"type": job.type.value, "outcome": "failed" if outcome is JobStatus.FAILED else "retried"},
                )
                if outcome is JobStatus.FAILED:
                    await self._handlers.mark_failed(job, message)
                return True

            await self._queue.complete(job.id)
            self._metrics.increment(JOBS_PROCESSED, {"type": job.type.value, "outcome": "completed"})
            logger.info("Job %s (%s) completed", job.id, job.type.value)
        return True

    async def _give_up_expired(self, lease_seconds: int) -> None:
        reclaimed = await self._queue.reclaim_stale(lease_seconds)
        for job in reclaimed.failed:
            self._metrics.increment(JOBS_PROCESSED, {"type": job.type.value, "outcome": "failed"})
            await self._handlers.mark_failed(job, job.last_error or "lease expired")

    async def drain(self, max_jobs: int = 1000) -> int:
        """Process due jobs until none is left (or *max_jobs*).  Returns the count."""
        handled = 0
        while handled < max_jobs and await self.process_once():
            handled += 1
        return handled

    async def run(self, stop_event: asyncio.Event | None = None) -> None:
        """Poll until *stop_event* is set, sleeping only after an empty poll."""
        stop = stop_event or asyncio.Event()
        logger.info("Worker %s started (poll_interval=%.1fs)", self.worker_id, self._poll_interval)
        while not stop.is_set():
            try:
                handled = await self.process_once()
            except (OperationalError, InterfaceError) as exc:
                logger.error("Worker %s database error: %s", self.worker_id, exc, exc_info=True)
                handled = False
            except Exception as exc:
                logger.error("Worker %s poll failed: %s", self.worker_id, exc, exc_info=True)
                handled = False
            if handled:
                continue
            try:
                await asyncio.wait_for(stop.wait(), timeout=self._poll_interval)
            except TimeoutError:
                pass
        logger.info("Worker %s stopped", self.worker_id)
