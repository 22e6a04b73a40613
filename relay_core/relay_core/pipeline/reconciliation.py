"""Periodic reconciliation driver.

Every tick enqueues one RECONCILE_PDP job keyed by the current time bucket,
so overlapping ticks (several workers, a restart, a manual ``relay
reconcile``) within one bucket collapse into a single sweep.  The sweep
itself lives in :meth:`PipelineHandlers.reconcile_pdp`.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime

from sqlalchemy.exc import InterfaceError, OperationalError

from relay_core.idempotency import IdempotencyStep, build_idempotency_key
from relay_core.models.jobs import EnqueueResult, JobType, ReconcilePayload
from relay_core.queue import JobQueue

logger = logging.getLogger(__name__)


def time_bucket(now: datetime, interval_seconds: int) -> int:
    """Index of the *interval_seconds*-wide window containing *now*."""
    if interval_seconds <= 0:
        raise ValueError("interval_seconds must be positive")
    return int(now.timestamp()) // interval_seconds


class ReconciliationDriver:
    """Timer that feeds RECONCILE_PDP jobs into the queue.

    Parameters
    ----------
    queue:
        Queue the sweeps are enqueued on.
    interval_seconds:
        Tick period, also the bucket width.
    stale_seconds:
        Optional override for the sweep's staleness threshold.
    limit:
        Optional override for the sweep's batch size.
    """

    def __init__(
        self,
        queue: JobQueue,
        *,
        interval_seconds: int = 300,
        stale_seconds: int | None = None,
        limit: int | None = None,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._queue = queue
        self._interval = interval_seconds
        self._stale_seconds = stale_seconds
        self._limit = limit
        self._running = False
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._running

    async def tick(self) -> EnqueueResult:
        """Enqueue the sweep for the current bucket (no-op if already enqueued)."""
        bucket = time_bucket(self._queue.now(), self._interval)
        payload = ReconcilePayload(stale_seconds=self._stale_seconds, limit=self._limit, bucket=bucket)
        result = await self._queue.enqueue(
            JobType.RECONCILE_PDP,
            payload.model_dump(exclude_none=True),
            idempotency_key=build_idempotency_key(IdempotencyStep.RECONCILE, bucket),
        )
        if result.enqueued:
            logger.info("Enqueued reconciliation sweep for bucket %d (job %s)", bucket, result.id)
        return result

    async def run(self, stop_event: asyncio.Event | None = None) -> None:
        """Tick every interval until *stop_event* is set."""
        stop = stop_event or asyncio.Event()
        logger.info("Reconciliation driver started (interval=%ds)", self._interval)
        while not stop.is_set():
            try:
                await self.tick()
            except (OperationalError, InterfaceError) as exc:
                logger.error("Reconciliation tick database error: %s", exc, exc_info=True)
            try:
                await asyncio.wait_for(stop.wait(), timeout=self._interval)
            except TimeoutError:
                pass
        logger.info("Reconciliation driver stopped")

    async def start(self) -> None:
        """Run the driver as a background task."""
        if self._running:
            logger.warning("ReconciliationDriver already running; ignoring start()")
            return
        self._running = True
        self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
