"""Durable job queue backed by the ``jobs`` table.

Every public method runs in its own short transaction opened from the
session factory.  Guarantees:

* ``enqueue`` is a no-op for a (tenant, type, idempotency key) that already
  exists, whatever that job's status.
* ``reserve_next`` hands a due job to exactly one caller.
* ``fail`` re-queues with ``2 ** attempts`` seconds of delay until
  ``max_attempts`` is reached, then marks the job ``failed``.

Locks are not expired automatically.  :meth:`JobQueue.reclaim_stale` exists
for deployments that opt into a lease (``job_lease_seconds``).
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from relay_core.models.jobs import EnqueueResult, Job, JobStatus, JobType, ReclaimResult
from relay_core.queue.backoff import failure_retry_delay
from relay_core.state.repository import UNSCOPED_TENANT, JobRepository
from relay_core.state.tables import JobTable
from relay_core.telemetry.metrics import JOBS_ENQUEUED, MetricsSink, NullMetricsSink

logger = logging.getLogger(__name__)

_MAX_ERROR_LENGTH = 4000


def _utcnow() -> datetime:
    return datetime.now(UTC)


def to_job(row: JobTable) -> Job:
    """Convert a ``jobs`` row into the :class:`Job` model."""
    return Job(
        id=row.id,
        type=JobType(row.type),
        payload=dict(row.payload or {}),
        tenant_id=row.tenant_id or None,
        correlation_id=row.correlation_id,
        status=JobStatus(row.status),
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        run_at=row.run_at,
        idempotency_key=row.idempotency_key,
        locked_by=row.locked_by,
        locked_at=row.locked_at,
        last_error=row.last_error,
    )


class JobQueue:
    """Queue facade used by workers, the webhook boundary and the CLI.

    Parameters
    ----------
    session_factory:
        Factory for the sessions each operation runs in.
    max_attempts:
        Attempt bound stamped on newly enqueued jobs.
    clock:
        Returns the current UTC time.  Injected by tests to step through
        backoff windows without sleeping.
    metrics:
        Sink receiving ``relay_jobs_enqueued_total``.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        max_attempts: int = 5,
        clock: Callable[[], datetime] | None = None,
        metrics: MetricsSink | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._max_attempts = max_attempts
        self._clock = clock or _utcnow
        self._metrics = metrics or NullMetricsSink()

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    def now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Producers
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        job_type: JobType,
        payload: dict[str, Any],
        *,
        tenant_id: str | None = None,
        correlation_id: str | None = None,
        idempotency_key: str | None = None,
        run_at: datetime | None = None,
    ) -> EnqueueResult:
        """Add a job; duplicates by (tenant, type, key) return ``enqueued=False``."""
        async with self._session_factory.begin() as session:
            result = await JobRepository(session).enqueue(
                job_type,
                payload,
                tenant_id=tenant_id,
                correlation_id=correlation_id,
                idempotency_key=idempotency_key,
                run_at=run_at or self._clock(),
                max_attempts=self._max_attempts,
            )
        if result.enqueued:
            self._metrics.increment(JOBS_ENQUEUED, {"type": job_type.value})
        return result

    # ------------------------------------------------------------------
    # Consumers
    # ------------------------------------------------------------------

    async def reserve_next(self, worker_id: str) -> Job | None:
        """Claim the earliest-due queued job for *worker_id*, or return ``None``.

        A claimed row that does not decode into a :class:`Job` (for example a
        type no handler exists for) is marked ``failed`` and skipped.
        """
        job: Job | None = None
        async with self._session_factory.begin() as session:
            jobs = JobRepository(session)
            while job is None:
                row = await jobs.claim_next(worker_id, self._clock())
                if row is None:
                    break
                try:
                    job = to_job(row)
                except ValueError as exc:
                    logger.error("Job %s has an undecodable row (type=%s): %s", row.id, row.type, exc)
                    message = f"undecodable job: {exc}"[:_MAX_ERROR_LENGTH]
                    await jobs.mark_undecodable(row.id, message, self._clock())
        if job is not None:
            logger.debug(
                "Worker %s reserved job %s type=%s attempt=%d/%d",
                worker_id,
                job.id,
                job.type.value,
                job.attempts,
                job.max_attempts,
            )
        return job

    async def complete(self, job_id: str) -> None:
        """Mark the job completed.  Calling it again is harmless."""
        async with self._session_factory.begin() as session:
            found = await JobRepository(session).mark_completed(job_id, self._clock())
        if not found:
            logger.warning("complete() called for unknown job %s", job_id)

    async def fail(self, job_id: str, error_message: str) -> JobStatus | None:
        """Record a failed attempt and either re-queue with backoff or give up.

        Returns
        -------
        JobStatus | None
            ``QUEUED`` when a retry was scheduled, ``FAILED`` when attempts
            are exhausted, ``None`` for an unknown job id.
        """
        now = self._clock()
        message = (error_message or "unknown error")[:_MAX_ERROR_LENGTH]
        async with self._session_factory.begin() as session:
            row = await JobRepository(session).get(job_id, for_update=True)
            if row is None:
                logger.warning("fail() called for unknown job %s", job_id)
                return None

            row.last_error = message
            row.locked_by = None
            row.locked_at = None
            row.updated_at = now
            if row.attempts < row.max_attempts:
                delay = failure_retry_delay(row.attempts)
                row.status = JobStatus.QUEUED.value
                row.run_at = now + timedelta(seconds=delay)
                outcome = JobStatus.QUEUED
            else:
                row.status = JobStatus.FAILED.value
                delay = 0.0
                outcome = JobStatus.FAILED
            attempts, max_attempts, job_type = row.attempts, row.max_attempts, row.type

        if outcome is JobStatus.QUEUED:
            logger.info(
                "Job %s (%s) failed attempt %d/%d; retrying in %.0fs",
                job_id,
                job_type,
                attempts,
                max_attempts,
                delay,
            )
        else:
            logger.error("Job %s (%s) permanently failed after %d attempts: %s", job_id, job_type, attempts, message)
        return outcome

    async def reclaim_stale(self, lease_seconds: int) -> ReclaimResult:
        """Release ``running`` jobs whose lock is older than *lease_seconds*.

        The attempt count is kept, so a crashed run counts as an attempt: a
        job with attempts left is re-queued, one that used its last attempt
        is marked ``failed`` and returned in ``failed``.
        """
        now = self._clock()
        async with self._session_factory.begin() as session:
            requeued, rows = await JobRepository(session).reclaim_expired(now - timedelta(seconds=lease_seconds), now)
            failed = [to_job(row) for row in rows]
        if requeued:
            logger.warning("Re-queued %d job(s) with locks older than %ds", requeued, lease_seconds)
        for job in failed:
            logger.error(
                "Job %s (%s) permanently failed: lease expired on attempt %d", job.id, job.type.value, job.attempts
            )
        return ReclaimResult(requeued=requeued, failed=failed)

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    async def get(self, job_id: str) -> Job | None:
        async with self._session_factory() as session:
            row = await JobRepository(session).get(job_id)
            return to_job(row) if row is not None else None

    async def list_jobs(
        self,
        *,
        job_type: JobType | None = None,
        status: JobStatus | None = None,
        tenant_id: str | None = None,
    ) -> list[Job]:
        async with self._session_factory() as session:
            rows = await JobRepository(session).list_jobs(
                job_type=job_type,
                status=status,
                tenant_id=UNSCOPED_TENANT if tenant_id == "" else tenant_id,
            )
            return [to_job(row) for row in rows]
