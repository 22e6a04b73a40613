"""Unit tests for the reconciliation sweep and its periodic driver."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest
from relay_core.audit import AuditActor, AuditEventType
from relay_core.models.jobs import Job, JobStatus, JobType
from relay_core.pipeline.reconciliation import ReconciliationDriver, time_bucket
from relay_core.pipeline.worker import Worker
from relay_core.state.repository import AuditRepository, InvoiceRepository, PdpSubmissionRepository
from relay_core.state.tables import PdpSubmissionTable
from relay_core.telemetry.metrics import RECONCILE_FANOUT
from sqlalchemy import update

TENANT = "tenant-a"


async def _seed_submissions(session_factory, clock, make_ghl_invoice) -> dict[str, str]:
    """Three stale pending submissions, one fresh one and one already accepted."""
    ids: dict[str, str] = {}
    async with session_factory.begin() as session:
        invoices = InvoiceRepository(session, tenant_id=TENANT)
        submissions = PdpSubmissionRepository(session, tenant_id=TENANT)
        for name, status in (
            ("stale-1", "SUBMITTED"),
            ("stale-2", "PROCESSING"),
            ("stale-3", "SUBMITTED"),
            ("fresh", "SUBMITTED"),
            ("accepted", "ACCEPTED"),
        ):
            ids[name] = await invoices.upsert_from_webhook(name, make_ghl_invoice(name))
            await submissions.upsert(ids[name], provider="mock", submission_id=f"sub-{name}", status=status)

        # The queue runs on the fake clock; stamp polls relative to it.
        for name in ("stale-1", "stale-2", "stale-3", "accepted"):
            await session.execute(
                update(PdpSubmissionTable)
                .where(PdpSubmissionTable.invoice_id == ids[name])
                .values(last_checked_at=clock() - timedelta(hours=1))
            )
        await session.execute(
            update(PdpSubmissionTable)
            .where(PdpSubmissionTable.invoice_id == ids["fresh"])
            .values(last_checked_at=clock() - timedelta(minutes=1))
        )
    return ids


def _reconcile_job(clock, **payload) -> Job:
    return Job(id="reconcile-job", type=JobType.RECONCILE_PDP, payload=payload, run_at=clock())


class TestReconcileSweep:
    @pytest.mark.asyncio
    async def test_fans_out_one_sync_per_stale_submission(
        self, queue, handlers, session_factory, tenants, clock, metrics, make_ghl_invoice
    ):
        ids = await _seed_submissions(session_factory, clock, make_ghl_invoice)

        await handlers.handle(_reconcile_job(clock, bucket=42))

        jobs = await queue.list_jobs(job_type=JobType.SYNC_STATUS)
        assert sorted(job.payload["invoice_id"] for job in jobs) == sorted(
            ids[name] for name in ("stale-1", "stale-2", "stale-3")
        )
        assert {job.idempotency_key for job in jobs} == {
            f"SYNC:{TENANT}:{ids[name]}:reconcile:42" for name in ("stale-1", "stale-2", "stale-3")
        }
        assert all(job.payload["reason"] == "reconcile" and job.payload["bucket"] == 42 for job in jobs)
        assert len({job.correlation_id for job in jobs}) == 3
        assert metrics.total(RECONCILE_FANOUT) == 3

        async with session_factory() as session:
            events = await AuditRepository(session, tenant_id=TENANT).query(
                event_type=AuditEventType.RECONCILE_ENQUEUED
            )
        assert len(events) == 3
        assert {event.actor for event in events} == {AuditActor.RECONCILER}

    @pytest.mark.asyncio
    async def test_same_bucket_enqueues_nothing_twice(
        self, queue, handlers, session_factory, tenants, clock, metrics, make_ghl_invoice
    ):
        await _seed_submissions(session_factory, clock, make_ghl_invoice)

        await handlers.handle(_reconcile_job(clock, bucket=42))
        await handlers.handle(_reconcile_job(clock, bucket=42))

        assert len(await queue.list_jobs(job_type=JobType.SYNC_STATUS)) == 3
        assert metrics.total(RECONCILE_FANOUT) == 3

    @pytest.mark.asyncio
    async def test_next_bucket_sweeps_again(self, queue, handlers, session_factory, tenants, clock, make_ghl_invoice):
        await _seed_submissions(session_factory, clock, make_ghl_invoice)

        await handlers.handle(_reconcile_job(clock, bucket=42))
        await handlers.handle(_reconcile_job(clock, bucket=43))

        assert len(await queue.list_jobs(job_type=JobType.SYNC_STATUS)) == 6

    @pytest.mark.asyncio
    async def test_bucket_defaults_to_current_window(
        self, queue, handlers, session_factory, tenants, clock, settings, make_ghl_invoice
    ):
        await _seed_submissions(session_factory, clock, make_ghl_invoice)

        await handlers.handle(_reconcile_job(clock))

        bucket = time_bucket(clock(), settings.reconcile_interval_seconds)
        jobs = await queue.list_jobs(job_type=JobType.SYNC_STATUS)
        assert {job.payload["bucket"] for job in jobs} == {bucket}

    @pytest.mark.asyncio
    async def test_limit_and_threshold_overrides(
        self, queue, handlers, session_factory, tenants, clock, make_ghl_invoice
    ):
        await _seed_submissions(session_factory, clock, make_ghl_invoice)

        await handlers.handle(_reconcile_job(clock, bucket=1, limit=2))
        assert len(await queue.list_jobs(job_type=JobType.SYNC_STATUS)) == 2

        # Two hours of staleness is more than any seeded submission has.
        await handlers.handle(_reconcile_job(clock, bucket=2, stale_seconds=7200))
        assert len(await queue.list_jobs(job_type=JobType.SYNC_STATUS)) == 2

    @pytest.mark.asyncio
    async def test_reconciled_syncs_reach_terminal_status(
        self, queue, handlers, session_factory, tenants, clock, make_ghl_invoice
    ):
        ids = await _seed_submissions(session_factory, clock, make_ghl_invoice)
        await queue.enqueue(JobType.RECONCILE_PDP, {"bucket": 5}, idempotency_key="RECONCILE:5")

        handled = await Worker(queue, handlers).drain()

        assert handled == 4
        async with session_factory() as session:
            repo = InvoiceRepository(session, tenant_id=TENANT)
            for name in ("stale-1", "stale-2", "stale-3"):
                assert (await repo.get(ids[name])).status == "ACCEPTED"
            assert (await repo.get(ids["fresh"])).status == "NEW"

    @pytest.mark.asyncio
    async def test_empty_sweep(self, queue, handlers, tenants, clock, metrics):
        await handlers.handle(_reconcile_job(clock, bucket=9))
        assert await queue.list_jobs(job_type=JobType.SYNC_STATUS) == []
        assert metrics.total(RECONCILE_FANOUT) == 0


class TestReconciliationDriver:
    @pytest.mark.asyncio
    async def test_tick_dedups_within_bucket(self, queue, clock):
        driver = ReconciliationDriver(queue, interval_seconds=300)

        first = await driver.tick()
        clock.advance(120)
        second = await driver.tick()

        assert first.enqueued is True
        assert second.enqueued is False
        (job,) = await queue.list_jobs(job_type=JobType.RECONCILE_PDP)
        assert job.idempotency_key == f"RECONCILE:{time_bucket(clock(), 300)}"
        assert job.tenant_id is None

    @pytest.mark.asyncio
    async def test_tick_in_next_bucket_enqueues(self, queue, clock):
        driver = ReconciliationDriver(queue, interval_seconds=300, stale_seconds=600, limit=10)

        await driver.tick()
        clock.advance(300)
        result = await driver.tick()

        assert result.enqueued is True
        job = await queue.get(result.id)
        assert job.payload == {"stale_seconds": 600, "limit": 10, "bucket": time_bucket(clock(), 300)}

    @pytest.mark.asyncio
    async def test_start_and_stop(self, queue):
        driver = ReconciliationDriver(queue, interval_seconds=3600)
        await driver.start()
        assert driver.running is True
        for _ in range(50):
            if await queue.list_jobs(job_type=JobType.RECONCILE_PDP):
                break
            await asyncio.sleep(0.01)
        await driver.stop()

        assert driver.running is False
        jobs = await queue.list_jobs(job_type=JobType.RECONCILE_PDP)
        assert [job.status for job in jobs] == [JobStatus.QUEUED]

    def test_rejects_non_positive_interval(self, queue):
        with pytest.raises(ValueError):
            ReconciliationDriver(queue, interval_seconds=0)


class TestTimeBucket:
    def test_window_boundaries(self):
        start = datetime(2025, 3, 1, 12, 0, tzinfo=UTC)
        bucket = time_bucket(start, 300)
        assert time_bucket(start + timedelta(seconds=299), 300) == bucket
        assert time_bucket(start + timedelta(seconds=300), 300) == bucket + 1
        assert time_bucket(start - timedelta(seconds=1), 300) == bucket - 1

    @pytest.mark.parametrize("interval", [0, -5])
    def test_non_positive_interval(self, interval):
        with pytest.raises(ValueError):
            time_bucket(datetime.now(UTC), interval)
