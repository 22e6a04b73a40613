"""Unit tests for the queue worker loop."""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta

import pytest
from relay_core.models.jobs import JobStatus, JobType
from relay_core.pipeline.worker import Worker, default_worker_id
from relay_core.state.repository import InvoiceRepository
from relay_core.state.tables import InvoiceTable, JobTable
from relay_core.telemetry.metrics import JOBS_PROCESSED
from sqlalchemy import update

TENANT = "tenant-a"


def _processed(metrics, job_type: JobType, outcome: str) -> int:
    return metrics.counts[(JOBS_PROCESSED, (("outcome", outcome), ("type", job_type.value)))]


async def _enqueue_unmappable(queue, session_factory, invoice_id: str) -> str:
    async with session_factory.begin() as session:
        await session.execute(update(InvoiceTable).where(InvoiceTable.id == invoice_id).values(raw_payload=None))
    result = await queue.enqueue(
        JobType.MAP_CANONICAL,
        {"tenant_id": TENANT, "invoice_id": invoice_id},
        tenant_id=TENANT,
        idempotency_key=f"MAP:{TENANT}:{invoice_id}",
    )
    return result.id


class TestProcessOnce:
    @pytest.mark.asyncio
    async def test_empty_queue(self, queue, handlers):
        assert await Worker(queue, handlers).process_once() is False

    @pytest.mark.asyncio
    async def test_success_completes_job(self, queue, handlers, metrics, tenants):
        result = await queue.enqueue(JobType.RECONCILE_PDP, {"bucket": 1})
        worker = Worker(queue, handlers, worker_id="w-1", metrics=metrics)

        assert await worker.process_once() is True

        job = await queue.get(result.id)
        assert job.status is JobStatus.COMPLETED
        assert _processed(metrics, JobType.RECONCILE_PDP, "completed") == 1

    @pytest.mark.asyncio
    async def test_failure_retries_then_marks_invoice_error(
        self, queue, handlers, session_factory, invoice_id, clock, metrics
    ):
        job_id = await _enqueue_unmappable(queue, session_factory, invoice_id)
        worker = Worker(queue, handlers, metrics=metrics)

        assert await worker.process_once() is True
        job = await queue.get(job_id)
        assert (job.status, job.attempts) == (JobStatus.QUEUED, 1)
        assert "no raw payload" in job.last_error

        # Not due yet: the retry waits 2 ** attempts seconds.
        assert await worker.process_once() is False
        clock.advance(2)
        assert await worker.process_once() is True
        clock.advance(4)
        assert await worker.process_once() is True

        job = await queue.get(job_id)
        assert (job.status, job.attempts) == (JobStatus.FAILED, 3)
        assert _processed(metrics, JobType.MAP_CANONICAL, "retried") == 2
        assert _processed(metrics, JobType.MAP_CANONICAL, "failed") == 1

        async with session_factory() as session:
            invoice = await InvoiceRepository(session, tenant_id=TENANT).get(invoice_id)
        assert invoice.status == "ERROR"
        assert "no raw payload" in invoice.last_error

    @pytest.mark.asyncio
    async def test_retried_job_keeps_invoice_status(self, queue, handlers, session_factory, invoice_id):
        await _enqueue_unmappable(queue, session_factory, invoice_id)

        await Worker(queue, handlers).process_once()

        async with session_factory() as session:
            invoice = await InvoiceRepository(session, tenant_id=TENANT).get(invoice_id)
        assert invoice.status == "NEW"

    @pytest.mark.asyncio
    async def test_expired_lease_is_reclaimed(self, queue, handlers, clock, tenants):
        result = await queue.enqueue(JobType.RECONCILE_PDP, {"bucket": 1})
        await queue.reserve_next("crashed-worker")

        worker = Worker(queue, handlers, lease_seconds=60)
        assert await worker.process_once() is False

        clock.advance(61)
        assert await worker.process_once() is True
        job = await queue.get(result.id)
        assert job.status is JobStatus.COMPLETED
        assert job.attempts == 2

    @pytest.mark.asyncio
    async def test_lease_expired_on_last_attempt_marks_invoice_error(
        self, queue, handlers, session_factory, invoice_id, clock, metrics
    ):
        result = await queue.enqueue(
            JobType.MAP_CANONICAL,
            {"tenant_id": TENANT, "invoice_id": invoice_id},
            tenant_id=TENANT,
            idempotency_key=f"MAP:{TENANT}:{invoice_id}",
        )
        worker = Worker(queue, handlers, lease_seconds=60, metrics=metrics)
        for attempt in range(2):
            assert await queue.reserve_next(f"crashed-{attempt}") is not None
            clock.advance(61)
            assert (await queue.reclaim_stale(60)).requeued == 1
        assert await queue.reserve_next("crashed-last") is not None
        clock.advance(61)

        assert await worker.process_once() is False

        job = await queue.get(result.id)
        assert (job.status, job.attempts) == (JobStatus.FAILED, 3)
        assert _processed(metrics, JobType.MAP_CANONICAL, "failed") == 1

        async with session_factory() as session:
            invoice = await InvoiceRepository(session, tenant_id=TENANT).get(invoice_id)
        assert invoice.status == "ERROR"
        assert invoice.last_error == "lease expired on final attempt"

    @pytest.mark.asyncio
    async def test_unknown_job_type_does_not_block_queue(self, queue, handlers, session_factory, clock, tenants):
        async with session_factory.begin() as session:
            session.add(
                JobTable(
                    id="legacy-1",
                    type="LEGACY_TYPE",
                    payload={},
                    status="queued",
                    run_at=clock() - timedelta(seconds=5),
                )
            )
        result = await queue.enqueue(JobType.RECONCILE_PDP, {"bucket": 1})

        assert await Worker(queue, handlers).process_once() is True

        assert (await queue.get(result.id)).status is JobStatus.COMPLETED
        async with session_factory() as session:
            legacy = await session.get(JobTable, "legacy-1")
        assert legacy.status == "failed"


class TestDrainAndRun:
    @pytest.mark.asyncio
    async def test_drain_respects_max_jobs(self, queue, handlers, tenants):
        for bucket in range(3):
            await queue.enqueue(JobType.RECONCILE_PDP, {"bucket": bucket})
        worker = Worker(queue, handlers)

        assert await worker.drain(max_jobs=2) == 2
        assert await worker.drain() == 1
        assert await worker.drain() == 0

    @pytest.mark.asyncio
    async def test_run_until_stopped(self, queue, handlers, tenants):
        result = await queue.enqueue(JobType.RECONCILE_PDP, {"bucket": 1})
        stop = asyncio.Event()
        worker = Worker(queue, handlers, poll_interval=0.01)

        task = asyncio.create_task(worker.run(stop))
        for _ in range(200):
            job = await queue.get(result.id)
            if job.status is JobStatus.COMPLETED:
                break
            await asyncio.sleep(0.01)
        stop.set()
        await asyncio.wait_for(task, timeout=5)

        assert (await queue.get(result.id)).status is JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_run_survives_unexpected_poll_error(self, queue, handlers, tenants, monkeypatch, caplog):
        result = await queue.enqueue(JobType.RECONCILE_PDP, {"bucket": 1})
        real_reserve = queue.reserve_next
        calls = []

        async def flaky_reserve(worker_id):
            calls.append(worker_id)
            if len(calls) == 1:
                raise RuntimeError("decoder exploded")
            return await real_reserve(worker_id)

        monkeypatch.setattr(queue, "reserve_next", flaky_reserve)
        stop = asyncio.Event()
        worker = Worker(queue, handlers, poll_interval=0.01)

        with caplog.at_level(logging.ERROR, logger="relay_core.pipeline.worker"):
            task = asyncio.create_task(worker.run(stop))
            for _ in range(200):
                if (await queue.get(result.id)).status is JobStatus.COMPLETED:
                    break
                await asyncio.sleep(0.01)
            stop.set()
            await asyncio.wait_for(task, timeout=5)

        assert (await queue.get(result.id)).status is JobStatus.COMPLETED
        assert len(calls) >= 2
        assert "decoder exploded" in caplog.text


def test_default_worker_id_is_unique():
    assert default_worker_id() != default_worker_id()
