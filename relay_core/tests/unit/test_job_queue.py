"""Unit tests for the durable job queue.

Covers:
- Enqueue dedup on (tenant, type, idempotency key)
- Claim ordering, attempt counting and due-time filtering
- Fail path: exponential re-queue delay, then permanent failure
- Lease reclaim, giving up on the last attempt, and single-winner claims
- Rows with an unknown job type are failed instead of blocking the claim
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
from relay_core.models.jobs import JobStatus, JobType
from relay_core.state.tables import JobTable
from relay_core.telemetry.metrics import JOBS_ENQUEUED


def _payload(invoice: str = "inv-1") -> dict[str, str]:
    return {"tenant_id": "t1", "invoice_id": invoice}


class TestEnqueue:
    @pytest.mark.asyncio
    async def test_enqueue_returns_id(self, queue):
        result = await queue.enqueue(JobType.MAP_CANONICAL, _payload(), tenant_id="t1", idempotency_key="MAP:t1:inv-1")
        assert result.enqueued is True
        assert result.id is not None

        job = await queue.get(result.id)
        assert job is not None
        assert job.status is JobStatus.QUEUED
        assert job.attempts == 0
        assert job.max_attempts == 3
        assert job.tenant_id == "t1"

    @pytest.mark.asyncio
    async def test_duplicate_key_is_suppressed(self, queue):
        first = await queue.enqueue(JobType.MAP_CANONICAL, _payload(), tenant_id="t1", idempotency_key="MAP:t1:inv-1")
        second = await queue.enqueue(JobType.MAP_CANONICAL, _payload(), tenant_id="t1", idempotency_key="MAP:t1:inv-1")
        assert first.enqueued is True
        assert second.enqueued is False
        assert second.id is None
        assert len(await queue.list_jobs(job_type=JobType.MAP_CANONICAL)) == 1

    @pytest.mark.asyncio
    async def test_duplicate_key_suppressed_even_after_completion(self, queue):
        first = await queue.enqueue(JobType.MAP_CANONICAL, _payload(), tenant_id="t1", idempotency_key="k")
        job = await queue.reserve_next("w1")
        assert job is not None and job.id == first.id
        await queue.complete(job.id)

        again = await queue.enqueue(JobType.MAP_CANONICAL, _payload(), tenant_id="t1", idempotency_key="k")
        assert again.enqueued is False

    @pytest.mark.asyncio
    async def test_same_key_in_other_tenant_or_type_is_distinct(self, queue):
        base = await queue.enqueue(JobType.MAP_CANONICAL, _payload(), tenant_id="t1", idempotency_key="k")
        other_tenant = await queue.enqueue(JobType.MAP_CANONICAL, _payload(), tenant_id="t2", idempotency_key="k")
        other_type = await queue.enqueue(JobType.GENERATE_FACTURX, _payload(), tenant_id="t1", idempotency_key="k")
        assert base.enqueued and other_tenant.enqueued and other_type.enqueued

    @pytest.mark.asyncio
    async def test_unscoped_jobs_dedup_too(self, queue):
        first = await queue.enqueue(JobType.RECONCILE_PDP, {}, idempotency_key="RECONCILE:1")
        second = await queue.enqueue(JobType.RECONCILE_PDP, {}, idempotency_key="RECONCILE:1")
        assert first.enqueued is True
        assert second.enqueued is False

        job = await queue.get(first.id)
        assert job.tenant_id is None

    @pytest.mark.asyncio
    async def test_jobs_without_key_never_collide(self, queue):
        await queue.enqueue(JobType.RECONCILE_PDP, {})
        await queue.enqueue(JobType.RECONCILE_PDP, {})
        assert len(await queue.list_jobs(job_type=JobType.RECONCILE_PDP)) == 2

    @pytest.mark.asyncio
    async def test_enqueue_counts_only_new_jobs(self, queue, metrics):
        await queue.enqueue(JobType.MAP_CANONICAL, _payload(), tenant_id="t1", idempotency_key="k")
        await queue.enqueue(JobType.MAP_CANONICAL, _payload(), tenant_id="t1", idempotency_key="k")
        assert metrics.total(JOBS_ENQUEUED) == 1


class TestReserve:
    @pytest.mark.asyncio
    async def test_empty_queue_returns_none(self, queue):
        assert await queue.reserve_next("w1") is None

    @pytest.mark.asyncio
    async def test_claim_marks_running_and_counts_attempt(self, queue):
        result = await queue.enqueue(JobType.FETCH_INVOICE, _payload(), tenant_id="t1")
        job = await queue.reserve_next("worker-1")

        assert job is not None
        assert job.id == result.id
        assert job.status is JobStatus.RUNNING
        assert job.attempts == 1
        assert job.locked_by == "worker-1"
        assert job.locked_at is not None

    @pytest.mark.asyncio
    async def test_running_job_is_not_claimed_twice(self, queue):
        await queue.enqueue(JobType.FETCH_INVOICE, _payload(), tenant_id="t1")
        assert await queue.reserve_next("w1") is not None
        assert await queue.reserve_next("w2") is None

    @pytest.mark.asyncio
    async def test_earliest_due_job_first(self, queue, clock):
        late = await queue.enqueue(JobType.FETCH_INVOICE, _payload("late"), tenant_id="t1", run_at=clock() - timedelta(seconds=5))
        early = await queue.enqueue(JobType.FETCH_INVOICE, _payload("early"), tenant_id="t1", run_at=clock() - timedelta(seconds=60))

        first = await queue.reserve_next("w1")
        second = await queue.reserve_next("w1")
        assert [first.id, second.id] == [early.id, late.id]

    @pytest.mark.asyncio
    async def test_future_job_waits_until_due(self, queue, clock):
        await queue.enqueue(JobType.SYNC_STATUS, _payload(), tenant_id="t1", run_at=clock() + timedelta(seconds=30))
        assert await queue.reserve_next("w1") is None

        clock.advance(30)
        job = await queue.reserve_next("w1")
        assert job is not None
        assert job.type is JobType.SYNC_STATUS

    @pytest.mark.asyncio
    async def test_concurrent_claims_have_one_winner(self, queue):
        await queue.enqueue(JobType.FETCH_INVOICE, _payload(), tenant_id="t1")
        results = await asyncio.gather(*(queue.reserve_next(f"w{i}") for i in range(4)))
        claimed = [job for job in results if job is not None]
        assert len(claimed) == 1

    @pytest.mark.asyncio
    async def test_concurrent_claims_split_jobs(self, queue):
        for i in range(3):
            await queue.enqueue(JobType.FETCH_INVOICE, _payload(f"inv-{i}"), tenant_id="t1")
        results = await asyncio.gather(*(queue.reserve_next(f"w{i}") for i in range(3)))
        ids = [job.id for job in results if job is not None]
        assert len(ids) == 3
        assert len(set(ids)) == 3


class TestCompleteAndFail:
    @pytest.mark.asyncio
    async def test_complete(self, queue):
        await queue.enqueue(JobType.FETCH_INVOICE, _payload(), tenant_id="t1")
        job = await queue.reserve_next("w1")
        await queue.complete(job.id)
        await queue.complete(job.id)

        stored = await queue.get(job.id)
        assert stored.status is JobStatus.COMPLETED
        assert stored.locked_by is None

    @pytest.mark.asyncio
    async def test_fail_requeues_with_exponential_delay(self, queue, clock):
        result = await queue.enqueue(JobType.FETCH_INVOICE, _payload(), tenant_id="t1")

        job = await queue.reserve_next("w1")
        assert await queue.fail(job.id, "boom") is JobStatus.QUEUED
        stored = await queue.get(result.id)
        assert stored.status is JobStatus.QUEUED
        assert stored.attempts == 1
        assert stored.last_error == "boom"
        assert stored.locked_by is None
        assert stored.run_at == clock() + timedelta(seconds=2)

        # Not due until the 2 s window has elapsed.
        clock.advance(1)
        assert await queue.reserve_next("w1") is None
        clock.advance(1)
        job = await queue.reserve_next("w1")
        assert job.attempts == 2

        assert await queue.fail(job.id, "boom again") is JobStatus.QUEUED
        stored = await queue.get(result.id)
        assert stored.run_at == clock() + timedelta(seconds=4)

    @pytest.mark.asyncio
    async def test_fail_gives_up_at_max_attempts(self, queue, clock):
        result = await queue.enqueue(JobType.FETCH_INVOICE, _payload(), tenant_id="t1")
        outcomes = []
        for _ in range(3):
            job = await queue.reserve_next("w1")
            assert job is not None
            outcomes.append(await queue.fail(job.id, "still broken"))
            clock.advance(3600)

        assert outcomes == [JobStatus.QUEUED, JobStatus.QUEUED, JobStatus.FAILED]
        stored = await queue.get(result.id)
        assert stored.status is JobStatus.FAILED
        assert stored.attempts == 3
        assert await queue.reserve_next("w1") is None

    @pytest.mark.asyncio
    async def test_fail_unknown_job(self, queue):
        assert await queue.fail("does-not-exist", "x") is None

    @pytest.mark.asyncio
    async def test_long_error_is_truncated(self, queue):
        await queue.enqueue(JobType.FETCH_INVOICE, _payload(), tenant_id="t1")
        job = await queue.reserve_next("w1")
        await queue.fail(job.id, "x" * 10_000)
        stored = await queue.get(job.id)
        assert len(stored.last_error) == 4000


class TestReclaim:
    @pytest.mark.asyncio
    async def test_reclaim_stale_lock(self, queue, clock):
        await queue.enqueue(JobType.FETCH_INVOICE, _payload(), tenant_id="t1")
        job = await queue.reserve_next("crashed-worker")

        assert (await queue.reclaim_stale(60)).requeued == 0
        clock.advance(120)
        reclaimed = await queue.reclaim_stale(60)
        assert reclaimed.requeued == 1
        assert reclaimed.failed == []

        stored = await queue.get(job.id)
        assert stored.status is JobStatus.QUEUED
        assert stored.attempts == 1
        assert stored.last_error == "lease expired"

        again = await queue.reserve_next("w2")
        assert again.id == job.id
        assert again.attempts == 2

    @pytest.mark.asyncio
    async def test_expired_lease_on_last_attempt_fails_job(self, queue, clock):
        result = await queue.enqueue(JobType.FETCH_INVOICE, _payload(), tenant_id="t1")

        for attempt in range(1, 3):
            job = await queue.reserve_next(f"crashed-{attempt}")
            assert job.attempts == attempt
            clock.advance(120)
            reclaimed = await queue.reclaim_stale(60)
            assert (reclaimed.requeued, reclaimed.failed) == (1, [])

        job = await queue.reserve_next("crashed-3")
        assert job.attempts == 3
        clock.advance(120)
        reclaimed = await queue.reclaim_stale(60)

        assert reclaimed.requeued == 0
        assert [failed.id for failed in reclaimed.failed] == [result.id]
        assert reclaimed.failed[0].status is JobStatus.FAILED
        assert reclaimed.failed[0].last_error == "lease expired on final attempt"

        stored = await queue.get(result.id)
        assert (stored.status, stored.attempts) == (JobStatus.FAILED, 3)
        assert stored.locked_by is None
        assert await queue.reserve_next("w2") is None
        assert (await queue.reclaim_stale(60)).failed == []


class TestUndecodableRows:
    @pytest.mark.asyncio
    async def test_unknown_type_is_failed_and_skipped(self, queue, session_factory, clock):
        async with session_factory.begin() as session:
            session.add(
                JobTable(
                    id="legacy-1",
                    type="LEGACY_TYPE",
                    payload={},
                    status="queued",
                    max_attempts=3,
                    run_at=clock() - timedelta(seconds=5),
                )
            )
        result = await queue.enqueue(JobType.RECONCILE_PDP, {"bucket": 1})

        job = await queue.reserve_next("w1")

        assert job is not None
        assert job.id == result.id
        async with session_factory() as session:
            legacy = await session.get(JobTable, "legacy-1")
        assert legacy.status == "failed"
        assert legacy.locked_by is None
        assert legacy.last_error.startswith("undecodable job")
        assert await queue.reserve_next("w1") is None


class TestListJobs:
    @pytest.mark.asyncio
    async def test_filters(self, queue):
        await queue.enqueue(JobType.FETCH_INVOICE, _payload(), tenant_id="t1")
        await queue.enqueue(JobType.FETCH_INVOICE, _payload(), tenant_id="t2")
        await queue.enqueue(JobType.RECONCILE_PDP, {})

        assert len(await queue.list_jobs(job_type=JobType.FETCH_INVOICE)) == 2
        assert len(await queue.list_jobs(tenant_id="t2")) == 1
        assert len(await queue.list_jobs(tenant_id="")) == 1
        assert len(await queue.list_jobs(status=JobStatus.RUNNING)) == 0
