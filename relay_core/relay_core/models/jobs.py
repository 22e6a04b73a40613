"""Job records and the fixed set of pipeline job types.

Job types form a closed enumeration: the worker dispatches over it
exhaustively, so adding a member without a handler fails type checking and
the dispatch coverage test.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class JobType(str, Enum):
    """Pipeline stage performed by a job."""

    FETCH_INVOICE = "FETCH_INVOICE"
    MAP_CANONICAL = "MAP_CANONICAL"
    GENERATE_FACTURX = "GENERATE_FACTURX"
    SUBMIT_PDP = "SUBMIT_PDP"
    SYNC_STATUS = "SYNC_STATUS"
    RECONCILE_PDP = "RECONCILE_PDP"


class JobStatus(str, Enum):
    """Lifecycle state of a queued job."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class Job(BaseModel):
    """A job as claimed from the durable queue."""

    id: str
    type: JobType
    payload: dict[str, Any] = Field(default_factory=dict)
    tenant_id: str | None = None
    correlation_id: str | None = None
    status: JobStatus = JobStatus.QUEUED
    attempts: int = 0
    max_attempts: int = 5
    run_at: datetime
    idempotency_key: str | None = None
    locked_by: str | None = None
    locked_at: datetime | None = None
    last_error: str | None = None


class EnqueueResult(BaseModel):
    """Outcome of an enqueue call.  ``enqueued`` is false for duplicates."""

    enqueued: bool
    id: str | None = None


class ReclaimResult(BaseModel):
    """Outcome of a lease sweep: re-queued count and the jobs that gave up."""

    requeued: int = 0
    failed: list[Job] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Payloads
# ---------------------------------------------------------------------------


class InvoiceJobPayload(BaseModel):
    """Payload shared by every per-invoice stage."""

    tenant_id: str = Field(..., min_length=1)
    invoice_id: str = Field(..., min_length=1)
    correlation_id: str | None = None


class FetchInvoicePayload(InvoiceJobPayload):
    """FETCH_INVOICE additionally carries the CRM's own invoice id."""

    ghl_invoice_id: str = Field(..., min_length=1)


class SyncStatusPayload(InvoiceJobPayload):
    """SYNC_STATUS tracks how many polls have been chained so far."""

    attempt: int = Field(default=0, ge=0, description="Number of prior polls in this chain.")
    reason: str | None = Field(default=None, description="``reconcile`` when injected by a sweep.")
    bucket: int | None = Field(default=None, description="Reconciliation bucket that started this chain.")


class ReconcilePayload(BaseModel):
    """RECONCILE_PDP overrides for a single sweep; defaults come from settings."""

    stale_seconds: int | None = Field(default=None, gt=0)
    limit: int | None = Field(default=None, gt=0)
    bucket: int | None = None
