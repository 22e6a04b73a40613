"""Pydantic models shared across the relay."""

from relay_core.models.canonical import CanonicalInvoice, CanonicalLine, CanonicalParty
from relay_core.models.invoice import PENDING_PDP_STATUSES, TERMINAL_STATUSES, InvoiceStatus
from relay_core.models.jobs import (
    EnqueueResult,
    FetchInvoicePayload,
    InvoiceJobPayload,
    Job,
    JobStatus,
    JobType,
    ReclaimResult,
    ReconcilePayload,
    SyncStatusPayload,
)

__all__ = [
    "PENDING_PDP_STATUSES",
    "TERMINAL_STATUSES",
    "CanonicalInvoice",
    "CanonicalLine",
    "CanonicalParty",
    "EnqueueResult",
    "FetchInvoicePayload",
    "InvoiceJobPayload",
    "InvoiceStatus",
    "Job",
    "JobStatus",
    "JobType",
    "ReclaimResult",
    "ReconcilePayload",
    "SyncStatusPayload",
]
