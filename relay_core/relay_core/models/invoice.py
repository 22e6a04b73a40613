"""Invoice lifecycle states."""

from __future__ import annotations

from enum import Enum


class InvoiceStatus(str, Enum):
    """Pipeline stage an invoice last completed, or its terminal outcome."""

    NEW = "NEW"
    FETCHED = "FETCHED"
    MAPPED = "MAPPED"
    GENERATED = "GENERATED"
    SUBMITTED = "SUBMITTED"
    SYNCED = "SYNCED"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    PAID = "PAID"
    ERROR = "ERROR"


TERMINAL_STATUSES: frozenset[InvoiceStatus] = frozenset(
    {InvoiceStatus.ACCEPTED, InvoiceStatus.REJECTED, InvoiceStatus.PAID, InvoiceStatus.ERROR}
)

# Normalized PDP submission statuses that still expect a later change.
PENDING_PDP_STATUSES: frozenset[str] = frozenset({"SUBMITTED", "PROCESSING", "PENDING", "SYNCED"})
