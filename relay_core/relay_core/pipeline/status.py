"""Normalization of PDP statuses into invoice statuses."""

from __future__ import annotations

from relay_core.models.invoice import PENDING_PDP_STATUSES, InvoiceStatus

_DIRECT: dict[str, InvoiceStatus] = {
    "ACCEPTED": InvoiceStatus.ACCEPTED,
    "REJECTED": InvoiceStatus.REJECTED,
    "PAID": InvoiceStatus.PAID,
    "ERROR": InvoiceStatus.ERROR,
    "FAILED": InvoiceStatus.ERROR,
}


def normalize_pdp_status(status: str | None) -> str:
    return (status or "").strip().upper()


def invoice_status_for(pdp_status: str | None) -> InvoiceStatus:
    """ACCEPTED, REJECTED, PAID and ERROR carry over; anything else is SYNCED."""
    return _DIRECT.get(normalize_pdp_status(pdp_status), InvoiceStatus.SYNCED)


def is_pending(pdp_status: str | None) -> bool:
    """Whether the PDP may still change its mind about this submission."""
    return normalize_pdp_status(pdp_status) in PENDING_PDP_STATUSES
