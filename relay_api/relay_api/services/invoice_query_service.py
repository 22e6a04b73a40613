"""Read-side queries behind the tenant invoice API."""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from relay_core.errors import MissingDataError, StorageError
from relay_core.state.repository import (
    AuditRepository,
    InvoiceArtifactRepository,
    InvoiceRepository,
    PdpSubmissionRepository,
)
from relay_core.state.tables import AuditLogTable, InvoiceTable
from relay_core.storage import ObjectStore

logger = logging.getLogger(__name__)

ARTIFACT_CONTENT_TYPES: dict[str, str] = {
    "pdf": "application/pdf",
    "xml": "application/xml",
}


def _iso(value: Any) -> str | None:
    return value.isoformat() if value is not None else None


def invoice_summary(row: InvoiceTable) -> dict[str, Any]:
    canonical = row.canonical_payload or {}
    return {
        "id": row.id,
        "ghlInvoiceId": row.ghl_invoice_id,
        "status": row.status,
        "invoiceNumber": canonical.get("invoice_number"),
        "totalAmount": canonical.get("total_amount"),
        "currency": canonical.get("currency"),
        "lastError": row.last_error,
        "createdAt": _iso(row.created_at),
        "updatedAt": _iso(row.updated_at),
    }


def audit_entry(row: AuditLogTable) -> dict[str, Any]:
    return {
        "id": row.id,
        "eventType": row.event_type,
        "actor": row.actor,
        "correlationId": row.correlation_id,
        "jobId": row.job_id,
        "payload": row.payload,
        "entryHash": row.entry_hash,
        "createdAt": _iso(row.created_at),
    }


class InvoiceQueryService:
    """Tenant-scoped invoice reads.

    Every lookup goes through a repository bound to *tenant_id*, so an
    invoice of another tenant is indistinguishable from a missing one.

    Parameters
    ----------
    session:
        Session of the current request.
    tenant_id:
        Tenant resolved from the request headers.
    store:
        Object store holding rendered artifacts.
    """

    def __init__(self, session: AsyncSession, *, tenant_id: str, store: ObjectStore) -> None:
        self._session = session
        self._tenant_id = tenant_id
        self._store = store
        self._invoices = InvoiceRepository(session, tenant_id=tenant_id)

    async def _require(self, invoice_id: str) -> InvoiceTable:
        row = await self._invoices.get(invoice_id)
        if row is None:
            raise MissingDataError(f"Invoice {invoice_id} not found")
        return row

    async def list_invoices(self, *, status: str | None = None, limit: int = 50, offset: int = 0) -> dict[str, Any]:
        rows = await self._invoices.list_invoices(status=status, limit=limit, offset=offset)
        return {"invoices": [invoice_summary(row) for row in rows], "limit": limit, "offset": offset}

    async def get_invoice(self, invoice_id: str) -> dict[str, Any]:
        """Invoice detail with its latest artifacts, submission and audit trail."""
        row = await self._require(invoice_id)
        artifact = await InvoiceArtifactRepository(self._session, tenant_id=self._tenant_id).get_latest(invoice_id)
        submission = await PdpSubmissionRepository(self._session, tenant_id=self._tenant_id).get_latest(invoice_id)
        events = await AuditRepository(self._session, tenant_id=self._tenant_id).list_for_invoice(invoice_id)

        detail = invoice_summary(row)
        detail["canonical"] = row.canonical_payload
        detail["artifacts"] = (
            {
                "pdfSha256": artifact.pdf_sha256,
                "xmlSha256": artifact.xml_sha256,
                "createdAt": _iso(artifact.created_at),
            }
            if artifact is not None
            else None
        )
        detail["submission"] = (
            {
                "provider": submission.provider,
                "submissionId": submission.submission_id,
                "status": submission.status,
                "lastCheckedAt": _iso(submission.last_checked_at),
                "lastError": submission.last_error,
            }
            if submission is not None
            else None
        )
        detail["auditEvents"] = [audit_entry(event) for event in events]
        return detail

    async def get_audit(self, invoice_id: str, *, limit: int = 50) -> dict[str, Any]:
        await self._require(invoice_id)
        events = await AuditRepository(self._session, tenant_id=self._tenant_id).list_for_invoice(invoice_id)
        return {"invoiceId": invoice_id, "events": [audit_entry(event) for event in events[:limit]]}

    async def get_artifact(self, invoice_id: str, kind: str) -> tuple[bytes, str]:
        """Return the bytes and content type of the latest ``pdf`` or ``xml`` artifact.

        Raises
        ------
        ValueError
            If *kind* is not ``pdf`` or ``xml``.
        MissingDataError
            If the invoice or its artifact does not exist.
        """
        content_type = ARTIFACT_CONTENT_TYPES.get(kind)
        if content_type is None:
            raise ValueError(f"Unknown artifact kind {kind!r}; expected pdf or xml")
        await self._require(invoice_id)
        artifact = await InvoiceArtifactRepository(self._session, tenant_id=self._tenant_id).get_latest(invoice_id)
        key = getattr(artifact, f"{kind}_key", None) if artifact is not None else None
        if not key:
            raise MissingDataError(f"Invoice {invoice_id} has no {kind} artifact")
        try:
            data = await self._store.get_object(key)
        except StorageError as exc:
            raise MissingDataError(f"Invoice {invoice_id} {kind} artifact is no longer stored") from exc
        return data, content_type
