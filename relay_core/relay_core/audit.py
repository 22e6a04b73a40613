"""Pipeline audit trail.

Wraps :class:`AuditRepository` with the event-type constants the pipeline
and webhook boundary emit.  Every stage writes its ``*.completed`` event in
the same transaction as its state change, so the trail and the invoice
status never disagree.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from relay_core.state.repository import AuditRepository
from relay_core.state.tables import AuditLogTable

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Event constants
# ---------------------------------------------------------------------------


class AuditEventType:
    """Well-known audit event identifiers."""

    WEBHOOK_RECEIVED = "webhook.received"
    FETCH_COMPLETED = "fetch_invoice.completed"
    MAP_COMPLETED = "map_canonical.completed"
    GENERATE_COMPLETED = "generate_facturx.completed"
    SUBMIT_COMPLETED = "submit_pdp.completed"
    SUBMIT_FAILED = "submit_pdp.failed"
    SYNC_COMPLETED = "sync_status.completed"
    SYNC_RESCHEDULED = "sync_status.rescheduled"
    CRM_PUSH_FAILED = "sync_status.crm_push_failed"
    RECONCILE_ENQUEUED = "reconcile_pdp.enqueued"


class AuditActor:
    WEBHOOK = "webhook"
    WORKER = "worker"
    RECONCILER = "reconciler"


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class AuditRecorder:
    """Records hash-stamped events for one tenant.

    Parameters
    ----------
    session:
        Session of the transaction the event belongs to.
    tenant_id:
        Tenant the events are written under.
    actor:
        Principal recorded on each event.
    correlation_id:
        Correlation id stamped on each event.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        actor: str = AuditActor.WORKER,
        correlation_id: str | None = None,
    ) -> None:
        self._repo = AuditRepository(session, tenant_id=tenant_id)
        self._actor = actor
        self._correlation_id = correlation_id

    async def record_event(
        self,
        event_type: str,
        payload: dict[str, Any] | None = None,
        *,
        invoice_id: str | None = None,
        job_id: str | None = None,
    ) -> AuditLogTable:
        return await self._repo.record(
            actor=self._actor,
            event_type=event_type,
            payload=payload,
            correlation_id=self._correlation_id,
            invoice_id=invoice_id,
            job_id=job_id,
        )
