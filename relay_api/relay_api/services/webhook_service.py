"""GHL webhook intake.

Turns one inbound delivery into an invoice row and a FETCH_INVOICE job.
The tenant check, delivery dedup, invoice upsert, job enqueue and audit
event all run in a single transaction, so a delivery is either fully
accepted or leaves no trace.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import uuid
from typing import Any

from pydantic import SecretStr
from sqlalchemy.ext.asyncio import AsyncSession

from relay_core.audit import AuditActor, AuditEventType, AuditRecorder
from relay_core.errors import TenantNotFoundError, WebhookSignatureError
from relay_core.idempotency import IdempotencyStep, build_idempotency_key
from relay_core.models.jobs import FetchInvoicePayload, JobType
from relay_core.queue import JobQueue
from relay_core.security import SecretCipher, SecretName, TenantSecretStore
from relay_core.state.repository import IdempotencyKeyRepository, InvoiceRepository, JobRepository, TenantRepository
from relay_core.telemetry.metrics import JOBS_ENQUEUED, WEBHOOKS_RECEIVED, MetricsSink, NullMetricsSink

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="


class GhlWebhookService:
    """Accepts GHL invoice webhooks for the pipeline.

    Parameters
    ----------
    queue:
        Queue whose session factory, clock and attempt bound are used for
        the intake transaction.
    cipher:
        Decrypts per-tenant webhook secrets.
    fallback_secret:
        Secret used when the tenant has none stored.
    require_signature:
        Reject deliveries when no secret is configured at all.
    metrics:
        Receives ``relay_webhooks_received_total`` and
        ``relay_jobs_enqueued_total``.
    """

    def __init__(
        self,
        queue: JobQueue,
        *,
        cipher: SecretCipher,
        fallback_secret: SecretStr | None = None,
        require_signature: bool = False,
        metrics: MetricsSink | None = None,
    ) -> None:
        self._queue = queue
        self._cipher = cipher
        self._fallback_secret = fallback_secret
        self._require_signature = require_signature
        self._metrics = metrics or NullMetricsSink()

    # ------------------------------------------------------------------
    # Signature validation
    # ------------------------------------------------------------------

    @staticmethod
    def validate_signature(payload: bytes, signature_header: str | None, secret: str) -> bool:
        """Validate an ``x-ghl-signature`` HMAC-SHA256 value (``sha256=<hex>``).

        Parameters
        ----------
        payload:
            The raw request body bytes.
        signature_header:
            The header value as received, or ``None`` when absent.
        secret:
            The plaintext webhook secret.

        Returns
        -------
        bool
            ``True`` if the signature is valid.
        """
        if not signature_header or not signature_header.startswith(SIGNATURE_PREFIX):
            return False
        computed = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
        return hmac.compare_digest(computed, signature_header[len(SIGNATURE_PREFIX) :])

    @staticmethod
    def resolve_event_id(body: dict[str, Any]) -> str:
        """Delivery identity: ``eventId``, else ``id``, else ``<invoiceId>:<updatedAt>``."""
        if body.get("eventId") not in (None, ""):
            return str(body["eventId"])
        if body.get("id") not in (None, ""):
            return str(body["id"])
        return f"{body.get('invoiceId') or 'unknown'}:{body.get('updatedAt') or ''}"

    async def _webhook_secret(self, session: AsyncSession, tenant_id: str) -> str | None:
        stored = await TenantSecretStore(session, self._cipher, tenant_id=tenant_id).get(SecretName.WEBHOOK_SECRET)
        if stored:
            return stored
        return self._fallback_secret.get_secret_value() if self._fallback_secret else None

    # ------------------------------------------------------------------
    # Intake
    # ------------------------------------------------------------------

    async def receive(
        self,
        tenant_id: str | None,
        raw_body: bytes,
        *,
        signature: str | None = None,
        correlation_id: str | None = None,
    ) -> dict[str, Any]:
        """Process one delivery.

        Returns
        -------
        dict
            ``{"ok": True, "duplicate": True}`` for a repeated delivery,
            otherwise ``{"ok": True, "invoiceId": ..., "jobEnqueued": ...}``.

        Raises
        ------
        TenantNotFoundError
            Missing, unknown or inactive tenant.
        WebhookSignatureError
            Signature required and missing or wrong.
        ValueError
            Body is not a JSON object or has no ``invoiceId``.
        """
        correlation_id = correlation_id or str(uuid.uuid4())
        try:
            body = json.loads(raw_body) if raw_body else {}
        except ValueError as exc:
            raise ValueError("Webhook body is not valid JSON") from exc
        if not isinstance(body, dict):
            raise ValueError("Webhook body must be a JSON object")

        try:
            async with self._queue.session_factory.begin() as session:
                result = await self._receive_in(session, tenant_id, raw_body, body, signature, correlation_id)
        except (TenantNotFoundError, WebhookSignatureError):
            self._metrics.increment(WEBHOOKS_RECEIVED, {"outcome": "rejected"})
            raise

        if result.get("duplicate"):
            self._metrics.increment(WEBHOOKS_RECEIVED, {"outcome": "duplicate"})
        else:
            self._metrics.increment(WEBHOOKS_RECEIVED, {"outcome": "accepted"})
            if result["jobEnqueued"]:
                self._metrics.increment(JOBS_ENQUEUED, {"type": JobType.FETCH_INVOICE.value})
        return result

    async def _receive_in(
        self,
        session: AsyncSession,
        tenant_id: str | None,
        raw_body: bytes,
        body: dict[str, Any],
        signature: str | None,
        correlation_id: str,
    ) -> dict[str, Any]:
        if not tenant_id:
            raise TenantNotFoundError("Missing X-Tenant-Id header")
        tenant = await TenantRepository(session).get_active(tenant_id)
        if tenant is None:
            raise TenantNotFoundError(f"Unknown or inactive tenant {tenant_id}")

        secret = await self._webhook_secret(session, tenant.id)
        if secret:
            if not self.validate_signature(raw_body, signature, secret):
                logger.warning("Webhook signature rejected for tenant %s", tenant.id)
                raise WebhookSignatureError("invalid_signature")
        elif self._require_signature:
            logger.warning("Webhook for tenant %s rejected: no secret configured", tenant.id)
            raise WebhookSignatureError("webhook_secret_not_configured")

        ghl_invoice_id = str(body["invoiceId"]) if body.get("invoiceId") is not None else ""
        if not ghl_invoice_id:
            raise ValueError("Webhook body has no invoiceId")

        event_id = self.resolve_event_id(body)
        webhook_key = build_idempotency_key(IdempotencyStep.WEBHOOK, tenant.id, event_id)
        first_seen = await IdempotencyKeyRepository(session, tenant_id=tenant.id).claim(
            IdempotencyStep.WEBHOOK.value,
            webhook_key,
            correlation_id=correlation_id,
        )
        if not first_seen:
            logger.info("Duplicate webhook %s for tenant %s ignored", event_id, tenant.id)
            return {"ok": True, "duplicate": True}

        invoice_id = await InvoiceRepository(session, tenant_id=tenant.id).upsert_from_webhook(ghl_invoice_id, body)
        payload = FetchInvoicePayload(
            tenant_id=tenant.id,
            invoice_id=invoice_id,
            ghl_invoice_id=ghl_invoice_id,
            correlation_id=correlation_id,
        )
        enqueued = await JobRepository(session).enqueue(
            JobType.FETCH_INVOICE,
            payload.model_dump(),
            tenant_id=tenant.id,
            correlation_id=correlation_id,
            idempotency_key=build_idempotency_key(IdempotencyStep.FETCH, tenant.id, ghl_invoice_id),
            run_at=self._queue.now(),
            max_attempts=self._queue.max_attempts,
        )
        await AuditRecorder(
            session,
            tenant_id=tenant.id,
            actor=AuditActor.WEBHOOK,
            correlation_id=correlation_id,
        ).record_event(
            AuditEventType.WEBHOOK_RECEIVED,
            {"eventId": event_id, "ghlInvoiceId": ghl_invoice_id, "jobEnqueued": enqueued.enqueued},
            invoice_id=invoice_id,
        )

        logger.info(
            "Webhook %s accepted for tenant %s invoice %s (job enqueued=%s)",
            event_id,
            tenant.id,
            invoice_id,
            enqueued.enqueued,
        )
        return {"ok": True, "invoiceId": invoice_id, "jobEnqueued": enqueued.enqueued}
