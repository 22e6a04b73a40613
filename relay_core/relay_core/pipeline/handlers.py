"""Stage handlers of the invoice pipeline.

Each handler performs one stage for one invoice and, in the same database
transaction as its state change and audit event, enqueues the next stage
with a deterministic idempotency key::

    FETCH_INVOICE -> MAP_CANONICAL -> GENERATE_FACTURX -> SUBMIT_PDP -> SYNC_STATUS
                                                                          \\-> SYNC_STATUS (still pending)
    RECONCILE_PDP -> SYNC_STATUS per stale submission

External calls (CRM, PDP, object storage) happen outside any open
transaction so a slow remote never holds the database write lock.
Handlers raise on failure; the worker hands the job to the queue's fail
path.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from base64 import b64encode
from datetime import timedelta
from typing import Any, assert_never

from pydantic import SecretStr
from sqlalchemy.ext.asyncio import AsyncSession

from relay_core.audit import AuditActor, AuditEventType, AuditRecorder
from relay_core.clients.crm import CrmClient
from relay_core.clients.pdp import PdpArtifact, PdpArtifacts, PdpClient
from relay_core.config import ArtifactMode, RelaySettings
from relay_core.errors import ExternalServiceError, MissingDataError
from relay_core.facturx import FacturxGenerator
from relay_core.idempotency import IdempotencyStep, build_idempotency_key
from relay_core.mapping import map_ghl_to_canonical
from relay_core.models.canonical import CanonicalInvoice
from relay_core.models.invoice import PENDING_PDP_STATUSES, TERMINAL_STATUSES, InvoiceStatus
from relay_core.models.jobs import (
    EnqueueResult,
    FetchInvoicePayload,
    InvoiceJobPayload,
    Job,
    JobType,
    ReconcilePayload,
    SyncStatusPayload,
)
from relay_core.pipeline.reconciliation import time_bucket
from relay_core.pipeline.status import invoice_status_for, is_pending, normalize_pdp_status
from relay_core.queue import JobQueue, PollBackoff
from relay_core.security import SecretCipher, SecretName, TenantSecretStore
from relay_core.state.repository import (
    InvoiceArtifactRepository,
    InvoiceRepository,
    JobRepository,
    PdpSubmissionRepository,
    find_stale_submissions,
)
from relay_core.state.tables import InvoiceTable
from relay_core.storage import ObjectStore, artifact_key
from relay_core.telemetry.metrics import JOBS_ENQUEUED, RECONCILE_FANOUT, MetricsSink, NullMetricsSink

logger = logging.getLogger(__name__)

PDF_FILENAME = "facturx.pdf"
XML_FILENAME = "facturx.xml"

# Outcomes a later job failure must not overwrite.
_SETTLED_STATUSES = TERMINAL_STATUSES - {InvoiceStatus.ERROR}


def _secret_value(secret: SecretStr | None) -> str | None:
    return secret.get_secret_value() if secret is not None else None


class PipelineHandlers:
    """Runs pipeline stages against the shared state store.

    Parameters
    ----------
    queue:
        Source of the session factory, the clock and the attempt bound for
        follow-up jobs.
    crm:
        CRM client used by FETCH_INVOICE and SYNC_STATUS.
    pdp:
        PDP client used by SUBMIT_PDP and SYNC_STATUS.
    store:
        Object store for rendered artifacts.
    cipher:
        Decrypts per-tenant API keys.
    settings:
        Artifact mode, polling backoff, reconciliation defaults and the
        global API keys used when a tenant has none of its own.
    generator:
        Factur-X renderer; a default one is built when omitted.
    metrics:
        Receives enqueue counters for follow-up jobs.
    """

    def __init__(
        self,
        queue: JobQueue,
        *,
        crm: CrmClient,
        pdp: PdpClient,
        store: ObjectStore,
        cipher: SecretCipher,
        settings: RelaySettings,
        generator: FacturxGenerator | None = None,
        metrics: MetricsSink | None = None,
    ) -> None:
        self._queue = queue
        self._session_factory = queue.session_factory
        self._crm = crm
        self._pdp = pdp
        self._store = store
        self._cipher = cipher
        self._settings = settings
        self._generator = generator or FacturxGenerator()
        self._metrics = metrics or NullMetricsSink()
        self._poll_backoff = PollBackoff(
            base_delay=settings.sync_poll_base_seconds,
            max_delay=settings.sync_poll_max_seconds,
        )

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def handle(self, job: Job) -> None:
        """Run the stage for *job*.  Every :class:`JobType` has a branch."""
        match job.type:
            case JobType.FETCH_INVOICE:
                await self.fetch_invoice(job)
            case JobType.MAP_CANONICAL:
                await self.map_canonical(job)
            case JobType.GENERATE_FACTURX:
                await self.generate_facturx(job)
            case JobType.SUBMIT_PDP:
                await self.submit_pdp(job)
            case JobType.SYNC_STATUS:
                await self.sync_status(job)
            case JobType.RECONCILE_PDP:
                await self.reconcile_pdp(job)
            case _:
                assert_never(job.type)

    async def mark_failed(self, job: Job, error_message: str) -> None:
        """Move the job's invoice to ERROR once its attempts are exhausted.

        An invoice the PDP already settled (accepted, rejected or paid) keeps
        its outcome; only the failure is logged.
        """
        tenant_id = job.payload.get("tenant_id")
        invoice_id = job.payload.get("invoice_id")
        if not tenant_id or not invoice_id:
            return
        async with self._session_factory.begin() as session:
            invoices = InvoiceRepository(session, tenant_id=tenant_id)
            invoice = await invoices.get(invoice_id)
            if invoice is None:
                return
            if InvoiceStatus(invoice.status) in _SETTLED_STATUSES:
                logger.warning(
                    "Job %s (%s) gave up but invoice %s is already %s",
                    job.id,
                    job.type.value,
                    invoice_id,
                    invoice.status,
                )
                return
            await invoices.update_status(invoice_id, InvoiceStatus.ERROR.value, last_error=error_message)
        logger.warning("Invoice %s moved to ERROR after job %s (%s) gave up", invoice_id, job.id, job.type.value)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _correlation_id(job: Job, payload: InvoiceJobPayload | None = None) -> str:
        return job.correlation_id or (payload.correlation_id if payload else None) or str(uuid.uuid4())

    async def _tenant_api_key(self, tenant_id: str, name: str, fallback: SecretStr | None) -> str | None:
        async with self._session_factory() as session:
            value = await TenantSecretStore(session, self._cipher, tenant_id=tenant_id).get(name)
        return value or _secret_value(fallback)

    @staticmethod
    async def _require_invoice(session: AsyncSession, tenant_id: str, invoice_id: str) -> InvoiceTable:
        invoice = await InvoiceRepository(session, tenant_id=tenant_id).get(invoice_id)
        if invoice is None:
            raise MissingDataError(f"Invoice {invoice_id} not found for tenant {tenant_id}")
        return invoice

    async def _enqueue_next(
        self,
        session: AsyncSession,
        job_type: JobType,
        payload: dict[str, Any],
        *,
        tenant_id: str,
        correlation_id: str,
        idempotency_key: str,
        delay_seconds: float = 0.0,
    ) -> EnqueueResult:
        return await JobRepository(session).enqueue(
            job_type,
            payload,
            tenant_id=tenant_id,
            correlation_id=correlation_id,
            idempotency_key=idempotency_key,
            run_at=self._queue.now() + timedelta(seconds=delay_seconds),
            max_attempts=self._queue.max_attempts,
        )

    def _count_enqueued(self, job_type: JobType, *results: EnqueueResult) -> None:
        for result in results:
            if result.enqueued:
                self._metrics.increment(JOBS_ENQUEUED, {"type": job_type.value})

    def _stage_payload(self, tenant_id: str, invoice_id: str, correlation_id: str) -> dict[str, Any]:
        return InvoiceJobPayload(
            tenant_id=tenant_id, invoice_id=invoice_id, correlation_id=correlation_id
        ).model_dump()

    # ------------------------------------------------------------------
    # FETCH_INVOICE
    # ------------------------------------------------------------------

    async def fetch_invoice(self, job: Job) -> None:
        """Refresh the raw payload from the CRM, falling back to the stored one."""
        payload = FetchInvoicePayload.model_validate(job.payload)
        tenant_id, invoice_id = payload.tenant_id, payload.invoice_id
        correlation_id = self._correlation_id(job, payload)

        api_key = await self._tenant_api_key(tenant_id, SecretName.CRM_API_KEY, self._settings.crm_api_key)
        fetched: dict[str, Any] | None = None
        try:
            fetched = await self._crm.fetch_invoice(
                tenant_id, payload.ghl_invoice_id, api_key=api_key, correlation_id=correlation_id
            )
        except (ExternalServiceError, ValueError) as exc:
            logger.warning(
                "CRM fetch for invoice %s failed; using stored payload: %s",
                payload.ghl_invoice_id,
                exc,
            )

        async with self._session_factory.begin() as session:
            await self._require_invoice(session, tenant_id, invoice_id)
            invoices = InvoiceRepository(session, tenant_id=tenant_id)
            if fetched:
                await invoices.update_raw_payload(invoice_id, fetched)
            await invoices.update_status(invoice_id, InvoiceStatus.FETCHED.value)
            await AuditRecorder(session, tenant_id=tenant_id, correlation_id=correlation_id).record_event(
                AuditEventType.FETCH_COMPLETED,
                {"ghlInvoiceId": payload.ghl_invoice_id, "source": "crm" if fetched else "stored"},
                invoice_id=invoice_id,
                job_id=job.id,
            )
            result = await self._enqueue_next(
                session,
                JobType.MAP_CANONICAL,
                self._stage_payload(tenant_id, invoice_id, correlation_id),
                tenant_id=tenant_id,
                correlation_id=correlation_id,
                idempotency_key=build_idempotency_key(IdempotencyStep.MAP, tenant_id, invoice_id),
            )
        self._count_enqueued(JobType.MAP_CANONICAL, result)

    # ------------------------------------------------------------------
    # MAP_CANONICAL
    # ------------------------------------------------------------------

    async def map_canonical(self, job: Job) -> None:
        """Map and validate the raw payload.  Raises on missing or invalid data."""
        payload = InvoiceJobPayload.model_validate(job.payload)
        tenant_id, invoice_id = payload.tenant_id, payload.invoice_id
        correlation_id = self._correlation_id(job, payload)

        async with self._session_factory.begin() as session:
            invoice = await self._require_invoice(session, tenant_id, invoice_id)
            if not invoice.raw_payload:
                raise MissingDataError(f"Invoice {invoice_id} has no raw payload to map")

            canonical = map_ghl_to_canonical(tenant_id, invoice.raw_payload)
            invoices = InvoiceRepository(session, tenant_id=tenant_id)
            await invoices.update_canonical_payload(invoice_id, canonical.to_payload())
            await invoices.update_status(invoice_id, InvoiceStatus.MAPPED.value)
            await AuditRecorder(session, tenant_id=tenant_id, correlation_id=correlation_id).record_event(
                AuditEventType.MAP_COMPLETED,
                {"invoiceNumber": canonical.invoice_number, "totalAmount": canonical.total_amount},
                invoice_id=invoice_id,
                job_id=job.id,
            )
            result = await self._enqueue_next(
                session,
                JobType.GENERATE_FACTURX,
                self._stage_payload(tenant_id, invoice_id, correlation_id),
                tenant_id=tenant_id,
                correlation_id=correlation_id,
                idempotency_key=build_idempotency_key(IdempotencyStep.GENERATE, tenant_id, invoice_id),
            )
        self._count_enqueued(JobType.GENERATE_FACTURX, result)

    # ------------------------------------------------------------------
    # GENERATE_FACTURX
    # ------------------------------------------------------------------

    async def generate_facturx(self, job: Job) -> None:
        """Render the Factur-X pair, store it and record its digests."""
        payload = InvoiceJobPayload.model_validate(job.payload)
        tenant_id, invoice_id = payload.tenant_id, payload.invoice_id
        correlation_id = self._correlation_id(job, payload)

        async with self._session_factory() as session:
            invoice = await self._require_invoice(session, tenant_id, invoice_id)
            canonical_payload = invoice.canonical_payload
        if not canonical_payload:
            raise MissingDataError(f"Invoice {invoice_id} has no canonical payload")

        canonical = CanonicalInvoice.from_payload(canonical_payload)
        artifacts = await asyncio.to_thread(self._generator.generate, canonical)

        pdf_key = artifact_key(tenant_id, invoice_id, PDF_FILENAME)
        xml_key = artifact_key(tenant_id, invoice_id, XML_FILENAME)
        await self._store.put_object(pdf_key, artifacts.pdf, "application/pdf")
        await self._store.put_object(xml_key, artifacts.xml, "application/xml")

        async with self._session_factory.begin() as session:
            await self._require_invoice(session, tenant_id, invoice_id)
            await InvoiceArtifactRepository(session, tenant_id=tenant_id).add(
                invoice_id,
                pdf_key=pdf_key,
                xml_key=xml_key,
                pdf_sha256=artifacts.pdf_sha256,
                xml_sha256=artifacts.xml_sha256,
            )
            await InvoiceRepository(session, tenant_id=tenant_id).update_status(
                invoice_id, InvoiceStatus.GENERATED.value
            )
            await AuditRecorder(session, tenant_id=tenant_id, correlation_id=correlation_id).record_event(
                AuditEventType.GENERATE_COMPLETED,
                {"pdfSha256": artifacts.pdf_sha256, "xmlSha256": artifacts.xml_sha256},
                invoice_id=invoice_id,
                job_id=job.id,
            )
            result = await self._enqueue_next(
                session,
                JobType.SUBMIT_PDP,
                self._stage_payload(tenant_id, invoice_id, correlation_id),
                tenant_id=tenant_id,
                correlation_id=correlation_id,
                idempotency_key=build_idempotency_key(IdempotencyStep.SUBMIT, tenant_id, invoice_id),
            )
        self._count_enqueued(JobType.SUBMIT_PDP, result)

    # ------------------------------------------------------------------
    # SUBMIT_PDP
    # ------------------------------------------------------------------

    async def _load_artifacts(self, keys: dict[str, str | None], digests: dict[str, str | None]) -> PdpArtifacts:
        parts: dict[str, PdpArtifact] = {}
        for kind in ("pdf", "xml"):
            key = keys[kind]
            if not key:
                raise MissingDataError(f"Artifact {kind} has no storage key")
            encoded: str | None = None
            if self._settings.pdp_artifact_mode is ArtifactMode.BASE64:
                encoded = b64encode(await self._store.get_object(key)).decode("ascii")
            parts[kind] = PdpArtifact(key=key, sha256=digests[kind], base64=encoded)
        return PdpArtifacts(pdf=parts["pdf"], xml=parts["xml"])

    async def submit_pdp(self, job: Job) -> None:
        """Submit the latest artifacts and record the submission."""
        payload = InvoiceJobPayload.model_validate(job.payload)
        tenant_id, invoice_id = payload.tenant_id, payload.invoice_id
        correlation_id = self._correlation_id(job, payload)

        async with self._session_factory() as session:
            invoice = await self._require_invoice(session, tenant_id, invoice_id)
            canonical_payload = invoice.canonical_payload
            artifact = await InvoiceArtifactRepository(session, tenant_id=tenant_id).get_latest(invoice_id)
            keys = {"pdf": artifact.pdf_key, "xml": artifact.xml_key} if artifact else {}
            digests = {"pdf": artifact.pdf_sha256, "xml": artifact.xml_sha256} if artifact else {}
        if not canonical_payload:
            raise MissingDataError(f"Invoice {invoice_id} has no canonical payload")
        if artifact is None:
            raise MissingDataError(f"Invoice {invoice_id} has no generated artifacts")

        canonical = CanonicalInvoice.from_payload(canonical_payload)
        artifacts = await self._load_artifacts(keys, digests)
        api_key = await self._tenant_api_key(tenant_id, SecretName.PDP_API_KEY, self._settings.pdp_api_key)

        try:
            submission = await self._pdp.submit(
                tenant_id,
                canonical,
                artifacts,
                api_key=api_key,
                correlation_id=correlation_id,
                idempotency_key=build_idempotency_key(IdempotencyStep.SUBMIT, tenant_id, invoice_id),
            )
        except Exception as exc:
            async with self._session_factory.begin() as session:
                await AuditRecorder(session, tenant_id=tenant_id, correlation_id=correlation_id).record_event(
                    AuditEventType.SUBMIT_FAILED,
                    {"provider": self._pdp.provider, "error": str(exc)},
                    invoice_id=invoice_id,
                    job_id=job.id,
                )
            raise

        async with self._session_factory.begin() as session:
            await PdpSubmissionRepository(session, tenant_id=tenant_id).upsert(
                invoice_id,
                provider=submission.provider,
                submission_id=submission.submission_id,
                status=normalize_pdp_status(submission.status) or "SUBMITTED",
            )
            await InvoiceRepository(session, tenant_id=tenant_id).update_status(
                invoice_id, InvoiceStatus.SUBMITTED.value
            )
            await AuditRecorder(session, tenant_id=tenant_id, correlation_id=correlation_id).record_event(
                AuditEventType.SUBMIT_COMPLETED,
                {"provider": submission.provider, "submissionId": submission.submission_id},
                invoice_id=invoice_id,
                job_id=job.id,
            )
            result = await self._enqueue_next(
                session,
                JobType.SYNC_STATUS,
                SyncStatusPayload(
                    tenant_id=tenant_id, invoice_id=invoice_id, correlation_id=correlation_id
                ).model_dump(exclude_none=True),
                tenant_id=tenant_id,
                correlation_id=correlation_id,
                idempotency_key=build_idempotency_key(IdempotencyStep.SYNC, tenant_id, invoice_id),
            )
        self._count_enqueued(JobType.SYNC_STATUS, result)

    # ------------------------------------------------------------------
    # SYNC_STATUS
    # ------------------------------------------------------------------

    @staticmethod
    def _next_sync_key(payload: SyncStatusPayload) -> str:
        chain: tuple[object, ...] = ()
        if payload.reason == "reconcile":
            chain = ("reconcile",) if payload.bucket is None else ("reconcile", payload.bucket)
        return build_idempotency_key(
            IdempotencyStep.SYNC, payload.tenant_id, payload.invoice_id, *chain, payload.attempt + 1
        )

    async def sync_status(self, job: Job) -> None:
        """Poll the PDP, propagate the status and re-schedule while pending."""
        payload = SyncStatusPayload.model_validate(job.payload)
        tenant_id, invoice_id = payload.tenant_id, payload.invoice_id
        correlation_id = self._correlation_id(job, payload)

        async with self._session_factory() as session:
            invoice = await self._require_invoice(session, tenant_id, invoice_id)
            ghl_invoice_id = invoice.ghl_invoice_id
            submission = await PdpSubmissionRepository(session, tenant_id=tenant_id).get_latest(invoice_id)
            if submission is None:
                raise MissingDataError(f"Invoice {invoice_id} has no PDP submission")
            provider, submission_id = submission.provider, submission.submission_id

        pdp_key = await self._tenant_api_key(tenant_id, SecretName.PDP_API_KEY, self._settings.pdp_api_key)
        try:
            polled = await self._pdp.get_status(
                tenant_id,
                submission_id,
                api_key=pdp_key,
                correlation_id=correlation_id,
                idempotency_key=build_idempotency_key(
                    IdempotencyStep.SYNC, tenant_id, invoice_id, payload.attempt
                ),
            )
        except Exception as exc:
            async with self._session_factory.begin() as session:
                await PdpSubmissionRepository(session, tenant_id=tenant_id).record_poll(
                    invoice_id, provider=provider, last_error=str(exc)
                )
            raise

        pdp_status = normalize_pdp_status(polled.status)
        invoice_status = invoice_status_for(pdp_status)

        crm_error: str | None = None
        if invoice_status is not InvoiceStatus.ERROR:
            crm_key = await self._tenant_api_key(tenant_id, SecretName.CRM_API_KEY, self._settings.crm_api_key)
            try:
                await self._crm.push_status(
                    tenant_id, ghl_invoice_id, invoice_status.value, api_key=crm_key, correlation_id=correlation_id
                )
            except ExternalServiceError as exc:
                crm_error = str(exc)
                logger.warning("CRM status push for invoice %s failed: %s", ghl_invoice_id, exc)

        rescheduled: EnqueueResult | None = None
        delay = self._poll_backoff.delay_for(payload.attempt)
        async with self._session_factory.begin() as session:
            await PdpSubmissionRepository(session, tenant_id=tenant_id).record_poll(
                invoice_id, provider=provider, status=pdp_status, status_raw=polled.raw
            )
            await InvoiceRepository(session, tenant_id=tenant_id).update_status(invoice_id, invoice_status.value)

            audit = AuditRecorder(session, tenant_id=tenant_id, correlation_id=correlation_id)
            if crm_error is not None:
                await audit.record_event(
                    AuditEventType.CRM_PUSH_FAILED,
                    {"status": invoice_status.value, "error": crm_error},
                    invoice_id=invoice_id,
                    job_id=job.id,
                )
            await audit.record_event(
                AuditEventType.SYNC_COMPLETED,
                {"pdpStatus": pdp_status, "invoiceStatus": invoice_status.value, "attempt": payload.attempt},
                invoice_id=invoice_id,
                job_id=job.id,
            )

            if is_pending(pdp_status):
                next_payload = payload.model_copy(
                    update={"attempt": payload.attempt + 1, "correlation_id": correlation_id}
                )
                rescheduled = await self._enqueue_next(
                    session,
                    JobType.SYNC_STATUS,
                    next_payload.model_dump(exclude_none=True),
                    tenant_id=tenant_id,
                    correlation_id=correlation_id,
                    idempotency_key=self._next_sync_key(payload),
                    delay_seconds=delay,
                )
                if rescheduled.enqueued:
                    await audit.record_event(
                        AuditEventType.SYNC_RESCHEDULED,
                        {"attempt": payload.attempt + 1, "delaySeconds": delay},
                        invoice_id=invoice_id,
                        job_id=job.id,
                    )

        if rescheduled is not None:
            self._count_enqueued(JobType.SYNC_STATUS, rescheduled)
            logger.info(
                "Invoice %s still %s at PDP; next poll in %.0fs (attempt %d)",
                invoice_id,
                pdp_status,
                delay,
                payload.attempt + 1,
            )

    # ------------------------------------------------------------------
    # RECONCILE_PDP
    # ------------------------------------------------------------------

    async def reconcile_pdp(self, job: Job) -> None:
        """Enqueue SYNC_STATUS for every pending submission not polled recently."""
        payload = ReconcilePayload.model_validate(job.payload)
        now = self._queue.now()
        stale_seconds = payload.stale_seconds or self._settings.reconcile_stale_seconds
        limit = payload.limit or self._settings.reconcile_batch_limit
        bucket = payload.bucket
        if bucket is None:
            bucket = time_bucket(now, self._settings.reconcile_interval_seconds)

        results: list[EnqueueResult] = []
        async with self._session_factory.begin() as session:
            stale = await find_stale_submissions(
                session,
                statuses=PENDING_PDP_STATUSES,
                checked_before=now - timedelta(seconds=stale_seconds),
                limit=limit,
            )
            for submission in stale:
                correlation_id = str(uuid.uuid4())
                sync_payload = SyncStatusPayload(
                    tenant_id=submission.tenant_id,
                    invoice_id=submission.invoice_id,
                    correlation_id=correlation_id,
                    reason="reconcile",
                    bucket=bucket,
                )
                result = await self._enqueue_next(
                    session,
                    JobType.SYNC_STATUS,
                    sync_payload.model_dump(exclude_none=True),
                    tenant_id=submission.tenant_id,
                    correlation_id=correlation_id,
                    idempotency_key=build_idempotency_key(
                        IdempotencyStep.SYNC, submission.tenant_id, submission.invoice_id, "reconcile", bucket
                    ),
                )
                if result.enqueued:
                    await AuditRecorder(
                        session,
                        tenant_id=submission.tenant_id,
                        actor=AuditActor.RECONCILER,
                        correlation_id=correlation_id,
                    ).record_event(
                        AuditEventType.RECONCILE_ENQUEUED,
                        {"submissionId": submission.submission_id, "status": submission.status, "bucket": bucket},
                        invoice_id=submission.invoice_id,
                        job_id=job.id,
                    )
                results.append(result)

        self._count_enqueued(JobType.SYNC_STATUS, *results)
        enqueued = sum(1 for result in results if result.enqueued)
        for _ in range(enqueued):
            self._metrics.increment(RECONCILE_FANOUT)
        logger.info(
            "Reconciliation bucket %d: %d stale submission(s), %d SYNC_STATUS job(s) enqueued",
            bucket,
            len(results),
            enqueued,
        )
