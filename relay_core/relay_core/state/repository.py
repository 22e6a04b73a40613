"""Repository classes providing access to the relay state store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  All writes call ``session.flush()``
so that generated defaults are populated; the caller is responsible for
committing (or relying on ``get_session`` / ``session_factory.begin()``).

Tenant-scoped repositories take ``tenant_id`` at construction and apply it
to every statement, so one tenant can never read or write another's rows.
"""

from __future__ import annotations

import hashlib
import json
import logging
import uuid
from collections.abc import Iterable, Sequence
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import delete, func, or_, select, text, update
from sqlalchemy.ext.asyncio import AsyncSession

from relay_core.models.jobs import EnqueueResult, JobStatus, JobType
from relay_core.state.tables import (
    AuditLogTable,
    IdempotencyKeyTable,
    InvoiceArtifactTable,
    InvoiceTable,
    JobTable,
    PdpSubmissionTable,
    TenantSecretTable,
    TenantTable,
)

logger = logging.getLogger(__name__)

# Stored in ``jobs.tenant_id`` for jobs that are not tenant-scoped.
UNSCOPED_TENANT = ""


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _new_id() -> str:
    return str(uuid.uuid4())


def _dialect_name(session: AsyncSession) -> str:
    bind = session.get_bind()
    return str(getattr(getattr(bind, "dialect", None), "name", ""))


async def _dialect_upsert(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
    update_columns: list[str],
) -> Any:
    """Dialect-aware upsert: PostgreSQL ``ON CONFLICT DO UPDATE`` or SQLite equivalent.

    Parameters
    ----------
    session:
        The active async session.
    table:
        The SQLAlchemy table class to upsert into.
    values:
        Column-value mapping for the row to insert.
    index_elements:
        Column names forming the unique constraint for conflict detection.
    update_columns:
        Column names to update when a conflict occurs.
    """
    stmt: Any
    if "postgresql" in _dialect_name(session):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=index_elements,
            set_={col: getattr(stmt.excluded, col) for col in update_columns},
        )
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=index_elements,
            set_={col: values[col] for col in update_columns},
        )
    return await session.execute(stmt)


async def _dialect_insert_nothing(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
) -> bool:
    """Insert with ``ON CONFLICT DO NOTHING``; return ``True`` if a row was written."""
    stmt: Any
    if "postgresql" in _dialect_name(session):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values).on_conflict_do_nothing(index_elements=index_elements)
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values).on_conflict_do_nothing(index_elements=index_elements)
    result = await session.execute(stmt)
    return bool(result.rowcount == 1)


# ---------------------------------------------------------------------------
# TenantRepository
# ---------------------------------------------------------------------------


class TenantRepository:
    """Tenant registry.  Not tenant-scoped: it is how tenants are resolved."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, tenant_id: str) -> TenantTable | None:
        return await self._session.get(TenantTable, tenant_id)

    async def get_active(self, tenant_id: str) -> TenantTable | None:
        """Return the tenant only if it exists and is active."""
        stmt = select(TenantTable).where(
            TenantTable.id == tenant_id,
            TenantTable.status == "active",
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def create(
        self,
        name: str,
        *,
        tenant_id: str | None = None,
        config: dict[str, Any] | None = None,
        status: str = "active",
    ) -> TenantTable:
        row = TenantTable(
            id=tenant_id or _new_id(),
            name=name,
            status=status,
            config=config or {},
        )
        self._session.add(row)
        await self._session.flush()
        logger.info("Created tenant %s (%s)", row.id, name)
        return row

    async def set_status(self, tenant_id: str, status: str) -> bool:
        result = await self._session.execute(
            update(TenantTable).where(TenantTable.id == tenant_id).values(status=status, updated_at=_utcnow())
        )
        await self._session.flush()
        return bool(result.rowcount)

    async def list_all(self, *, active_only: bool = False) -> list[TenantTable]:
        stmt = select(TenantTable).order_by(TenantTable.created_at.asc())
        if active_only:
            stmt = stmt.where(TenantTable.status == "active")
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# TenantSecretRepository
# ---------------------------------------------------------------------------


class TenantSecretRepository:
    """Stores encrypted secret values; encryption happens in the caller."""

    def __init__(self, session: AsyncSession, *, tenant_id: str) -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def get(self, name: str) -> TenantSecretTable | None:
        stmt = select(TenantSecretTable).where(
            TenantSecretTable.tenant_id == self._tenant_id,
            TenantSecretTable.name == name,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def put(self, name: str, ciphertext: str, key_version: int) -> None:
        await _dialect_upsert(
            self._session,
            TenantSecretTable,
            {
                "tenant_id": self._tenant_id,
                "name": name,
                "ciphertext": ciphertext,
                "key_version": key_version,
                "updated_at": _utcnow(),
            },
            index_elements=["tenant_id", "name"],
            update_columns=["ciphertext", "key_version", "updated_at"],
        )
        await self._session.flush()


# ---------------------------------------------------------------------------
# JobRepository
# ---------------------------------------------------------------------------


class JobRepository:
    """Row-level operations on the ``jobs`` table.

    Used directly inside a caller's transaction when an enqueue has to
    commit atomically with other writes (a handler's stage result, a
    webhook's invoice upsert).  :class:`relay_core.queue.JobQueue` wraps it
    with its own transactions for claim/complete/fail.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def enqueue(
        self,
        job_type: JobType,
        payload: dict[str, Any],
        *,
        tenant_id: str | None = None,
        correlation_id: str | None = None,
        idempotency_key: str | None = None,
        run_at: datetime | None = None,
        max_attempts: int = 5,
    ) -> EnqueueResult:
        """Insert a job unless (tenant, type, idempotency key) already exists.

        Returns
        -------
        EnqueueResult
            ``enqueued=False`` (and no id) when the key collided.
        """
        now = _utcnow()
        job_id = _new_id()
        values = {
            "id": job_id,
            "type": job_type.value,
            "payload": payload,
            "tenant_id": tenant_id or UNSCOPED_TENANT,
            "correlation_id": correlation_id,
            "status": JobStatus.QUEUED.value,
            "attempts": 0,
            "max_attempts": max_attempts,
            "run_at": run_at or now,
            "idempotency_key": idempotency_key,
            "created_at": now,
            "updated_at": now,
        }
        if idempotency_key is None:
            self._session.add(JobTable(**values))
            await self._session.flush()
            inserted = True
        else:
            inserted = await _dialect_insert_nothing(
                self._session,
                JobTable,
                values,
                index_elements=["tenant_id", "type", "idempotency_key"],
            )

        if not inserted:
            logger.debug(
                "Duplicate enqueue suppressed: type=%s tenant=%s key=%s",
                job_type.value,
                tenant_id or "-",
                idempotency_key,
            )
            return EnqueueResult(enqueued=False)

        logger.debug("Enqueued job %s type=%s key=%s", job_id, job_type.value, idempotency_key or "-")
        return EnqueueResult(enqueued=True, id=job_id)

    async def get(self, job_id: str, *, for_update: bool = False) -> JobTable | None:
        stmt = select(JobTable).where(JobTable.id == job_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def claim_next(self, worker_id: str, now: datetime) -> JobTable | None:
        """Lock and claim the oldest due queued job.

        The candidate is selected with ``FOR UPDATE SKIP LOCKED`` so
        concurrent claimers on PostgreSQL skip each other's rows; the
        conditional ``UPDATE`` re-checks the status so a row claimed in the
        meantime is never taken twice on backends without row locks.
        """
        candidate = (
            select(JobTable.id)
            .where(JobTable.status == JobStatus.QUEUED.value, JobTable.run_at <= now)
            .order_by(JobTable.run_at.asc(), JobTable.created_at.asc())
            .limit(1)
            .with_for_update(skip_locked=True)
        )
        job_id = (await self._session.execute(candidate)).scalar_one_or_none()
        if job_id is None:
            return None

        result = await self._session.execute(
            update(JobTable)
            .where(JobTable.id == job_id, JobTable.status == JobStatus.QUEUED.value)
            .values(
                status=JobStatus.RUNNING.value,
                attempts=JobTable.attempts + 1,
                locked_by=worker_id,
                locked_at=now,
                updated_at=now,
            )
        )
        if result.rowcount != 1:
            return None
        return await self.get(job_id)

    async def mark_completed(self, job_id: str, now: datetime) -> bool:
        result = await self._session.execute(
            update(JobTable)
            .where(JobTable.id == job_id)
            .values(
                status=JobStatus.COMPLETED.value,
                locked_by=None,
                locked_at=None,
                updated_at=now,
            )
        )
        await self._session.flush()
        return bool(result.rowcount)

    async def mark_undecodable(self, job_id: str, error_message: str, now: datetime) -> None:
        await self._session.execute(
            update(JobTable)
            .where(JobTable.id == job_id)
            .values(
                status=JobStatus.FAILED.value,
                locked_by=None,
                locked_at=None,
                last_error=error_message,
                updated_at=now,
            )
        )
        await self._session.flush()

    async def reclaim_expired(self, locked_before: datetime, now: datetime) -> tuple[int, list[JobTable]]:
        """Release ``running`` jobs locked before *locked_before*.

        Jobs with attempts left return to ``queued``; jobs that used their
        last attempt become ``failed``.  Returns the re-queued count and the
        failed rows.
        """
        expired = (
            JobTable.status == JobStatus.RUNNING.value,
            JobTable.locked_at < locked_before,
        )
        exhausted_ids = list(
            (
                await self._session.execute(
                    select(JobTable.id)
                    .where(*expired, JobTable.attempts >= JobTable.max_attempts)
                    .with_for_update(skip_locked=True)
                )
            )
            .scalars()
            .all()
        )
        if exhausted_ids:
            await self._session.execute(
                update(JobTable)
                .where(JobTable.id.in_(exhausted_ids), *expired)
                .values(
                    status=JobStatus.FAILED.value,
                    locked_by=None,
                    locked_at=None,
                    last_error="lease expired on final attempt",
                    updated_at=now,
                )
            )

        result = await self._session.execute(
            update(JobTable)
            .where(*expired, JobTable.attempts < JobTable.max_attempts)
            .values(
                status=JobStatus.QUEUED.value,
                locked_by=None,
                locked_at=None,
                run_at=now,
                last_error="lease expired",
                updated_at=now,
            )
        )
        await self._session.flush()
        failed: list[JobTable] = []
        if exhausted_ids:
            rows = await self._session.execute(
                select(JobTable)
                .where(JobTable.id.in_(exhausted_ids))
                .execution_options(populate_existing=True)
            )
            failed = list(rows.scalars().all())
        return int(result.rowcount or 0), failed

    async def list_jobs(
        self,
        *,
        job_type: JobType | None = None,
        status: JobStatus | None = None,
        tenant_id: str | None = None,
        limit: int = 500,
    ) -> list[JobTable]:
        stmt = select(JobTable)
        if job_type is not None:
            stmt = stmt.where(JobTable.type == job_type.value)
        if status is not None:
            stmt = stmt.where(JobTable.status == status.value)
        if tenant_id is not None:
            stmt = stmt.where(JobTable.tenant_id == tenant_id)
        stmt = stmt.order_by(JobTable.created_at.asc()).limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def count_by_status(self) -> dict[str, int]:
        stmt = select(JobTable.status, func.count()).group_by(JobTable.status)
        result = await self._session.execute(stmt)
        return {status: count for status, count in result.all()}


# ---------------------------------------------------------------------------
# InvoiceRepository
# ---------------------------------------------------------------------------

_MAX_INVOICE_PAGE_SIZE = 200


class InvoiceRepository:
    """Invoices of one tenant."""

    def __init__(self, session: AsyncSession, *, tenant_id: str) -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def upsert_from_webhook(self, ghl_invoice_id: str, raw_payload: dict[str, Any]) -> str:
        """Create the invoice as NEW, or refresh its raw payload.  Returns the invoice id.

        An existing invoice keeps its status; only the raw payload changes.
        """
        now = _utcnow()
        await _dialect_upsert(
            self._session,
            InvoiceTable,
            {
                "id": _new_id(),
                "tenant_id": self._tenant_id,
                "ghl_invoice_id": ghl_invoice_id,
                "status": "NEW",
                "raw_payload": raw_payload,
                "created_at": now,
                "updated_at": now,
            },
            index_elements=["tenant_id", "ghl_invoice_id"],
            update_columns=["raw_payload", "updated_at"],
        )
        row = await self.get_by_external_id(ghl_invoice_id)
        if row is None:  # pragma: no cover - the upsert above guarantees a row
            raise RuntimeError(f"Invoice upsert for {ghl_invoice_id} produced no row")
        return row.id

    async def get(self, invoice_id: str) -> InvoiceTable | None:
        stmt = (
            select(InvoiceTable)
            .where(InvoiceTable.tenant_id == self._tenant_id, InvoiceTable.id == invoice_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_external_id(self, ghl_invoice_id: str) -> InvoiceTable | None:
        stmt = (
            select(InvoiceTable)
            .where(
                InvoiceTable.tenant_id == self._tenant_id,
                InvoiceTable.ghl_invoice_id == ghl_invoice_id,
            )
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def update_status(self, invoice_id: str, status: str, *, last_error: str | None = None) -> bool:
        result = await self._session.execute(
            update(InvoiceTable)
            .where(InvoiceTable.tenant_id == self._tenant_id, InvoiceTable.id == invoice_id)
            .values(status=status, last_error=last_error, updated_at=_utcnow())
        )
        await self._session.flush()
        return bool(result.rowcount)

    async def update_raw_payload(self, invoice_id: str, raw_payload: dict[str, Any]) -> None:
        await self._session.execute(
            update(InvoiceTable)
            .where(InvoiceTable.tenant_id == self._tenant_id, InvoiceTable.id == invoice_id)
            .values(raw_payload=raw_payload, updated_at=_utcnow())
        )
        await self._session.flush()

    async def update_canonical_payload(self, invoice_id: str, canonical_payload: dict[str, Any]) -> None:
        await self._session.execute(
            update(InvoiceTable)
            .where(InvoiceTable.tenant_id == self._tenant_id, InvoiceTable.id == invoice_id)
            .values(canonical_payload=canonical_payload, updated_at=_utcnow())
        )
        await self._session.flush()

    async def list_invoices(
        self,
        *,
        status: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[InvoiceTable]:
        """List invoices newest first, optionally filtered by status."""
        limit = max(1, min(limit, _MAX_INVOICE_PAGE_SIZE))
        stmt = select(InvoiceTable).where(InvoiceTable.tenant_id == self._tenant_id)
        if status is not None:
            stmt = stmt.where(InvoiceTable.status == status)
        stmt = stmt.order_by(InvoiceTable.created_at.desc()).limit(limit).offset(offset)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# InvoiceArtifactRepository
# ---------------------------------------------------------------------------


class InvoiceArtifactRepository:
    """Rendered artifact references of one tenant's invoices."""

    def __init__(self, session: AsyncSession, *, tenant_id: str) -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def add(
        self,
        invoice_id: str,
        *,
        pdf_key: str,
        xml_key: str,
        pdf_sha256: str,
        xml_sha256: str,
    ) -> InvoiceArtifactTable:
        row = InvoiceArtifactTable(
            id=_new_id(),
            tenant_id=self._tenant_id,
            invoice_id=invoice_id,
            pdf_key=pdf_key,
            xml_key=xml_key,
            pdf_sha256=pdf_sha256,
            xml_sha256=xml_sha256,
            created_at=_utcnow(),
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get_latest(self, invoice_id: str) -> InvoiceArtifactTable | None:
        stmt = (
            select(InvoiceArtifactTable)
            .where(
                InvoiceArtifactTable.tenant_id == self._tenant_id,
                InvoiceArtifactTable.invoice_id == invoice_id,
            )
            .order_by(InvoiceArtifactTable.created_at.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_created_before(self, cutoff: datetime) -> list[InvoiceArtifactTable]:
        stmt = (
            select(InvoiceArtifactTable)
            .where(
                InvoiceArtifactTable.tenant_id == self._tenant_id,
                InvoiceArtifactTable.created_at < cutoff,
            )
            .order_by(InvoiceArtifactTable.created_at.asc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def delete_many(self, artifact_ids: Iterable[str]) -> int:
        ids = list(artifact_ids)
        if not ids:
            return 0
        result = await self._session.execute(
            delete(InvoiceArtifactTable).where(
                InvoiceArtifactTable.tenant_id == self._tenant_id,
                InvoiceArtifactTable.id.in_(ids),
            )
        )
        await self._session.flush()
        return int(result.rowcount or 0)


# ---------------------------------------------------------------------------
# PdpSubmissionRepository
# ---------------------------------------------------------------------------


class PdpSubmissionRepository:
    """PDP submissions of one tenant."""

    def __init__(self, session: AsyncSession, *, tenant_id: str) -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def upsert(
        self,
        invoice_id: str,
        *,
        provider: str,
        submission_id: str,
        status: str,
        status_raw: dict[str, Any] | None = None,
    ) -> None:
        """Insert or replace the submission for (invoice, provider)."""
        now = _utcnow()
        await _dialect_upsert(
            self._session,
            PdpSubmissionTable,
            {
                "id": _new_id(),
                "tenant_id": self._tenant_id,
                "invoice_id": invoice_id,
                "provider": provider,
                "submission_id": submission_id,
                "status": status,
                "status_raw": status_raw,
                "last_checked_at": now,
                "last_error": None,
                "created_at": now,
                "updated_at": now,
            },
            index_elements=["tenant_id", "invoice_id", "provider"],
            update_columns=["submission_id", "status", "status_raw", "last_checked_at", "last_error", "updated_at"],
        )
        await self._session.flush()

    async def get_latest(self, invoice_id: str) -> PdpSubmissionTable | None:
        stmt = (
            select(PdpSubmissionTable)
            .where(
                PdpSubmissionTable.tenant_id == self._tenant_id,
                PdpSubmissionTable.invoice_id == invoice_id,
            )
            .order_by(PdpSubmissionTable.updated_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def record_poll(
        self,
        invoice_id: str,
        *,
        provider: str,
        status: str | None = None,
        status_raw: dict[str, Any] | None = None,
        last_error: str | None = None,
    ) -> None:
        """Stamp ``last_checked_at`` and store the polled status (or the error)."""
        now = _utcnow()
        values: dict[str, Any] = {"last_checked_at": now, "last_error": last_error, "updated_at": now}
        if status is not None:
            values["status"] = status
            values["status_raw"] = status_raw
        await self._session.execute(
            update(PdpSubmissionTable)
            .where(
                PdpSubmissionTable.tenant_id == self._tenant_id,
                PdpSubmissionTable.invoice_id == invoice_id,
                PdpSubmissionTable.provider == provider,
            )
            .values(**values)
        )
        await self._session.flush()


async def find_stale_submissions(
    session: AsyncSession,
    *,
    statuses: Iterable[str],
    checked_before: datetime,
    limit: int,
    tenant_id: str | None = None,
) -> Sequence[PdpSubmissionTable]:
    """System-wide scan for pending submissions not polled since *checked_before*.

    Never-polled rows come first, then the longest-unchecked ones.  Used by
    the reconciliation sweep, which is the only cross-tenant reader.
    """
    stmt = select(PdpSubmissionTable).where(
        PdpSubmissionTable.status.in_(sorted(statuses)),
        or_(
            PdpSubmissionTable.last_checked_at.is_(None),
            PdpSubmissionTable.last_checked_at < checked_before,
        ),
    )
    if tenant_id is not None:
        stmt = stmt.where(PdpSubmissionTable.tenant_id == tenant_id)
    stmt = stmt.order_by(
        PdpSubmissionTable.last_checked_at.asc().nulls_first(),
        PdpSubmissionTable.updated_at.asc(),
    ).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# IdempotencyKeyRepository
# ---------------------------------------------------------------------------


class IdempotencyKeyRepository:
    """First-seen markers for inbound deliveries of one tenant."""

    def __init__(self, session: AsyncSession, *, tenant_id: str) -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def claim(
        self,
        step: str,
        key: str,
        *,
        invoice_id: str | None = None,
        correlation_id: str | None = None,
    ) -> bool:
        """Record (step, key).  Returns ``False`` if it was already recorded."""
        return await _dialect_insert_nothing(
            self._session,
            IdempotencyKeyTable,
            {
                "tenant_id": self._tenant_id,
                "step": step,
                "key": key,
                "invoice_id": invoice_id,
                "correlation_id": correlation_id,
                "created_at": _utcnow(),
            },
            index_elements=["tenant_id", "step", "key"],
        )


# ---------------------------------------------------------------------------
# AuditRepository
# ---------------------------------------------------------------------------


def payload_digest(payload: dict[str, Any] | None) -> str:
    """SHA-256 of the canonical JSON encoding of *payload*."""
    encoded = json.dumps(payload or {}, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


class AuditRepository:
    """Append-only audit log repository with hash-chaining for tamper evidence.

    Each entry stores ``payload_hash`` (digest of its payload) and is linked
    to its predecessor via ``previous_hash``, forming a per-tenant chain.
    ``entry_hash`` is a SHA-256 digest of the entry's content fields and the
    previous hash, so any modification to an existing row breaks the chain
    for every later entry.
    """

    def __init__(self, session: AsyncSession, *, tenant_id: str) -> None:
        self._session = session
        self._tenant_id = tenant_id

    @staticmethod
    def _compute_hash(
        tenant_id: str,
        correlation_id: str | None,
        actor: str,
        event_type: str,
        invoice_id: str | None,
        job_id: str | None,
        payload_hash: str,
        previous_hash: str | None,
        created_at: datetime,
    ) -> str:
        """SHA-256 over ``|``-joined content fields; ``None`` hashes as ``""``."""
        parts = [
            tenant_id,
            correlation_id or "",
            actor,
            event_type,
            invoice_id or "",
            job_id or "",
            payload_hash,
            previous_hash or "",
            created_at.isoformat(),
        ]
        return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()

    async def get_latest_hash(self) -> str | None:
        stmt = (
            select(AuditLogTable.entry_hash)
            .where(AuditLogTable.tenant_id == self._tenant_id)
            .order_by(AuditLogTable.id.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def record(
        self,
        *,
        actor: str,
        event_type: str,
        payload: dict[str, Any] | None = None,
        correlation_id: str | None = None,
        invoice_id: str | None = None,
        job_id: str | None = None,
    ) -> AuditLogTable:
        """Append an entry and return it."""
        now = _utcnow()

        if "postgresql" in _dialect_name(self._session):
            # Serialize chain appends per tenant so two writers cannot fork it.
            lock_id = int(hashlib.sha256(f"audit_chain_{self._tenant_id}".encode()).hexdigest()[:8], 16) & 0x7FFFFFFF
            await self._session.execute(
                text("SELECT pg_advisory_xact_lock(:lock_id)"),
                {"lock_id": lock_id},
            )

        previous_hash = await self.get_latest_hash()
        body = dict(payload or {})
        payload_hash = payload_digest(body)
        entry_hash = self._compute_hash(
            tenant_id=self._tenant_id,
            correlation_id=correlation_id,
            actor=actor,
            event_type=event_type,
            invoice_id=invoice_id,
            job_id=job_id,
            payload_hash=payload_hash,
            previous_hash=previous_hash,
            created_at=now,
        )

        row = AuditLogTable(
            tenant_id=self._tenant_id,
            correlation_id=correlation_id,
            actor=actor,
            event_type=event_type,
            invoice_id=invoice_id,
            job_id=job_id,
            payload=body,
            payload_hash=payload_hash,
            previous_hash=previous_hash,
            entry_hash=entry_hash,
            created_at=now,
        )
        self._session.add(row)
        await self._session.flush()

        logger.info(
            "Audit: tenant=%s actor=%s event=%s invoice=%s",
            self._tenant_id,
            actor,
            event_type,
            invoice_id or "-",
        )
        return row

    async def list_for_invoice(self, invoice_id: str) -> list[AuditLogTable]:
        """Entries for one invoice in write order."""
        stmt = (
            select(AuditLogTable)
            .where(AuditLogTable.tenant_id == self._tenant_id, AuditLogTable.invoice_id == invoice_id)
            .order_by(AuditLogTable.id.asc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def query(
        self,
        *,
        event_type: str | None = None,
        correlation_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[AuditLogTable]:
        """Most recent entries first, optionally filtered."""
        stmt = select(AuditLogTable).where(AuditLogTable.tenant_id == self._tenant_id)
        if event_type is not None:
            stmt = stmt.where(AuditLogTable.event_type == event_type)
        if correlation_id is not None:
            stmt = stmt.where(AuditLogTable.correlation_id == correlation_id)
        stmt = stmt.order_by(AuditLogTable.id.desc()).limit(limit).offset(offset)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def verify_chain(self, *, limit: int = 1000) -> tuple[bool, int]:
        """Recompute payload and entry hashes over the oldest *limit* entries.

        Returns
        -------
        tuple[bool, int]
            ``(is_valid, entries_checked)``.
        """
        stmt = (
            select(AuditLogTable)
            .where(AuditLogTable.tenant_id == self._tenant_id)
            .order_by(AuditLogTable.id.asc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        entries = list(result.scalars().all())

        checked = 0
        previous_hash: str | None = None
        for entry in entries:
            if entry.previous_hash != previous_hash:
                logger.warning(
                    "Audit chain break at entry %s: expected previous_hash=%s, got=%s",
                    entry.id,
                    previous_hash,
                    entry.previous_hash,
                )
                return (False, checked)

            if payload_digest(entry.payload) != entry.payload_hash:
                logger.warning("Audit payload hash mismatch at entry %s", entry.id)
                return (False, checked)

            expected_hash = self._compute_hash(
                tenant_id=entry.tenant_id,
                correlation_id=entry.correlation_id,
                actor=entry.actor,
                event_type=entry.event_type,
                invoice_id=entry.invoice_id,
                job_id=entry.job_id,
                payload_hash=entry.payload_hash,
                previous_hash=entry.previous_hash,
                created_at=entry.created_at,
            )
            if entry.entry_hash != expected_hash:
                logger.warning(
                    "Audit hash mismatch at entry %s: stored=%s, computed=%s",
                    entry.id,
                    entry.entry_hash,
                    expected_hash,
                )
                return (False, checked)

            previous_hash = entry.entry_hash
            checked += 1

        return (True, checked)
