"""Tests for the relay operator CLI.

Uses typer.testing.CliRunner to invoke each command against a throwaway
SQLite database and checks both the command output and the resulting
database state.
"""

from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime, timedelta
from pathlib import Path
from types import SimpleNamespace
from typing import Any

import pytest
from relay_cli import app as cli_app
from relay_cli.app import app
from relay_core.config import load_settings
from relay_core.models.jobs import JobType
from relay_core.queue import JobQueue
from relay_core.security import SecretCipher, SecretName, TenantSecretStore
from relay_core.state.database import dispose, get_engine, get_session_factory
from relay_core.state.repository import InvoiceArtifactRepository, InvoiceRepository, TenantRepository
from relay_core.storage import FilesystemObjectStore, artifact_key
from relay_core.telemetry.metrics import JOBS_PROCESSED, PrometheusMetricsSink
from sqlalchemy import inspect, text

MASTER_KEY = "ab" * 32


def _json(result) -> dict[str, Any]:
    """Parse the JSON document a command prints after its human-readable lines."""
    out = result.stdout
    return json.loads(out[out.index("{") : out.rindex("}") + 1])


def _rows(sync_engine, sql: str, **params: Any) -> list[Any]:
    with sync_engine.connect() as conn:
        return list(conn.execute(text(sql), params))


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


class TestDatabaseCommands:
    def test_help_lists_commands(self, runner):
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        for command in ("worker", "reconcile", "migrate", "init-db", "create-tenant", "seed", "cleanup-artifacts"):
            assert command in result.output

    def test_init_db_creates_tables(self, invoke, sync_engine):
        result = invoke("init-db")

        assert result.exit_code == 0, result.output
        tables = set(inspect(sync_engine).get_table_names())
        assert {"tenants", "tenant_secrets", "jobs", "invoices", "audit_log"} <= tables

    def test_init_db_is_repeatable(self, invoke):
        assert invoke("init-db").exit_code == 0
        assert invoke("init-db").exit_code == 0

    def test_migrate_to_head(self, invoke, sync_engine):
        result = invoke("migrate")

        assert result.exit_code == 0, result.output
        assert _rows(sync_engine, "SELECT version_num FROM alembic_version")[0][0] == "001"


# ---------------------------------------------------------------------------
# Tenants
# ---------------------------------------------------------------------------


class TestTenantCommands:
    def test_create_tenant_encrypts_secrets(self, invoke, initialised_db, sync_engine):
        result = invoke(
            "create-tenant",
            "Acme",
            "--tenant-id",
            "acme",
            "--webhook-secret",
            "s3cret",
            "--pdp-api-key",
            "pdp-key",
            env={"TENANT_SECRET_KEY": MASTER_KEY},
        )

        assert result.exit_code == 0, result.output
        assert _json(result) == {"ok": True, "tenantId": "acme", "webhookSecret": "s3cret"}

        secrets = {
            row.name: row
            for row in _rows(sync_engine, "SELECT name, ciphertext, key_version FROM tenant_secrets WHERE tenant_id = 'acme'")
        }
        assert set(secrets) == {SecretName.WEBHOOK_SECRET, SecretName.PDP_API_KEY}
        assert secrets[SecretName.WEBHOOK_SECRET].key_version == 1
        assert "s3cret" not in secrets[SecretName.WEBHOOK_SECRET].ciphertext

    def test_secret_is_readable_with_the_master_key(self, invoke, initialised_db, db_url):
        invoke("create-tenant", "Acme", "--tenant-id", "acme", "--webhook-secret", "s3cret", env={"TENANT_SECRET_KEY": MASTER_KEY})

        async def _read() -> str | None:
            engine = get_engine(db_url)
            try:
                async with get_session_factory(engine)() as session:
                    return await TenantSecretStore(session, SecretCipher(MASTER_KEY), tenant_id="acme").get(
                        SecretName.WEBHOOK_SECRET
                    )
            finally:
                await dispose(engine)

        assert asyncio.run(_read()) == "s3cret"

    def test_create_tenant_without_key_warns(self, invoke, initialised_db, sync_engine):
        result = invoke("create-tenant", "Plain Co")

        assert result.exit_code == 0, result.output
        assert "unencrypted" in result.output
        payload = _json(result)
        assert len(payload["webhookSecret"]) >= 32
        (row,) = _rows(sync_engine, "SELECT ciphertext, key_version FROM tenant_secrets WHERE tenant_id = :t", t=payload["tenantId"])
        assert (row.ciphertext, row.key_version) == (payload["webhookSecret"], 0)

    def test_duplicate_tenant_id_fails(self, invoke, initialised_db):
        assert invoke("create-tenant", "Acme", "--tenant-id", "acme").exit_code == 0

        result = invoke("create-tenant", "Acme again", "--tenant-id", "acme")
        assert result.exit_code == 1
        assert "already exists" in result.output

    def test_seed_creates_demo_tenant(self, invoke, initialised_db, sync_engine):
        result = invoke("seed")

        assert result.exit_code == 0, result.output
        tenant_id = _json(result)["tenantId"]
        (tenant,) = _rows(sync_engine, "SELECT name, status FROM tenants WHERE id = :t", t=tenant_id)
        assert (tenant.name, tenant.status) == ("Demo Tenant", "active")
        (secret,) = _rows(sync_engine, "SELECT ciphertext FROM tenant_secrets WHERE tenant_id = :t", t=tenant_id)
        assert secret.ciphertext == "demo-secret"


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------


class TestQueueCommands:
    def test_reconcile_enqueues_sweep(self, invoke, initialised_db, sync_engine):
        result = invoke("reconcile", "--stale-seconds", "60", "--limit", "5")

        assert result.exit_code == 0, result.output
        outcome = _json(result)
        assert outcome["enqueued"] is True
        (job,) = _rows(sync_engine, "SELECT type, payload, idempotency_key, status FROM jobs")
        assert job.type == "RECONCILE_PDP"
        assert job.status == "queued"
        assert job.idempotency_key.startswith("RECONCILE:manual:")
        assert json.loads(job.payload) == {"stale_seconds": 60, "limit": 5, "bucket": outcome["bucket"]}

    def test_queue_status_counts(self, invoke, initialised_db):
        invoke("reconcile")

        result = invoke("queue-status")
        assert result.exit_code == 0, result.output
        assert "queued" in result.output

    def test_worker_drain_on_empty_queue(self, invoke, initialised_db):
        result = invoke("worker", "--drain")

        assert result.exit_code == 0, result.output
        assert "Processed 0 job(s)" in result.output

    def test_worker_drain_runs_pipeline(self, invoke, initialised_db, db_url, sync_engine, tmp_path):
        async def _seed() -> str:
            engine = get_engine(db_url)
            try:
                factory = get_session_factory(engine)
                async with factory.begin() as session:
                    await TenantRepository(session).create("Acme", tenant_id="acme")
                    invoice_id = await InvoiceRepository(session, tenant_id="acme").upsert_from_webhook(
                        "ghl-1",
                        {
                            "invoiceId": "ghl-1",
                            "invoiceNumber": "INV-1",
                            "currency": "EUR",
                            "customer": {"name": "Buyer SA", "country": "FR"},
                            "items": [{"name": "Audit", "qty": 1, "price": 500, "taxRate": 0.2}],
                        },
                    )
                await JobQueue(factory).enqueue(
                    JobType.FETCH_INVOICE,
                    {"tenant_id": "acme", "invoice_id": invoice_id, "ghl_invoice_id": "ghl-1"},
                    tenant_id="acme",
                    idempotency_key="FETCH:acme:ghl-1",
                )
                return invoice_id
            finally:
                await dispose(engine)

        invoice_id = asyncio.run(_seed())
        result = invoke("worker", "--drain")

        assert result.exit_code == 0, result.output
        assert "Processed 5 job(s)" in result.output
        (invoice,) = _rows(sync_engine, "SELECT status FROM invoices WHERE id = :i", i=invoice_id)
        assert invoice.status == "ACCEPTED"
        assert (tmp_path / "artifacts" / "acme" / invoice_id / "facturx.pdf").exists()


class TestWorkerMetrics:
    """The long-running worker exposes the registry its pipeline counts into."""

    @pytest.fixture()
    def fake_runtime(self, monkeypatch) -> dict[str, Any]:
        captured: dict[str, Any] = {}

        class _Worker:
            async def run(self, stop) -> None:
                captured["sink"].increment(JOBS_PROCESSED, {"type": "RECONCILE_PDP", "outcome": "completed"})

        def _build_runtime(settings, *, metrics=None, **_: Any):
            captured["sink"] = metrics
            return SimpleNamespace(worker=_Worker(), reconciler=None, engine=None)

        async def _dispose(engine) -> None:
            captured["disposed"] = True

        monkeypatch.setattr(cli_app, "build_runtime", _build_runtime)
        monkeypatch.setattr(cli_app, "dispose", _dispose)
        return captured

    def test_metrics_port_serves_worker_registry(self, fake_runtime, monkeypatch):
        calls: list[tuple[int, Any]] = []

        class _Server:
            shut_down = False

            def shutdown(self) -> None:
                self.shut_down = True

        server = _Server()

        def _start(port, registry=None):
            calls.append((port, registry))
            return server, None

        monkeypatch.setattr(cli_app, "start_http_server", _start)
        settings = load_settings(database_url="sqlite+aiosqlite://", metrics_port=9464)

        asyncio.run(cli_app._run_worker(settings, reconcile=False))

        sink = fake_runtime["sink"]
        assert isinstance(sink, PrometheusMetricsSink)
        assert calls == [(9464, sink.registry)]
        assert b"relay_jobs_processed_total" in sink.render()
        assert server.shut_down is True
        assert fake_runtime["disposed"] is True

    def test_no_metrics_server_without_port(self, fake_runtime, monkeypatch):
        calls: list[int] = []
        monkeypatch.setattr(cli_app, "start_http_server", lambda port, registry=None: calls.append(port))
        settings = load_settings(database_url="sqlite+aiosqlite://", metrics_port=None)

        asyncio.run(cli_app._run_worker(settings, reconcile=False))

        assert calls == []

    def test_metrics_port_is_validated(self):
        with pytest.raises(ValueError, match="metrics_port"):
            load_settings(metrics_port=70000)


# ---------------------------------------------------------------------------
# Artifacts
# ---------------------------------------------------------------------------


async def _seed_artifacts(db_url: str, storage_root: Path) -> tuple[str, str]:
    """One artifact pair past retention and one fresh pair.  Returns their invoice ids."""
    store = FilesystemObjectStore(storage_root)
    engine = get_engine(db_url)
    try:
        async with get_session_factory(engine).begin() as session:
            await TenantRepository(session).create("Acme", tenant_id="acme")
            invoices = InvoiceRepository(session, tenant_id="acme")
            artifacts = InvoiceArtifactRepository(session, tenant_id="acme")
            ids = []
            for name, age_days in (("old", 400), ("new", 1)):
                invoice_id = await invoices.upsert_from_webhook(name, {"invoiceId": name})
                pdf_key = artifact_key("acme", invoice_id, "facturx.pdf")
                xml_key = artifact_key("acme", invoice_id, "facturx.xml")
                await store.put_object(pdf_key, b"%PDF-1.7", "application/pdf")
                await store.put_object(xml_key, b"<xml/>", "application/xml")
                row = await artifacts.add(invoice_id, pdf_key=pdf_key, xml_key=xml_key, pdf_sha256="p", xml_sha256="x")
                row.created_at = datetime.now(UTC) - timedelta(days=age_days)
                ids.append(invoice_id)
            await session.flush()
        return ids[0], ids[1]
    finally:
        await dispose(engine)


class TestCleanupArtifacts:
    @pytest.fixture()
    def seeded(self, initialised_db, db_url, tmp_path) -> tuple[str, str]:
        return asyncio.run(_seed_artifacts(db_url, tmp_path / "artifacts"))

    def test_dry_run_reports_only(self, invoke, seeded, sync_engine, tmp_path):
        result = invoke("cleanup-artifacts", "--dry-run")

        assert result.exit_code == 0, result.output
        assert _json(result) == {"ok": True, "dryRun": True, "artifacts": 1, "objects": 0}
        assert len(_rows(sync_engine, "SELECT id FROM invoice_artifacts")) == 2
        assert (tmp_path / "artifacts" / "acme" / seeded[0] / "facturx.pdf").exists()

    def test_removes_expired_records_and_objects(self, invoke, seeded, sync_engine, tmp_path):
        old_id, new_id = seeded
        result = invoke("cleanup-artifacts")

        assert result.exit_code == 0, result.output
        assert _json(result) == {"ok": True, "dryRun": False, "artifacts": 1, "objects": 2}
        remaining = _rows(sync_engine, "SELECT invoice_id FROM invoice_artifacts")
        assert [row.invoice_id for row in remaining] == [new_id]
        assert not (tmp_path / "artifacts" / "acme" / old_id / "facturx.pdf").exists()
        assert (tmp_path / "artifacts" / "acme" / new_id / "facturx.pdf").exists()

    def test_custom_retention(self, invoke, seeded):
        result = invoke("cleanup-artifacts", "--days", "500", "--dry-run")
        assert _json(result)["artifacts"] == 0

