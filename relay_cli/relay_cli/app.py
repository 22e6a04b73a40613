"""Invoice relay operator CLI -- Typer-based interface.

Provides commands to run the worker, trigger reconciliation, migrate the
database, manage tenants and prune old artifacts.  Human-readable output
goes to *stderr* via Rich; machine-readable results (tenant credentials,
JSON summaries) go to *stdout* so that scripts can compose cleanly.
"""

from __future__ import annotations

import asyncio
import json
import logging
import secrets
import signal
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import typer
from prometheus_client import start_http_server
from rich.console import Console
from rich.table import Table

from relay_core.config import RelaySettings, load_settings
from relay_core.idempotency import IdempotencyStep, build_idempotency_key
from relay_core.models.jobs import JobType, ReconcilePayload
from relay_core.pipeline import build_runtime, time_bucket
from relay_core.queue import JobQueue
from relay_core.security import SecretCipher, SecretName, TenantSecretStore
from relay_core.state.database import create_all, dispose, get_engine, get_session_factory
from relay_core.state.repository import InvoiceArtifactRepository, JobRepository, TenantRepository
from relay_core.storage import build_object_store
from relay_core.telemetry.logging import configure_logging
from relay_core.telemetry.metrics import PrometheusMetricsSink

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# App & global state
# ---------------------------------------------------------------------------

app = typer.Typer(
    name="relay",
    help="Invoice relay - GHL to Factur-X to PDP pipeline operations",
    no_args_is_help=True,
)
console = Console(stderr=True)

_database_url: str | None = None


@app.callback()
def _global_options(
    database_url: str | None = typer.Option(
        None,
        "--database-url",
        help="Override RELAY_DATABASE_URL for this invocation.",
        envvar="RELAY_DATABASE_URL",
    ),
) -> None:
    """Global options applied to every command."""
    global _database_url  # noqa: PLW0603
    _database_url = database_url


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _settings() -> RelaySettings:
    if _database_url:
        return load_settings(database_url=_database_url)
    return load_settings()


def _cipher(settings: RelaySettings) -> SecretCipher:
    return SecretCipher.from_settings(settings)


def _migrations_location() -> Path:
    """Directory holding the Alembic env and revisions."""
    import relay_core.state

    return Path(relay_core.state.__file__).resolve().parent / "migrations"


def _print_json(data: dict[str, Any]) -> None:
    typer.echo(json.dumps(data, indent=2, default=str))


# ---------------------------------------------------------------------------
# Worker
# ---------------------------------------------------------------------------


def _start_metrics_server(settings: RelaySettings, sink: PrometheusMetricsSink) -> Any:
    """Serve *sink*'s registry on ``settings.metrics_port``; returns the server or ``None``."""
    if settings.metrics_port is None:
        return None
    server, _thread = start_http_server(settings.metrics_port, registry=sink.registry)
    logger.info("Serving worker metrics on port %d", settings.metrics_port)
    return server


async def _run_worker(settings: RelaySettings, *, reconcile: bool) -> None:
    sink = PrometheusMetricsSink()
    runtime = build_runtime(settings, metrics=sink)
    metrics_server = _start_metrics_server(settings, sink)
    stop = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            logger.debug("Signal handlers unsupported on this platform")

    tasks = [asyncio.create_task(runtime.worker.run(stop), name="relay-worker")]
    if reconcile:
        tasks.append(asyncio.create_task(runtime.reconciler.run(stop), name="relay-reconciler"))
    try:
        await asyncio.gather(*tasks)
    finally:
        if metrics_server is not None:
            metrics_server.shutdown()
        await dispose(runtime.engine)


@app.command()
def worker(
    no_reconcile: bool = typer.Option(
        False,
        "--no-reconcile",
        help="Do not run the periodic reconciliation driver in this process.",
    ),
    drain: bool = typer.Option(
        False,
        "--drain",
        help="Process every due job once and exit instead of polling forever.",
    ),
) -> None:
    """Run the pipeline worker (and, by default, the reconciliation driver)."""
    settings = _settings()
    configure_logging(settings.log_level, structured=settings.structured_logging)

    if drain:

        async def _drain() -> int:
            runtime = build_runtime(settings)
            try:
                return await runtime.worker.drain()
            finally:
                await dispose(runtime.engine)

        processed = asyncio.run(_drain())
        console.print(f"[green]Processed {processed} job(s).[/green]")
        return

    console.print(
        f"Worker starting (pdp=[cyan]{settings.pdp_provider.value}[/cyan], "
        f"reconcile={'off' if no_reconcile else 'on'})"
    )
    asyncio.run(_run_worker(settings, reconcile=not no_reconcile))
    console.print("Worker stopped.")


@app.command()
def reconcile(
    stale_seconds: int | None = typer.Option(None, "--stale-seconds", min=1, help="Staleness threshold override."),
    limit: int | None = typer.Option(None, "--limit", min=1, help="Maximum submissions to re-drive."),
) -> None:
    """Enqueue one RECONCILE_PDP sweep now.

    The sweep shares the current bucket with the periodic driver, so
    submissions it already re-drove in this bucket are not polled twice.
    """
    settings = _settings()

    async def _enqueue() -> dict[str, Any]:
        engine = get_engine(settings.database_url)
        try:
            queue = JobQueue(get_session_factory(engine), max_attempts=settings.job_max_attempts)
            now = queue.now()
            bucket = time_bucket(now, settings.reconcile_interval_seconds)
            payload = ReconcilePayload(stale_seconds=stale_seconds, limit=limit, bucket=bucket)
            result = await queue.enqueue(
                JobType.RECONCILE_PDP,
                payload.model_dump(exclude_none=True),
                idempotency_key=build_idempotency_key(IdempotencyStep.RECONCILE, "manual", int(now.timestamp())),
            )
            return {"enqueued": result.enqueued, "jobId": result.id, "bucket": bucket}
        finally:
            await dispose(engine)

    outcome = asyncio.run(_enqueue())
    if outcome["enqueued"]:
        console.print(f"[green]Reconciliation enqueued for bucket {outcome['bucket']}.[/green]")
    else:
        console.print(f"[yellow]A reconciliation for bucket {outcome['bucket']} is already queued.[/yellow]")
    _print_json(outcome)


@app.command("queue-status")
def queue_status() -> None:
    """Show job counts per status."""
    settings = _settings()

    async def _counts() -> dict[str, int]:
        engine = get_engine(settings.database_url)
        try:
            async with get_session_factory(engine)() as session:
                return await JobRepository(session).count_by_status()
        finally:
            await dispose(engine)

    counts = asyncio.run(_counts())
    table = Table(title="Jobs")
    table.add_column("Status")
    table.add_column("Count", justify="right")
    for status, count in sorted(counts.items()):
        table.add_row(status, str(count))
    console.print(table)


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@app.command()
def migrate(
    revision: str = typer.Argument("head", help="Target revision."),
) -> None:
    """Apply Alembic migrations up to *revision*."""
    from alembic import command
    from alembic.config import Config

    settings = _settings()
    if settings.database_url.startswith("sqlite") and "///" in settings.database_url:
        db_path = settings.database_url.split("///", 1)[-1]
        if db_path and db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    cfg = Config()
    cfg.set_main_option("script_location", str(_migrations_location()))
    cfg.set_main_option("sqlalchemy.url", settings.database_url)
    command.upgrade(cfg, revision)
    console.print(f"[green]Database migrated to {revision}.[/green]")


@app.command("init-db")
def init_db() -> None:
    """Create any missing tables directly from the ORM metadata."""
    settings = _settings()

    async def _create() -> None:
        engine = get_engine(settings.database_url)
        try:
            await create_all(engine)
        finally:
            await dispose(engine)

    asyncio.run(_create())
    console.print("[green]Tables created.[/green]")


# ---------------------------------------------------------------------------
# Tenants
# ---------------------------------------------------------------------------


async def _create_tenant(
    settings: RelaySettings,
    name: str,
    *,
    tenant_id: str | None,
    webhook_secret: str,
    crm_api_key: str | None,
    pdp_api_key: str | None,
) -> str:
    engine = get_engine(settings.database_url)
    try:
        async with get_session_factory(engine).begin() as session:
            tenants = TenantRepository(session)
            if tenant_id is not None and await tenants.get(tenant_id) is not None:
                raise ValueError(f"Tenant {tenant_id} already exists")
            row = await tenants.create(name, tenant_id=tenant_id)
            store = TenantSecretStore(session, _cipher(settings), tenant_id=row.id)
            await store.put(SecretName.WEBHOOK_SECRET, webhook_secret)
            if crm_api_key:
                await store.put(SecretName.CRM_API_KEY, crm_api_key)
            if pdp_api_key:
                await store.put(SecretName.PDP_API_KEY, pdp_api_key)
            return row.id
    finally:
        await dispose(engine)


@app.command("create-tenant")
def create_tenant(
    name: str = typer.Argument(..., help="Display name of the tenant."),
    tenant_id: str | None = typer.Option(None, "--tenant-id", help="Explicit tenant id (default: generated)."),
    webhook_secret: str | None = typer.Option(
        None,
        "--webhook-secret",
        help="Webhook HMAC secret (default: generated).",
    ),
    crm_api_key: str | None = typer.Option(None, "--crm-api-key", help="Tenant CRM API key."),
    pdp_api_key: str | None = typer.Option(None, "--pdp-api-key", help="Tenant PDP API key."),
) -> None:
    """Register an active tenant and store its secrets encrypted."""
    settings = _settings()
    secret = webhook_secret or secrets.token_urlsafe(32)
    try:
        created_id = asyncio.run(
            _create_tenant(
                settings,
                name,
                tenant_id=tenant_id,
                webhook_secret=secret,
                crm_api_key=crm_api_key,
                pdp_api_key=pdp_api_key,
            )
        )
    except ValueError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc

    if settings.tenant_secret_key is None:
        console.print("[yellow]TENANT_SECRET_KEY is not set; secrets were stored unencrypted.[/yellow]")
    console.print(f"[green]Tenant [bold]{name}[/bold] created.[/green]")
    _print_json({"ok": True, "tenantId": created_id, "webhookSecret": secret})


@app.command()
def seed() -> None:
    """Create a demo tenant with the webhook secret ``demo-secret``."""
    settings = _settings()
    created_id = asyncio.run(
        _create_tenant(
            settings,
            "Demo Tenant",
            tenant_id=None,
            webhook_secret="demo-secret",
            crm_api_key=None,
            pdp_api_key=None,
        )
    )
    console.print(f"Seeded tenant [bold]{created_id}[/bold]")
    _print_json({"ok": True, "tenantId": created_id})


# ---------------------------------------------------------------------------
# Artifacts
# ---------------------------------------------------------------------------


async def _cleanup_artifacts(settings: RelaySettings, days: int, dry_run: bool) -> dict[str, int]:
    engine = get_engine(settings.database_url)
    store = build_object_store(settings)
    cutoff = datetime.now(UTC) - timedelta(days=days)
    removed_rows = 0
    removed_objects = 0
    try:
        async with get_session_factory(engine)() as session:
            tenant_ids = [tenant.id for tenant in await TenantRepository(session).list_all()]

        for tenant_id in tenant_ids:
            async with get_session_factory(engine)() as session:
                expired = await InvoiceArtifactRepository(session, tenant_id=tenant_id).list_created_before(cutoff)
            if not expired:
                continue
            removed_rows += len(expired)
            if dry_run:
                continue
            for artifact in expired:
                for key in (artifact.pdf_key, artifact.xml_key):
                    if key and await store.delete_object(key):
                        removed_objects += 1
            async with get_session_factory(engine).begin() as session:
                await InvoiceArtifactRepository(session, tenant_id=tenant_id).delete_many(a.id for a in expired)
            logger.info("Removed %d expired artifact record(s) for tenant %s", len(expired), tenant_id)
    finally:
        await dispose(engine)
    return {"artifacts": removed_rows, "objects": removed_objects}


@app.command("cleanup-artifacts")
def cleanup_artifacts(
    days: int | None = typer.Option(
        None,
        "--days",
        min=1,
        help="Retention in days (default: RELAY_ARTIFACT_RETENTION_DAYS).",
    ),
    dry_run: bool = typer.Option(False, "--dry-run", help="Report what would be removed without deleting."),
) -> None:
    """Delete artifacts (records and stored objects) older than the retention window."""
    settings = _settings()
    retention = days or settings.artifact_retention_days
    result = asyncio.run(_cleanup_artifacts(settings, retention, dry_run))
    suffix = " (dry run)" if dry_run else ""
    console.print(f"Cleanup complete. {result['artifacts']} artifact(s) older than {retention} day(s){suffix}.")
    _print_json({"ok": True, "dryRun": dry_run, **result})


# ---------------------------------------------------------------------------
# API server
# ---------------------------------------------------------------------------


@app.command()
def serve(
    host: str = typer.Option("0.0.0.0", "--host", help="Bind address."),
    port: int = typer.Option(8000, "--port", help="Bind port."),
    reload: bool = typer.Option(False, "--reload", help="Reload on code changes (development)."),
) -> None:
    """Run the HTTP API with uvicorn."""
    import uvicorn

    uvicorn.run("relay_api.main:app", host=host, port=port, reload=reload)
