"""Shared fixtures for relay_core tests.

Every test gets its own SQLite file under ``tmp_path`` so the
``BEGIN IMMEDIATE`` locking of the local engine is exercised exactly as a
single-node deployment would run it.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
import pytest_asyncio
from relay_core.clients import MockPdpClient, StaticCrmClient
from relay_core.config import RelaySettings, StorageBackend, load_settings
from relay_core.pipeline.handlers import PipelineHandlers
from relay_core.queue import JobQueue
from relay_core.security import SecretCipher
from relay_core.state.database import create_all, dispose, get_engine, get_session_factory
from relay_core.state.repository import InvoiceRepository, TenantRepository
from relay_core.storage import InMemoryObjectStore
from relay_core.telemetry.metrics import RecordingMetricsSink
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

TENANT_ID = "tenant-a"
OTHER_TENANT_ID = "tenant-b"


class FakeClock:
    """Manually advanced UTC clock for stepping through backoff windows."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2025, 3, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


def sample_ghl_invoice(ghl_invoice_id: str = "ghl-1001", **overrides: Any) -> dict[str, Any]:
    """A GHL invoice payload whose lines add up to its reported total."""
    payload: dict[str, Any] = {
        "invoiceId": ghl_invoice_id,
        "invoiceNumber": "INV-1001",
        "issueDate": "2025-03-01T09:30:00Z",
        "dueDate": "2025-03-31",
        "currency": "eur",
        "totalAmount": 240.0,
        "customer": {
            "name": "Acme SARL",
            "country": "fr",
            "vatId": "FR40303265045",
            "email": "billing@acme.test",
            "address": {"line1": "1 rue de la Paix", "postalCode": "75002", "city": "Paris"},
        },
        "seller": {"name": "Relay Conseil", "country": "FR", "siren": "123456789"},
        "items": [{"name": "Consulting day", "qty": 2, "price": 100, "taxRate": 0.2}],
    }
    payload.update(overrides)
    return payload


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncEngine:
    db_engine = get_engine(f"sqlite+aiosqlite:///{tmp_path / 'relay.db'}")
    await create_all(db_engine)
    yield db_engine
    await dispose(db_engine)


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return get_session_factory(engine)


@pytest_asyncio.fixture
async def tenants(session_factory: async_sessionmaker[AsyncSession]) -> tuple[str, str]:
    async with session_factory.begin() as session:
        repo = TenantRepository(session)
        await repo.create("Tenant A", tenant_id=TENANT_ID)
        await repo.create("Tenant B", tenant_id=OTHER_TENANT_ID)
    return TENANT_ID, OTHER_TENANT_ID


@pytest_asyncio.fixture
async def invoice_id(session_factory: async_sessionmaker[AsyncSession], tenants: tuple[str, str]) -> str:
    """An invoice of :data:`TENANT_ID` in status NEW with a stored raw payload."""
    async with session_factory.begin() as session:
        return await InvoiceRepository(session, tenant_id=TENANT_ID).upsert_from_webhook(
            "ghl-1001", sample_ghl_invoice()
        )


# ---------------------------------------------------------------------------
# Pipeline collaborators
# ---------------------------------------------------------------------------


@pytest.fixture
def make_ghl_invoice():
    return sample_ghl_invoice


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def metrics() -> RecordingMetricsSink:
    return RecordingMetricsSink()


@pytest.fixture
def queue(session_factory: async_sessionmaker[AsyncSession], clock: FakeClock, metrics: RecordingMetricsSink) -> JobQueue:
    return JobQueue(session_factory, max_attempts=3, clock=clock, metrics=metrics)


@pytest.fixture
def settings(tmp_path) -> RelaySettings:
    return load_settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'relay.db'}",
        storage_backend=StorageBackend.MEMORY,
        reconcile_stale_seconds=900,
        reconcile_interval_seconds=300,
    )


@pytest.fixture
def store() -> InMemoryObjectStore:
    return InMemoryObjectStore()


@pytest.fixture
def crm() -> StaticCrmClient:
    return StaticCrmClient()


@pytest.fixture
def pdp() -> MockPdpClient:
    return MockPdpClient()


@pytest.fixture
def handlers(
    queue: JobQueue,
    crm: StaticCrmClient,
    pdp: MockPdpClient,
    store: InMemoryObjectStore,
    settings: RelaySettings,
    metrics: RecordingMetricsSink,
) -> PipelineHandlers:
    return PipelineHandlers(
        queue,
        crm=crm,
        pdp=pdp,
        store=store,
        cipher=SecretCipher(None),
        settings=settings,
        metrics=metrics,
    )
