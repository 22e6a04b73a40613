"""Shared fixtures for relay API tests.

Every test runs the real application against its own SQLite file: the
process-wide state is initialised with :func:`init_state` (the lifespan
does not run under ``ASGITransport``), tables are created from the ORM
metadata and three tenants are seeded.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from relay_api.config import APISettings
from relay_api.dependencies import dispose_state, get_settings, init_state
from relay_api.main import create_app
from relay_core.config import RelaySettings, StorageBackend, load_settings
from relay_core.security import SecretCipher, SecretName, TenantSecretStore
from relay_core.state.database import create_all, get_session_factory
from relay_core.state.repository import TenantRepository
from relay_core.storage import InMemoryObjectStore
from relay_core.telemetry.metrics import PrometheusMetricsSink

TENANT_ID = "tenant-a"
OTHER_TENANT_ID = "tenant-b"
INACTIVE_TENANT_ID = "tenant-off"
WEBHOOK_SECRET = "whsec-test-secret"
API_TOKEN = "test-api-token"
MASTER_KEY = "22" * 32


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture()
def relay_settings(tmp_path) -> RelaySettings:
    return load_settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'relay.db'}",
        storage_backend=StorageBackend.MEMORY,
        tenant_secret_key=MASTER_KEY,
    )


@pytest.fixture()
def api_settings() -> APISettings:
    return APISettings(_env_file=None, tenant_api_token=API_TOKEN)


# ---------------------------------------------------------------------------
# Process state and database
# ---------------------------------------------------------------------------


@pytest.fixture()
def prometheus_sink() -> PrometheusMetricsSink:
    return PrometheusMetricsSink()


@pytest.fixture()
def store() -> InMemoryObjectStore:
    return InMemoryObjectStore()


@pytest_asyncio.fixture()
async def engine(relay_settings, prometheus_sink, store):
    db_engine = init_state(relay_settings, metrics=prometheus_sink, store=store)
    await create_all(db_engine)
    yield db_engine
    await dispose_state()


@pytest.fixture()
def session_factory(engine):
    return get_session_factory(engine)


@pytest_asyncio.fixture()
async def tenants(session_factory, relay_settings) -> tuple[str, str]:
    """Tenant A with a webhook secret, tenant B without one, and an inactive tenant."""
    cipher = SecretCipher.from_settings(relay_settings)
    async with session_factory.begin() as session:
        repo = TenantRepository(session)
        await repo.create("Tenant A", tenant_id=TENANT_ID)
        await repo.create("Tenant B", tenant_id=OTHER_TENANT_ID)
        await repo.create("Dormant", tenant_id=INACTIVE_TENANT_ID, status="inactive")
        await TenantSecretStore(session, cipher, tenant_id=TENANT_ID).put(SecretName.WEBHOOK_SECRET, WEBHOOK_SECRET)
    return TENANT_ID, OTHER_TENANT_ID


# ---------------------------------------------------------------------------
# Application and client
# ---------------------------------------------------------------------------


@pytest.fixture()
def app(engine, tenants, api_settings):
    application = create_app()
    application.dependency_overrides[get_settings] = lambda: api_settings
    return application


@pytest_asyncio.fixture()
async def client(app) -> AsyncClient:
    """Async httpx client bound to the test app through ``ASGITransport``."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


# ---------------------------------------------------------------------------
# Request helpers
# ---------------------------------------------------------------------------


@pytest.fixture()
def webhook_body():
    """Factory for a GHL invoice webhook body (bytes)."""

    def _build(event_id: str | None = "evt-1", ghl_invoice_id: str | None = "ghl-1001", **overrides: Any) -> bytes:
        body: dict[str, Any] = {
            "invoiceNumber": "INV-1001",
            "issueDate": "2025-03-01",
            "currency": "EUR",
            "totalAmount": 240.0,
            "customer": {"name": "Acme SARL", "country": "FR", "vatId": "FR40303265045"},
            "seller": {"name": "Relay Conseil", "country": "FR"},
            "items": [{"name": "Consulting day", "qty": 2, "price": 100, "taxRate": 0.2}],
        }
        if event_id is not None:
            body["eventId"] = event_id
        if ghl_invoice_id is not None:
            body["invoiceId"] = ghl_invoice_id
        body.update(overrides)
        return json.dumps(body).encode("utf-8")

    return _build


@pytest.fixture()
def sign():
    """``x-ghl-signature`` value for a body under the tenant A secret."""

    def _sign(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
        return "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()

    return _sign


@pytest.fixture()
def read_headers():
    """Headers for the tenant read API."""

    def _headers(tenant_id: str = TENANT_ID, token: str | None = API_TOKEN) -> dict[str, str]:
        headers = {"X-Tenant-Id": tenant_id}
        if token is not None:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    return _headers
