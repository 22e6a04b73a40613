"""FastAPI dependency injection for settings, database sessions and the queue."""

from __future__ import annotations

import hmac
import logging
from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from relay_api.config import APISettings, load_api_settings
from relay_core.config import RelaySettings, load_settings
from relay_core.errors import TenantNotFoundError
from relay_core.queue import JobQueue
from relay_core.security import SecretCipher
from relay_core.state.database import dispose, get_engine, get_session_factory as _factory_for
from relay_core.state.repository import TenantRepository
from relay_core.storage import ObjectStore, build_object_store
from relay_core.telemetry.metrics import MetricsSink, PrometheusMetricsSink

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: APISettings | None = None
_relay_settings_cache: RelaySettings | None = None


def get_settings() -> APISettings:
    """Return the cached :class:`APISettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_api_settings()
    return _settings_cache


def get_relay_settings() -> RelaySettings:
    """Return the cached :class:`RelaySettings` singleton."""
    global _relay_settings_cache  # noqa: PLW0603
    if _relay_settings_cache is None:
        _relay_settings_cache = load_settings()
    return _relay_settings_cache


SettingsDep = Annotated[APISettings, Depends(get_settings)]
RelaySettingsDep = Annotated[RelaySettings, Depends(get_relay_settings)]

# ---------------------------------------------------------------------------
# Process-wide state
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None
_queue: JobQueue | None = None
_metrics: PrometheusMetricsSink | None = None
_cipher: SecretCipher | None = None
_store: ObjectStore | None = None


def init_state(
    settings: RelaySettings,
    *,
    engine: AsyncEngine | None = None,
    metrics: PrometheusMetricsSink | None = None,
    store: ObjectStore | None = None,
) -> AsyncEngine:
    """Create and cache the engine, queue, metrics sink, cipher and store."""
    global _engine, _session_factory, _queue, _metrics, _cipher, _store  # noqa: PLW0603
    global _relay_settings_cache  # noqa: PLW0603
    _relay_settings_cache = settings
    _engine = engine or get_engine(settings.database_url, settings.db_pool_size, settings.db_max_overflow)
    _session_factory = _factory_for(_engine)
    _metrics = metrics or PrometheusMetricsSink()
    _queue = JobQueue(_session_factory, max_attempts=settings.job_max_attempts, metrics=_metrics)
    _cipher = SecretCipher.from_settings(settings)
    _store = store or build_object_store(settings)
    return _engine


async def dispose_state() -> None:
    """Dispose the engine pool and forget cached state (call during shutdown)."""
    global _engine, _session_factory, _queue, _metrics, _cipher, _store  # noqa: PLW0603
    if _engine is not None:
        await dispose(_engine)
    _engine = None
    _session_factory = None
    _queue = None
    _metrics = None
    _cipher = None
    _store = None


def _require(value: object | None, name: str) -> object:
    if value is None:
        raise RuntimeError(f"{name} has not been initialised. Ensure init_state() is called during application startup.")
    return value


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return _require(_session_factory, "Database engine")  # type: ignore[return-value]


def get_queue() -> JobQueue:
    return _require(_queue, "Job queue")  # type: ignore[return-value]


def get_metrics() -> MetricsSink:
    return _require(_metrics, "Metrics sink")  # type: ignore[return-value]


def get_prometheus_sink() -> PrometheusMetricsSink:
    return _require(_metrics, "Metrics sink")  # type: ignore[return-value]


def get_cipher() -> SecretCipher:
    return _require(_cipher, "Secret cipher")  # type: ignore[return-value]


def get_object_store() -> ObjectStore:
    return _require(_store, "Object store")  # type: ignore[return-value]


SessionFactoryDep = Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]
QueueDep = Annotated[JobQueue, Depends(get_queue)]
MetricsDep = Annotated[MetricsSink, Depends(get_metrics)]
CipherDep = Annotated[SecretCipher, Depends(get_cipher)]
ObjectStoreDep = Annotated[ObjectStore, Depends(get_object_store)]

# ---------------------------------------------------------------------------
# Database session
# ---------------------------------------------------------------------------


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession``; commits on clean exit, rolls back on exception."""
    session = get_session_factory()()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


SessionDep = Annotated[AsyncSession, Depends(get_db_session)]

# ---------------------------------------------------------------------------
# Tenant resolution
# ---------------------------------------------------------------------------


async def get_tenant_id(
    session: SessionDep,
    settings: SettingsDep,
    x_tenant_id: Annotated[str | None, Header()] = None,
    authorization: Annotated[str | None, Header()] = None,
) -> str:
    """Resolve the active tenant of a read-API request.

    Requires the ``X-Tenant-Id`` header and, when ``API_TENANT_API_TOKEN``
    is configured, a matching ``Authorization: Bearer`` token.
    """
    expected = settings.tenant_api_token.get_secret_value() if settings.tenant_api_token else None
    if expected:
        presented = authorization[len("Bearer ") :] if authorization and authorization.startswith("Bearer ") else ""
        if not hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8")):
            raise HTTPException(status_code=401, detail="Authentication required")

    if not x_tenant_id:
        raise TenantNotFoundError("Missing X-Tenant-Id header")
    tenant = await TenantRepository(session).get_active(x_tenant_id)
    if tenant is None:
        raise TenantNotFoundError(f"Unknown or inactive tenant {x_tenant_id}")
    return tenant.id


TenantDep = Annotated[str, Depends(get_tenant_id)]
