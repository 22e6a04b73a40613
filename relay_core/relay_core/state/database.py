"""Engine and session plumbing shared by the API, the worker and the CLI.

The backend follows the URL: ``postgresql+asyncpg`` gets a pooled engine
whose claims rely on ``SKIP LOCKED``; ``sqlite+aiosqlite`` goes through
:mod:`relay_core.state.sqlite_adapter`, which serializes writers instead.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

logger = logging.getLogger(__name__)

# Server-side guards so a stuck claim or a lock wait cannot pin a pool slot.
_PG_SERVER_SETTINGS = {
    "statement_timeout": "30000",
    "lock_timeout": "10000",
    "application_name": "invoice-relay",
}

# One sessionmaker per live engine, dropped again by dispose().
_factories: dict[int, async_sessionmaker[AsyncSession]] = {}


def get_engine(database_url: str, pool_size: int = 10, max_overflow: int = 20) -> AsyncEngine:
    """Build the engine for *database_url*.

    ``pool_size`` and ``max_overflow`` only apply to PostgreSQL; SQLite
    engines always serialize writers through ``BEGIN IMMEDIATE``.
    """
    url = make_url(database_url)
    if url.get_backend_name() == "sqlite":
        from relay_core.state.sqlite_adapter import get_local_engine

        return get_local_engine(url.database or ":memory:")

    engine = create_async_engine(
        url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
        pool_recycle=1800,
        pool_timeout=10,
        connect_args={"server_settings": dict(_PG_SERVER_SETTINGS)},
    )
    logger.info("PostgreSQL engine ready for %s (pool %d+%d)", url.host, pool_size, max_overflow)
    return engine


def get_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Sessionmaker bound to *engine*; objects stay readable after commit."""
    factory = _factories.get(id(engine))
    if factory is None:
        factory = _factories[id(engine)] = async_sessionmaker(engine, expire_on_commit=False)
    return factory


@asynccontextmanager
async def get_session(engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    """One unit of work: commit when the block exits cleanly, roll back otherwise."""
    async with get_session_factory(engine)() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def create_all(engine: AsyncEngine) -> None:
    """Create missing relay tables from the ORM metadata (no migrations)."""
    from relay_core.state.tables import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Relay schema ensured on %s", engine.url.get_backend_name())


async def dispose(engine: AsyncEngine) -> None:
    """Close the pool of *engine* and drop its cached sessionmaker."""
    _factories.pop(id(engine), None)
    await engine.dispose()
