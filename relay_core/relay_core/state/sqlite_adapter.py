"""SQLite adapter for local relay operation and tests.

Provides an async SQLAlchemy engine backed by ``aiosqlite`` that uses the
same ORM table definitions as the production PostgreSQL backend.

Key differences from the PostgreSQL backend:

* ``SELECT ... FOR UPDATE SKIP LOCKED`` renders as a plain ``SELECT``.
  Instead every transaction opens with ``BEGIN IMMEDIATE``, which takes the
  database write lock up front, so two workers can never interleave a
  claim.  Waiters block on the busy timeout rather than failing.
* JSONB columns fall back to SQLite's JSON (stored as TEXT).

INVARIANT: The same ORM code paths are exercised in local and production
modes.  Only the engine URL and locking strategy differ.
"""

from __future__ import annotations

import logging
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

logger = logging.getLogger(__name__)

# Seconds a connection waits for the write lock before raising "database is locked".
_BUSY_TIMEOUT_SECONDS = 30


def get_local_engine(
    db_path: Path | str = ".relay/relay.db",
) -> AsyncEngine:
    """Create an async SQLAlchemy engine backed by SQLite via aiosqlite.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file.  Parent directories are
        created automatically.  ``:memory:`` gives a per-connection
        database and is only suitable for single-session use.

    Returns
    -------
    AsyncEngine
        A configured async engine ready for session creation.
    """
    db_path = Path(db_path) if db_path != ":memory:" else db_path

    if isinstance(db_path, Path):
        db_path.parent.mkdir(parents=True, exist_ok=True)
        url = f"sqlite+aiosqlite:///{db_path}"
    else:
        url = "sqlite+aiosqlite:///:memory:"

    engine = create_async_engine(
        url,
        echo=False,
        connect_args={"check_same_thread": False, "timeout": _BUSY_TIMEOUT_SECONDS},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _set_sqlite_pragmas(dbapi_conn: object, _: object) -> None:
        # Hand transaction control to SQLAlchemy so the "begin" hook below
        # decides how transactions start.
        dbapi_conn.isolation_level = None  # type: ignore[attr-defined]
        cursor = dbapi_conn.cursor()  # type: ignore[attr-defined]
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn: object) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")  # type: ignore[attr-defined]

    logger.info("Created SQLite engine: %s", url)
    return engine
