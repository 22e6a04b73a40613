"""Shared fixtures for relay CLI tests.

Commands run through ``typer.testing.CliRunner`` against a SQLite file in
``tmp_path``; every command opens and disposes its own engine, so tests
inspect the database afterwards with a plain synchronous engine.
"""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest
from relay_cli.app import app
from sqlalchemy import Engine, create_engine
from typer.testing import CliRunner


@pytest.fixture()
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture()
def db_path(tmp_path) -> Path:
    return tmp_path / "relay.db"


@pytest.fixture()
def db_url(db_path) -> str:
    return f"sqlite+aiosqlite:///{db_path}"


@pytest.fixture()
def cli_env(tmp_path) -> dict[str, str | None]:
    """Environment isolating storage and secrets from the developer's shell.

    ``None`` removes the variable for the duration of the invocation.
    """
    return {
        "RELAY_STORAGE_ROOT": str(tmp_path / "artifacts"),
        "RELAY_STORAGE_BACKEND": "filesystem",
        "RELAY_TENANT_SECRET_KEY": None,
        "TENANT_SECRET_KEY": None,
        "RELAY_PDP_PROVIDER": "mock",
        "RELAY_CRM_BASE_URL": None,
        "RELAY_GHL_WEBHOOK_SECRET": None,
    }


@pytest.fixture()
def invoke(runner, db_url, cli_env):
    """Invoke the CLI with ``--database-url`` pointing at the test database."""

    def _invoke(*args: str, env: dict[str, str | None] | None = None):
        return runner.invoke(app, ["--database-url", db_url, *args], env={**cli_env, **(env or {})})

    return _invoke


@pytest.fixture()
def initialised_db(invoke) -> None:
    result = invoke("init-db")
    assert result.exit_code == 0, result.output


@pytest.fixture()
def sync_engine(db_path) -> Iterator[Engine]:
    engine = create_engine(f"sqlite:///{db_path}")
    yield engine
    engine.dispose()
