"""API-layer configuration loaded from environment variables."""

from __future__ import annotations

from enum import Enum
from typing import Self

from pydantic import SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class PlatformEnv(str, Enum):
    """Where the API runs; production tightens webhook intake."""

    DEV = "dev"
    STAGING = "staging"
    PRODUCTION = "production"


class APISettings(BaseSettings):
    """FastAPI application settings.

    All values can be overridden via environment variables prefixed with
    ``API_`` (e.g. ``API_PORT=9000``) or through a ``.env`` file in the
    working directory.  Database, storage and client settings are shared
    with the worker and live in :class:`relay_core.config.RelaySettings`.
    """

    model_config = SettingsConfigDict(
        env_prefix="API_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    host: str = "0.0.0.0"
    port: int = 8000

    environment: PlatformEnv = PlatformEnv.DEV

    # Origins permitted by the CORS middleware.
    cors_origins: list[str] = ["http://localhost:3000"]
    cors_allow_credentials: bool = True

    # Reject webhooks without a valid signature even when no secret is configured.
    require_webhook_signature: bool = False

    # Bearer token required on the invoice read API.  Unset disables the check.
    tenant_api_token: SecretStr | None = None

    # Create tables on startup (SQLite and dev only; production uses migrations).
    auto_create_tables: bool = True

    structured_logging: bool = False
    log_level: str = "INFO"

    @model_validator(mode="after")
    def _check_deployment_constraints(self) -> Self:
        """Refuse combinations that browsers or production intake cannot accept."""
        if self.cors_allow_credentials and "*" in self.cors_origins:
            raise ValueError("API_CORS_ORIGINS must list explicit origins while credentials are allowed")
        if self.environment is PlatformEnv.PRODUCTION and not self.require_webhook_signature:
            raise ValueError("API_REQUIRE_WEBHOOK_SIGNATURE must be enabled in production")
        return self


def load_api_settings() -> APISettings:
    """Construct settings from the environment / ``.env`` file."""
    return APISettings()
