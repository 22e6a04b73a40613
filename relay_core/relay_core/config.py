"""Relay configuration loaded from environment variables."""

from __future__ import annotations

import logging
from enum import Enum
from pathlib import Path

from pydantic import AliasChoices, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class StorageBackend(str, Enum):
    FILESYSTEM = "filesystem"
    MEMORY = "memory"


class PdpProvider(str, Enum):
    MOCK = "mock"
    HTTP = "http"
    SUPERPDP = "superpdp"


class ArtifactMode(str, Enum):
    """How artifacts are handed to the PDP client on submission."""

    BASE64 = "base64"
    KEY = "key"


class RelaySettings(BaseSettings):
    """Relay settings loaded from environment variables with RELAY_ prefix."""

    model_config = SettingsConfigDict(
        env_prefix="RELAY_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,
    )

    # Database
    database_url: str = "sqlite+aiosqlite:///.relay/relay.db"
    db_pool_size: int = 10
    db_max_overflow: int = 20

    # Worker
    worker_id: str | None = None
    worker_poll_interval: float = 1.0
    job_max_attempts: int = 5
    # Reclaim running jobs whose lock is older than this.  ``None`` disables
    # lease expiry so a crashed worker leaves its job in ``running``.
    job_lease_seconds: int | None = None

    # SYNC_STATUS self-scheduling
    sync_poll_base_seconds: float = 30.0
    sync_poll_max_seconds: float = 600.0

    # Reconciliation
    reconcile_interval_seconds: int = 300
    reconcile_stale_seconds: int = 900
    reconcile_batch_limit: int = 100

    # Object storage
    storage_backend: StorageBackend = StorageBackend.FILESYSTEM
    storage_root: Path = Path(".relay/artifacts")
    artifact_retention_days: int = 365

    # PDP
    pdp_provider: PdpProvider = PdpProvider.MOCK
    pdp_base_url: str | None = None
    pdp_api_key: SecretStr | None = None
    pdp_artifact_mode: ArtifactMode = ArtifactMode.BASE64
    pdp_timeout: float = 30.0

    # CRM (GHL)
    crm_base_url: str | None = None
    crm_api_key: SecretStr | None = None
    crm_timeout: float = 15.0
    ghl_webhook_secret: SecretStr | None = None

    # Master key for tenant secrets.  Accepts the unprefixed name as well.
    tenant_secret_key: SecretStr | None = Field(
        default=None,
        validation_alias=AliasChoices("RELAY_TENANT_SECRET_KEY", "TENANT_SECRET_KEY"),
    )
    # Read version-0 (plaintext) secrets even though a master key is set.
    accept_plaintext_secrets: bool = False

    # Logging
    log_level: str = "INFO"
    structured_logging: bool = False

    # Worker processes serve /metrics on this port when set.
    metrics_port: int | None = None

    @field_validator("job_max_attempts")
    @classmethod
    def _positive_attempts(cls, v: int) -> int:
        if v < 1:
            raise ValueError("job_max_attempts must be >= 1")
        return v

    @field_validator("metrics_port")
    @classmethod
    def _valid_port(cls, v: int | None) -> int | None:
        if v is not None and not 0 < v < 65536:
            raise ValueError("metrics_port must be between 1 and 65535")
        return v

    @field_validator("job_lease_seconds")
    @classmethod
    def _positive_lease(cls, v: int | None) -> int | None:
        if v is not None and v <= 0:
            raise ValueError("job_lease_seconds must be positive when set")
        return v

    def is_crm_configured(self) -> bool:
        return self.crm_base_url is not None


def load_settings(**overrides: object) -> RelaySettings:
    """Load settings from environment, with optional overrides for testing."""
    settings = RelaySettings(**overrides)  # type: ignore[arg-type]
    logger.debug(
        "Loaded relay settings: database=%s pdp=%s storage=%s",
        settings.database_url.split("@")[-1],
        settings.pdp_provider.value,
        settings.storage_backend.value,
    )
    return settings
