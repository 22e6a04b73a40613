"""Unit tests for RelaySettings loading."""

from __future__ import annotations

import pytest
from pydantic import ValidationError
from relay_core.config import ArtifactMode, PdpProvider, RelaySettings, StorageBackend, load_settings


class TestDefaults:
    def test_defaults(self, monkeypatch):
        for name in ("RELAY_DATABASE_URL", "RELAY_PDP_PROVIDER", "TENANT_SECRET_KEY", "RELAY_TENANT_SECRET_KEY"):
            monkeypatch.delenv(name, raising=False)
        settings = RelaySettings(_env_file=None)
        assert settings.database_url.startswith("sqlite+aiosqlite:///")
        assert settings.pdp_provider is PdpProvider.MOCK
        assert settings.pdp_artifact_mode is ArtifactMode.BASE64
        assert settings.storage_backend is StorageBackend.FILESYSTEM
        assert settings.job_max_attempts == 5
        assert settings.job_lease_seconds is None
        assert settings.tenant_secret_key is None
        assert settings.is_crm_configured() is False


class TestEnvironment:
    def test_prefixed_variables(self, monkeypatch):
        monkeypatch.setenv("RELAY_PDP_PROVIDER", "superpdp")
        monkeypatch.setenv("RELAY_JOB_MAX_ATTEMPTS", "7")
        monkeypatch.setenv("RELAY_CRM_BASE_URL", "https://crm.example")
        settings = load_settings()
        assert settings.pdp_provider is PdpProvider.SUPERPDP
        assert settings.job_max_attempts == 7
        assert settings.is_crm_configured() is True

    def test_unprefixed_secret_key_alias(self, monkeypatch):
        monkeypatch.delenv("RELAY_TENANT_SECRET_KEY", raising=False)
        monkeypatch.setenv("TENANT_SECRET_KEY", "ab" * 32)
        settings = load_settings()
        assert settings.tenant_secret_key.get_secret_value() == "ab" * 32

    def test_overrides_win(self, monkeypatch):
        monkeypatch.setenv("RELAY_WORKER_POLL_INTERVAL", "5")
        assert load_settings(worker_poll_interval=0.1).worker_poll_interval == 0.1


class TestValidation:
    def test_attempts_must_be_positive(self):
        with pytest.raises(ValidationError):
            load_settings(job_max_attempts=0)

    def test_lease_must_be_positive(self):
        with pytest.raises(ValidationError):
            load_settings(job_lease_seconds=0)
