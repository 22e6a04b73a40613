"""Tests for APISettings validation."""

from __future__ import annotations

import pytest
from pydantic import ValidationError
from relay_api.config import APISettings, PlatformEnv


class TestAPISettings:
    def test_defaults(self):
        settings = APISettings(_env_file=None)

        assert settings.environment is PlatformEnv.DEV
        assert settings.require_webhook_signature is False
        assert settings.tenant_api_token is None

    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("API_PORT", "9100")
        monkeypatch.setenv("API_TENANT_API_TOKEN", "tok")

        settings = APISettings(_env_file=None)
        assert settings.port == 9100
        assert settings.tenant_api_token.get_secret_value() == "tok"

    def test_production_requires_webhook_signatures(self):
        with pytest.raises(ValidationError, match="API_REQUIRE_WEBHOOK_SIGNATURE"):
            APISettings(_env_file=None, environment="production")

        settings = APISettings(_env_file=None, environment="production", require_webhook_signature=True)
        assert settings.environment is PlatformEnv.PRODUCTION

    def test_wildcard_origin_with_credentials_rejected(self):
        with pytest.raises(ValidationError, match="explicit origins"):
            APISettings(_env_file=None, cors_origins=["*"])

        settings = APISettings(_env_file=None, cors_origins=["*"], cors_allow_credentials=False)
        assert settings.cors_origins == ["*"]
