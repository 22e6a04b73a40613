"""Unit tests for GhlWebhookService helpers."""

from __future__ import annotations

import hashlib
import hmac

import pytest
from relay_api.services.webhook_service import GhlWebhookService

SECRET = "shared-secret"
BODY = b'{"invoiceId": "ghl-1"}'


def _signature(body: bytes = BODY, secret: str = SECRET) -> str:
    return "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


class TestValidateSignature:
    def test_valid(self):
        assert GhlWebhookService.validate_signature(BODY, _signature(), SECRET) is True

    @pytest.mark.parametrize(
        "header",
        [
            None,
            "",
            _signature(secret="other"),
            _signature(body=b"{}"),
            _signature().replace("sha256=", "sha1="),
            "sha256=",
        ],
    )
    def test_invalid(self, header):
        assert GhlWebhookService.validate_signature(BODY, header, SECRET) is False


class TestResolveEventId:
    @pytest.mark.parametrize(
        ("body", "expected"),
        [
            ({"eventId": "evt-1", "id": "x", "invoiceId": "ghl-1"}, "evt-1"),
            ({"eventId": 42}, "42"),
            ({"id": "delivery-9", "invoiceId": "ghl-1"}, "delivery-9"),
            ({"eventId": "", "id": "delivery-9"}, "delivery-9"),
            ({"invoiceId": "ghl-1", "updatedAt": "2025-03-02T10:00:00Z"}, "ghl-1:2025-03-02T10:00:00Z"),
            ({"invoiceId": "ghl-1"}, "ghl-1:"),
            ({}, "unknown:"),
        ],
    )
    def test_precedence(self, body, expected):
        assert GhlWebhookService.resolve_event_id(body) == expected
