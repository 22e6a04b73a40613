"""Domain exceptions raised by the relay pipeline.

Handlers raise these freely; the worker treats every exception the same way
(log, then hand the job to the queue's fail path).  The HTTP layer maps a
subset of them to status codes.
"""

from __future__ import annotations


class RelayError(Exception):
    """Base class for all relay domain errors."""


class CanonicalValidationError(RelayError, ValueError):
    """A canonical invoice violates its schema or totals invariant."""

    def __init__(self, issues: list[str]) -> None:
        self.issues = list(issues)
        super().__init__("Canonical invoice validation failed: " + "; ".join(self.issues))


class MissingDataError(RelayError, LookupError):
    """A prerequisite record (invoice, payload, artifacts) is absent."""


class TenantNotFoundError(RelayError):
    """The tenant does not exist or is not active."""


class ExternalServiceError(RelayError):
    """A CRM or PDP call failed at the transport level or returned non-2xx."""

    def __init__(self, service: str, message: str, status_code: int | None = None) -> None:
        self.service = service
        self.status_code = status_code
        detail = f"{service} request failed"
        if status_code is not None:
            detail += f": {status_code}"
        if message:
            detail += f" - {message}"
        super().__init__(detail)


class SecretDecryptionError(RelayError):
    """A stored secret could not be decrypted with the configured master key."""


class StorageError(RelayError):
    """An object-store read or write failed, or a key was rejected."""


class WebhookSignatureError(RelayError):
    """An inbound webhook carried a missing or invalid HMAC signature."""
