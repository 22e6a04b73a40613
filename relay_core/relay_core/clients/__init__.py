"""Outbound clients for the CRM and the PDP."""

from __future__ import annotations

import httpx

from relay_core.clients.crm import CrmClient, GhlHttpClient, StaticCrmClient
from relay_core.clients.pdp import (
    HttpPdpClient,
    MockPdpClient,
    PdpArtifact,
    PdpArtifacts,
    PdpClient,
    PdpStatus,
    PdpSubmission,
    SuperPdpClient,
    build_pdp_client,
    normalize_superpdp_status,
)
from relay_core.config import RelaySettings


def build_crm_client(settings: RelaySettings, *, client: httpx.AsyncClient | None = None) -> CrmClient:
    """GHL HTTP client when ``crm_base_url`` is set, the in-process client otherwise."""
    if not settings.is_crm_configured():
        return StaticCrmClient()
    api_key = settings.crm_api_key.get_secret_value() if settings.crm_api_key else None
    return GhlHttpClient(
        settings.crm_base_url or "",
        api_key=api_key,
        timeout=settings.crm_timeout,
        client=client,
    )


__all__ = [
    "CrmClient",
    "GhlHttpClient",
    "HttpPdpClient",
    "MockPdpClient",
    "PdpArtifact",
    "PdpArtifacts",
    "PdpClient",
    "PdpStatus",
    "PdpSubmission",
    "StaticCrmClient",
    "SuperPdpClient",
    "build_crm_client",
    "build_pdp_client",
    "normalize_superpdp_status",
]
