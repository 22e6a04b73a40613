"""CRM (GHL) client: fetch invoices and push compliance status back."""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from relay_core.clients._http import OwnedClientMixin, build_headers, send
from relay_core.errors import ExternalServiceError

logger = logging.getLogger(__name__)


class CrmClient(Protocol):
    """What the pipeline needs from the CRM."""

    async def fetch_invoice(
        self,
        tenant_id: str,
        external_id: str,
        *,
        api_key: str | None = None,
        correlation_id: str | None = None,
    ) -> dict[str, Any]: ...

    async def push_status(
        self,
        tenant_id: str,
        external_id: str,
        status: str,
        *,
        api_key: str | None = None,
        correlation_id: str | None = None,
    ) -> None: ...


class GhlHttpClient(OwnedClientMixin):
    """GHL REST client.

    Parameters
    ----------
    base_url:
        API root, e.g. ``https://services.leadconnectorhq.com``.
    api_key:
        Default bearer token when no per-tenant key is passed.
    timeout:
        Per-request timeout in seconds.
    client:
        Pre-configured ``httpx.AsyncClient`` (tests inject one with a mock
        transport).  When omitted the client creates and owns its own.
    """

    SERVICE = "crm"

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str | None = None,
        timeout: float = 15.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._init_client(client, timeout)

    async def fetch_invoice(
        self,
        tenant_id: str,
        external_id: str,
        *,
        api_key: str | None = None,
        correlation_id: str | None = None,
    ) -> dict[str, Any]:
        response = await send(
            self._client,
            self.SERVICE,
            "GET",
            f"{self._base_url}/invoices/{external_id}",
            headers=build_headers(
                api_key=api_key or self._api_key,
                correlation_id=correlation_id,
                extra={"Accept": "application/json"},
            ),
        )
        data = response.json()
        if not isinstance(data, dict):
            raise ExternalServiceError(self.SERVICE, "invoice response is not a JSON object")
        invoice = data.get("invoice")
        return invoice if isinstance(invoice, dict) else data

    async def push_status(
        self,
        tenant_id: str,
        external_id: str,
        status: str,
        *,
        api_key: str | None = None,
        correlation_id: str | None = None,
    ) -> None:
        await send(
            self._client,
            self.SERVICE,
            "PUT",
            f"{self._base_url}/invoices/{external_id}/status",
            json={"status": status},
            headers=build_headers(api_key=api_key or self._api_key, correlation_id=correlation_id),
        )
        logger.info("Pushed status %s for CRM invoice %s (tenant=%s)", status, external_id, tenant_id)


class StaticCrmClient:
    """In-process CRM used when no CRM endpoint is configured, and in tests.

    ``fetch_invoice`` serves payloads registered with :meth:`add_invoice`
    and raises a 404 :class:`ExternalServiceError` otherwise, which the
    fetch stage tolerates by falling back to the stored payload.
    """

    def __init__(self, invoices: dict[tuple[str, str], dict[str, Any]] | None = None) -> None:
        self._invoices = dict(invoices or {})
        self.pushed: list[tuple[str, str, str]] = []

    def add_invoice(self, tenant_id: str, external_id: str, payload: dict[str, Any]) -> None:
        self._invoices[(tenant_id, external_id)] = payload

    async def fetch_invoice(
        self,
        tenant_id: str,
        external_id: str,
        *,
        api_key: str | None = None,
        correlation_id: str | None = None,
    ) -> dict[str, Any]:
        try:
            return dict(self._invoices[(tenant_id, external_id)])
        except KeyError:
            raise ExternalServiceError("crm", f"invoice {external_id} not found", status_code=404) from None

    async def push_status(
        self,
        tenant_id: str,
        external_id: str,
        status: str,
        *,
        api_key: str | None = None,
        correlation_id: str | None = None,
    ) -> None:
        self.pushed.append((tenant_id, external_id, status))
