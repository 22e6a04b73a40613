"""Shared request plumbing for the CRM and PDP HTTP clients."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from relay_core.errors import ExternalServiceError

logger = logging.getLogger(__name__)

_MAX_ERROR_BODY = 500


def build_headers(
    *,
    api_key: str | None = None,
    correlation_id: str | None = None,
    idempotency_key: str | None = None,
    extra: dict[str, str] | None = None,
) -> dict[str, str]:
    headers: dict[str, str] = dict(extra or {})
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    if correlation_id:
        headers["X-Correlation-Id"] = correlation_id
    if idempotency_key:
        headers["Idempotency-Key"] = idempotency_key
    return headers


async def send(client: httpx.AsyncClient, service: str, method: str, url: str, **kwargs: Any) -> httpx.Response:
    """Issue a request, converting transport errors and non-2xx into :class:`ExternalServiceError`."""
    try:
        response = await client.request(method, url, **kwargs)
    except httpx.HTTPError as exc:
        logger.warning("%s %s %s transport error: %s", service, method, url, exc)
        raise ExternalServiceError(service, str(exc) or type(exc).__name__) from exc

    if response.is_success:
        return response

    body = response.text[:_MAX_ERROR_BODY] if response.content else ""
    logger.warning("%s %s %s returned %d", service, method, url, response.status_code)
    raise ExternalServiceError(service, body, status_code=response.status_code)


class OwnedClientMixin:
    """Holds an ``httpx.AsyncClient``, closing it only if this object created it."""

    _client: httpx.AsyncClient
    _owns_client: bool

    def _init_client(self, client: httpx.AsyncClient | None, timeout: float) -> None:
        self._owns_client = client is None
        self._client = client if client is not None else httpx.AsyncClient(timeout=httpx.Timeout(timeout))

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
