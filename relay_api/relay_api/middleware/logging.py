"""Access logging and correlation-id propagation for the relay API."""

from __future__ import annotations

import logging
import re
import time
import uuid
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from relay_core.telemetry.logging import bind_correlation_id

logger = logging.getLogger("relay_api.access")

CORRELATION_HEADER: str = "X-Correlation-ID"

# Fits the 64-character correlation_id columns and stays safe to log.
_VALID_CORRELATION_ID = re.compile(r"^[A-Za-z0-9._:-]{1,64}$")

# Credentials and webhook signatures never reach the log stream.
_REDACTED_HEADERS: frozenset[str] = frozenset({"authorization", "cookie", "x-api-key", "x-ghl-signature"})


def _loggable_headers(request: Request) -> dict[str, str]:
    return {
        name: "***" if name.lower() in _REDACTED_HEADERS else value
        for name, value in request.headers.items()
    }


def _correlation_id(request: Request) -> str:
    supplied = request.headers.get(CORRELATION_HEADER)
    if supplied and _VALID_CORRELATION_ID.match(supplied):
        return supplied
    if supplied:
        logger.warning("Ignoring malformed %s header (%d chars)", CORRELATION_HEADER, len(supplied))
    return str(uuid.uuid4())


def _level_for(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Emit one access record per request and carry the correlation id.

    The id comes from ``X-Correlation-ID`` when it is at most 64 characters
    of ``[A-Za-z0-9._:-]``; otherwise a UUID4 is generated.  It is exposed
    as ``request.state.correlation_id``, bound to the logging context while
    the request runs (the webhook service stamps it on the jobs it
    enqueues) and echoed on the response.  The structured fields travel in
    ``extra={"request": ...}`` for :class:`~relay_core.telemetry.logging.JSONFormatter`.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        correlation_id = _correlation_id(request)
        request.state.correlation_id = correlation_id
        started = time.perf_counter()
        status_code = 500

        with bind_correlation_id(correlation_id):
            try:
                response = await call_next(request)
                status_code = response.status_code
                response.headers[CORRELATION_HEADER] = correlation_id
                return response
            finally:
                elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
                fields: dict[str, Any] = {
                    "method": request.method,
                    "path": request.url.path,
                    "query": request.url.query or None,
                    "status_code": status_code,
                    "duration_ms": elapsed_ms,
                    "client": request.client.host if request.client else None,
                    "tenant_id": request.headers.get("x-tenant-id"),
                    "correlation_id": correlation_id,
                    "headers": _loggable_headers(request),
                }
                logger.log(
                    _level_for(status_code),
                    "%s %s -> %d (%.2f ms)",
                    request.method,
                    request.url.path,
                    status_code,
                    elapsed_ms,
                    extra={"request": fields},
                )
