"""Middleware components for the relay API."""

from __future__ import annotations

from relay_api.middleware.logging import CORRELATION_HEADER, RequestLoggingMiddleware

__all__ = ["CORRELATION_HEADER", "RequestLoggingMiddleware"]
