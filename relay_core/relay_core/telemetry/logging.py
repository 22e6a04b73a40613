"""Structured logging with correlation-id propagation.

Each invoice carries one correlation id across every pipeline stage.  The
worker binds it (and the job id) for the duration of a job; the HTTP layer
binds the ``X-Correlation-ID`` of the request.  :class:`CorrelationLoggingFilter`
copies both onto every record so :class:`JSONFormatter` can emit them.

Output schema per line::

    {
        "timestamp": "2025-05-15T12:34:56.789012+00:00",
        "level": "INFO",
        "logger": "relay_core.pipeline.worker",
        "message": "Job completed",
        "correlation_id": "…",     // present when bound
        "job_id": "…",             // present inside a worker job
        "request": { ... },        // present when emitted by RequestLoggingMiddleware
        "exc_info": "Traceback ..."
    }
"""

from __future__ import annotations

import contextvars
import json
import logging
import traceback
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any

_correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("correlation_id", default="")
_job_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("job_id", default="")


def get_correlation_id() -> str:
    """Return the correlation id bound to the current context, or ``""``."""
    return _correlation_id_var.get()


@contextmanager
def bind_correlation_id(correlation_id: str | None, job_id: str | None = None) -> Iterator[None]:
    """Bind *correlation_id* (and optionally *job_id*) for the enclosed block."""
    corr_token = _correlation_id_var.set(correlation_id or "")
    job_token = _job_id_var.set(job_id or "")
    try:
        yield
    finally:
        _job_id_var.reset(job_token)
        _correlation_id_var.reset(corr_token)


class CorrelationLoggingFilter(logging.Filter):
    """Inject ``correlation_id`` and ``job_id`` into every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = _correlation_id_var.get()  # type: ignore[attr-defined]
        record.job_id = _job_id_var.get()  # type: ignore[attr-defined]
        return True


class JSONFormatter(logging.Formatter):
    """Format log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        correlation_id = getattr(record, "correlation_id", None)
        if correlation_id:
            payload["correlation_id"] = correlation_id
        job_id = getattr(record, "job_id", None)
        if job_id:
            payload["job_id"] = job_id

        request_data = getattr(record, "request", None)
        if request_data is not None:
            payload["request"] = request_data

        if record.exc_info and record.exc_info[0] is not None:
            payload["exc_info"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(payload, default=str, ensure_ascii=False)


def configure_logging(level: str = "INFO", structured: bool = False) -> None:
    """Install a single stream handler on the root logger.

    With ``structured=True`` records are rendered by :class:`JSONFormatter`;
    otherwise a plain text format including the correlation id is used.
    """
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    handler = logging.StreamHandler()
    if structured:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)-7s %(name)s [%(correlation_id)s] %(message)s")
        )
    handler.addFilter(CorrelationLoggingFilter())
    root_logger.addHandler(handler)
    root_logger.setLevel(level.upper())
