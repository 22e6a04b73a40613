"""Logging and metrics plumbing shared by the worker, API and CLI."""

from relay_core.telemetry.logging import (
    CorrelationLoggingFilter,
    JSONFormatter,
    bind_correlation_id,
    configure_logging,
    get_correlation_id,
)
from relay_core.telemetry.metrics import MetricsSink, NullMetricsSink, PrometheusMetricsSink

__all__ = [
    "CorrelationLoggingFilter",
    "JSONFormatter",
    "MetricsSink",
    "NullMetricsSink",
    "PrometheusMetricsSink",
    "bind_correlation_id",
    "configure_logging",
    "get_correlation_id",
]
