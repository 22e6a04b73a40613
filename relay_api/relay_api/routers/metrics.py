"""Prometheus scrape endpoint.

Registered at the application root (``/metrics``), outside the versioned
API prefix.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST

from relay_api.dependencies import get_prometheus_sink
from relay_core.telemetry.metrics import PrometheusMetricsSink

router = APIRouter(tags=["metrics"])


@router.get("/metrics")
async def metrics(sink: Annotated[PrometheusMetricsSink, Depends(get_prometheus_sink)]) -> Response:
    """Render the process's counters in the Prometheus text format."""
    return Response(content=sink.render(), media_type=CONTENT_TYPE_LATEST)
