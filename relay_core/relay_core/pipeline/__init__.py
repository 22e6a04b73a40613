"""The invoice pipeline: stage handlers, worker loop and reconciliation."""

from relay_core.pipeline.handlers import PipelineHandlers
from relay_core.pipeline.reconciliation import ReconciliationDriver, time_bucket
from relay_core.pipeline.runtime import PipelineRuntime, build_runtime
from relay_core.pipeline.worker import Worker

__all__ = [
    "PipelineHandlers",
    "PipelineRuntime",
    "ReconciliationDriver",
    "Worker",
    "build_runtime",
    "time_bucket",
]
