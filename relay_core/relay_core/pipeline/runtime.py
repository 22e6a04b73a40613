"""Wiring of the pipeline from :class:`RelaySettings`.

Used by the CLI worker command and by tests that want the real stack with a
few collaborators swapped out.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncEngine

from relay_core.clients import CrmClient, PdpClient, build_crm_client, build_pdp_client
from relay_core.config import RelaySettings
from relay_core.pipeline.handlers import PipelineHandlers
from relay_core.pipeline.reconciliation import ReconciliationDriver
from relay_core.pipeline.worker import Worker
from relay_core.queue import JobQueue
from relay_core.security import SecretCipher
from relay_core.state.database import get_engine, get_session_factory
from relay_core.storage import ObjectStore, build_object_store
from relay_core.telemetry.metrics import MetricsSink, NullMetricsSink

logger = logging.getLogger(__name__)


@dataclass
class PipelineRuntime:
    """Everything a worker process needs, built once at startup."""

    engine: AsyncEngine
    queue: JobQueue
    handlers: PipelineHandlers
    worker: Worker
    reconciler: ReconciliationDriver
    store: ObjectStore
    cipher: SecretCipher
    crm: CrmClient
    pdp: PdpClient


def build_runtime(
    settings: RelaySettings,
    *,
    engine: AsyncEngine | None = None,
    crm: CrmClient | None = None,
    pdp: PdpClient | None = None,
    store: ObjectStore | None = None,
    metrics: MetricsSink | None = None,
) -> PipelineRuntime:
    """Build the queue, handlers, worker and reconciliation driver."""
    engine = engine or get_engine(settings.database_url, settings.db_pool_size, settings.db_max_overflow)
    sink = metrics or NullMetricsSink()
    queue = JobQueue(get_session_factory(engine), max_attempts=settings.job_max_attempts, metrics=sink)
    cipher = SecretCipher.from_settings(settings)
    crm = crm or build_crm_client(settings)
    pdp = pdp or build_pdp_client(settings)
    store = store or build_object_store(settings)

    handlers = PipelineHandlers(
        queue, crm=crm, pdp=pdp, store=store, cipher=cipher, settings=settings, metrics=sink
    )
    worker = Worker(
        queue,
        handlers,
        worker_id=settings.worker_id,
        poll_interval=settings.worker_poll_interval,
        lease_seconds=settings.job_lease_seconds,
        metrics=sink,
    )
    reconciler = ReconciliationDriver(
        queue,
        interval_seconds=settings.reconcile_interval_seconds,
        stale_seconds=settings.reconcile_stale_seconds,
        limit=settings.reconcile_batch_limit,
    )
    logger.info(
        "Pipeline runtime ready: pdp=%s crm=%s storage=%s",
        pdp.provider,
        type(crm).__name__,
        settings.storage_backend.value,
    )
    return PipelineRuntime(
        engine=engine,
        queue=queue,
        handlers=handlers,
        worker=worker,
        reconciler=reconciler,
        store=store,
        cipher=cipher,
        crm=crm,
        pdp=pdp,
    )
