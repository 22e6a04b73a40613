"""Counter metrics behind an injectable sink.

Pipeline code never touches a metrics library directly: it receives a
:class:`MetricsSink` and calls ``increment``.  Processes construct one
:class:`PrometheusMetricsSink` at startup (owning its own
``CollectorRegistry``) and pass it down; tests use :class:`NullMetricsSink`
or :class:`RecordingMetricsSink`.
"""

from __future__ import annotations

import logging
import threading
from collections import Counter as _TallyCounter
from collections.abc import Mapping
from typing import Protocol

from prometheus_client import CollectorRegistry, Counter, generate_latest

logger = logging.getLogger(__name__)

# Names emitted by the pipeline.
JOBS_ENQUEUED = "relay_jobs_enqueued_total"
JOBS_PROCESSED = "relay_jobs_processed_total"
WEBHOOKS_RECEIVED = "relay_webhooks_received_total"
RECONCILE_FANOUT = "relay_reconcile_enqueued_total"

_DESCRIPTIONS: dict[str, str] = {
    JOBS_ENQUEUED: "Jobs accepted by the queue, by job type",
    JOBS_PROCESSED: "Jobs handled by workers, by job type and outcome",
    WEBHOOKS_RECEIVED: "Inbound CRM webhooks, by outcome",
    RECONCILE_FANOUT: "SYNC_STATUS jobs enqueued by reconciliation sweeps",
}


class MetricsSink(Protocol):
    """Protocol for counter-style metrics."""

    def increment(self, name: str, labels: Mapping[str, str] | None = None) -> None:
        """Add one to the counter *name* with the given label values."""
        ...


class NullMetricsSink:
    """Discards every increment."""

    def increment(self, name: str, labels: Mapping[str, str] | None = None) -> None:
        return None


class RecordingMetricsSink:
    """Keeps increments in memory; handy for assertions."""

    def __init__(self) -> None:
        self.counts: _TallyCounter[tuple[str, tuple[tuple[str, str], ...]]] = _TallyCounter()

    def increment(self, name: str, labels: Mapping[str, str] | None = None) -> None:
        self.counts[(name, tuple(sorted((labels or {}).items())))] += 1

    def total(self, name: str) -> int:
        return sum(count for (metric, _), count in self.counts.items() if metric == name)


class PrometheusMetricsSink:
    """Prometheus-backed sink with a private registry.

    Counters are registered lazily on first use.  The label names of a
    counter are fixed by its first increment; later increments must use the
    same label keys.

    Parameters
    ----------
    registry:
        Registry to register counters in.  A fresh one is created when
        omitted so multiple sinks never collide.
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self._registry = registry if registry is not None else CollectorRegistry()
        self._counters: dict[str, Counter] = {}
        self._lock = threading.Lock()

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry

    def increment(self, name: str, labels: Mapping[str, str] | None = None) -> None:
        label_values = dict(labels or {})
        counter = self._get_counter(name, tuple(sorted(label_values)))
        if label_values:
            counter.labels(**label_values).inc()
        else:
            counter.inc()

    def render(self) -> bytes:
        """Return the registry in the Prometheus text exposition format."""
        return generate_latest(self._registry)

    def _get_counter(self, name: str, label_names: tuple[str, ...]) -> Counter:
        with self._lock:
            counter = self._counters.get(name)
            if counter is None:
                # prometheus_client appends ``_total`` itself.
                base_name = name[: -len("_total")] if name.endswith("_total") else name
                counter = Counter(
                    base_name,
                    _DESCRIPTIONS.get(name, name),
                    list(label_names),
                    registry=self._registry,
                )
                self._counters[name] = counter
                logger.debug("Registered counter %s labels=%s", name, label_names)
            return counter
