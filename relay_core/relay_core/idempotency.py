"""Deterministic idempotency keys for webhook dedup and stage enqueues.

The same invoice processed twice by the same stage always yields the same
key, so the queue's (tenant, type, key) uniqueness suppresses the second
enqueue.
"""

from __future__ import annotations

from enum import Enum

KEY_SEPARATOR = ":"


class IdempotencyStep(str, Enum):
    """Pipeline step tag that prefixes every idempotency key."""

    WEBHOOK = "WEBHOOK"
    FETCH = "FETCH"
    MAP = "MAP"
    GENERATE = "GENERATE"
    SUBMIT = "SUBMIT"
    SYNC = "SYNC"
    RECONCILE = "RECONCILE"


def build_idempotency_key(step: IdempotencyStep | str, *parts: object) -> str:
    """Join *step* and *parts* with ``:``.

    Every part is converted with ``str``.  A ``None`` or empty part raises
    :class:`ValueError`: dropping it would let ``(t1, None, inv)`` and
    ``(t1, inv)`` share a key.

    >>> build_idempotency_key(IdempotencyStep.FETCH, "t1", "inv-9")
    'FETCH:t1:inv-9'
    """
    tag = step.value if isinstance(step, IdempotencyStep) else str(step)
    rendered = []
    for position, part in enumerate(parts):
        text = "" if part is None else str(part)
        if not text:
            raise ValueError(f"{tag} idempotency key part {position} is empty")
        rendered.append(text)
    return KEY_SEPARATOR.join([tag, *rendered])
