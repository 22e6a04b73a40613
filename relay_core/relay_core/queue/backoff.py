"""Backoff schedules for the two kinds of delayed re-run.

* :func:`failure_retry_delay` drives the queue's fail path (technical
  retry): ``2 ** attempts`` seconds, uncapped.
* :class:`PollBackoff` drives SYNC_STATUS's self-scheduled re-polls
  (business polling): exponential from a base, capped.
"""

from __future__ import annotations

from pydantic import BaseModel, Field


def failure_retry_delay(attempts: int) -> float:
    """Seconds until a failed job becomes eligible again after *attempts* tries."""
    return float(2**attempts)


class PollBackoff(BaseModel):
    """Tuneable parameters for status polling."""

    base_delay: float = Field(
        default=30.0,
        gt=0.0,
        description="Delay in seconds before the first re-poll.",
    )
    max_delay: float = Field(
        default=600.0,
        gt=0.0,
        description="Upper bound on delay in seconds.",
    )

    def delay_for(self, attempt: int) -> float:
        """Return the delay before poll number *attempt* + 1."""
        return min(self.base_delay * (2**attempt), self.max_delay)
