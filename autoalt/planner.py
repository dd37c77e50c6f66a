"""Batch sizing and pacing."""

from __future__ import annotations

from typing import Sequence, TypeVar

from autoalt.models import RateLimit
from autoalt.ratelimits import DEFAULT_BATCH_CEILING

T = TypeVar("T")


class BatchPlanner:
    """Chooses how many pending images to take this step and how to pace them.

    Batches always come from the front of the freshly queried pending list.
    Failed images stay pending, so they are picked up again by a later step
    instead of being skipped.
    """

    def __init__(self, default_ceiling: int = DEFAULT_BATCH_CEILING) -> None:
        self._default_ceiling = max(1, default_ceiling)

    def ceiling(self, limits: RateLimit | None) -> int:
        if limits is None:
            return self._default_ceiling
        return max(1, limits.max_batch_size)

    def plan_batch(
        self,
        pending: Sequence[T],
        configured_batch_size: int,
        limits: RateLimit | None,
    ) -> tuple[list[T], float]:
        batch_size = min(max(configured_batch_size, 1), self.ceiling(limits))
        delay = limits.inter_call_delay_seconds if limits is not None else 0.0
        return list(pending[:batch_size]), delay

    @staticmethod
    def should_pause_after(index: int, batch_len: int) -> bool:
        """Pacing applies between items, never after the last one."""
        return index < batch_len - 1
