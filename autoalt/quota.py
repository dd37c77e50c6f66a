"""Per-caller hourly request quota.

This is admission control for whoever invokes steps (e.g. the web API), not
provider pacing; the batch engine itself never consults it.
"""

from __future__ import annotations

import logging
import re

from autoalt.errors import RateLimitExceeded
from autoalt.store import RunStateStore

logger = logging.getLogger(__name__)

HOUR_IN_SECONDS = 3600
DEFAULT_HOURLY_LIMIT = 30


class HourlyQuota:
    """Counts requests per caller in a one-hour window kept in the store."""

    def __init__(
        self,
        store: RunStateStore,
        *,
        limit: int = DEFAULT_HOURLY_LIMIT,
        namespace: str = "autoalt",
    ) -> None:
        self._store = store
        self._limit = limit
        self._prefix = f"{namespace}_rate_limit_"

    def key_for(self, caller: str) -> str:
        return self._prefix + re.sub(r"[^A-Za-z0-9_.:-]", "_", caller or "anonymous")

    def used(self, caller: str) -> int:
        return int(self._store.get(self.key_for(caller)) or 0)

    def check(self, caller: str) -> int:
        """Count one request for *caller*.

        Raises ``RateLimitExceeded`` once ``limit`` requests have
        already been counted this hour. Returns the updated count otherwise.
        """
        key = self.key_for(caller)
        attempts = int(self._store.get(key) or 0)
        if attempts >= self._limit:
            logger.warning("Hourly quota exceeded for %s (%d requests)", caller, attempts)
            raise RateLimitExceeded(
                "Rate limit exceeded. Please try again later.", retry_after=HOUR_IN_SECONDS,
            )
        return self._store.incr(key, 1, HOUR_IN_SECONDS)

    def reset(self, caller: str) -> None:
        self._store.delete(self.key_for(caller))
