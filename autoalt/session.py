"""Session bookkeeping across interrupted and resumed runs.

A session starts when a step first sees pending images and no stored
session. Its total is the pending count at that moment and never changes
until the session ends; images added mid-run count toward the same effort
without moving the total. The session ends when a step sees nothing pending.
"""

from __future__ import annotations

import logging

from autoalt.errors import StoreError
from autoalt.models import SessionStatus
from autoalt.store import RunStateStore

logger = logging.getLogger(__name__)

DEFAULT_TTL = 3600  # seconds
DEFAULT_NAMESPACE = "autoalt"


class SessionTracker:
    """Reads and writes session counters in a run-state store."""

    def __init__(
        self,
        store: RunStateStore,
        *,
        namespace: str = DEFAULT_NAMESPACE,
        ttl: float | None = DEFAULT_TTL,
    ) -> None:
        self._store = store
        self._ttl = ttl
        self.total_key = f"{namespace}_session_total"
        self.success_key = f"{namespace}_success_count"

    def start_or_resume(self, pending_count: int) -> int:
        """Return the stored session total, creating it from *pending_count* if absent.

        Resuming rewrites the stored total with a fresh TTL, so a session
        stays alive as long as steps keep arriving within one TTL window.
        """
        stored = self._read_int(self.total_key)
        if stored is not None:
            self._store.set(self.total_key, stored, self._ttl)
            return stored
        # A success count that outlived its total belongs to an expired session.
        self._store.delete(self.success_key)
        self._store.set(self.total_key, pending_count, self._ttl)
        logger.info("Started session with %d pending image(s)", pending_count)
        return pending_count

    def record_success(self, delta: int) -> int:
        """Add *delta* to the cumulative success counter and return the new value."""
        return self._store.incr(self.success_key, max(0, delta), self._ttl)

    def cumulative_success(self) -> int:
        return self._read_int(self.success_key) or 0

    def session_total(self) -> int | None:
        return self._read_int(self.total_key)

    @staticmethod
    def progress(
        session_total: int, remaining_after_batch: int, cumulative_success: int,
    ) -> tuple[int, float]:
        """Return ``(processed_so_far, progress_percent)``.

        Progress is measured against the fixed session total, so an image
        that keeps failing holds the percentage below 100.
        """
        processed = max(0, session_total - remaining_after_batch)
        if session_total == 0:
            return processed, 100.0
        return processed, min(100.0, 100.0 * processed / session_total)

    def end_session(self) -> None:
        self._store.delete(self.total_key)
        self._store.delete(self.success_key)
        logger.info("Session ended")

    def check_resumable(self, pending_count: int) -> SessionStatus:
        """Compare the stored total against a fresh pending count.

        A stored total with nothing left pending is stale and gets cleared here.
        """
        total = self._read_int(self.total_key)
        if total is None:
            return SessionStatus(has_session=False, remaining=pending_count)

        if pending_count == 0:
            self.end_session()
            return SessionStatus(has_session=False, session_total=total, processed=total)

        return SessionStatus(
            has_session=True,
            session_total=total,
            remaining=pending_count,
            processed=max(0, total - pending_count),
        )

    def _read_int(self, key: str) -> int | None:
        value = self._store.get(key)
        if value is None:
            return None
        try:
            return int(value)
        except (TypeError, ValueError) as exc:
            raise StoreError(f"Corrupt session value for {key!r}: {value!r}") from exc
