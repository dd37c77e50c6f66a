"""Recent-activity log kept in the run-state store.

When enabled, the last ``MAX_ENTRIES`` log lines from the ``autoalt`` logger
are kept under ``<namespace>_debug_logs`` so an operator can see what a
background run did without access to its console.
"""

from __future__ import annotations

import logging
import time

from autoalt.errors import StoreError
from autoalt.store import RunStateStore

MAX_ENTRIES = 100
LOG_TTL = 3600  # seconds


def log_key(namespace: str = "autoalt") -> str:
    return f"{namespace}_debug_logs"


class StoreLogHandler(logging.Handler):
    """Appends formatted records to a bounded list in the store."""

    def __init__(
        self,
        store: RunStateStore,
        *,
        namespace: str = "autoalt",
        max_entries: int = MAX_ENTRIES,
        level: int = logging.DEBUG,
    ) -> None:
        super().__init__(level)
        self._store = store
        self._key = log_key(namespace)
        self._max_entries = max_entries
        self._emitting = False
        self.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))

    def emit(self, record: logging.LogRecord) -> None:
        # Store writes log too; they must not feed back into the store.
        if record.name.startswith("autoalt.store") or self._emitting:
            return
        self._emitting = True
        try:
            stamp = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(record.created))
            entries = list(self._store.get(self._key) or [])
            entries.append(f"[{stamp}] {self.format(record)}")
            self._store.set(self._key, entries[-self._max_entries:], LOG_TTL)
        except StoreError:
            self.handleError(record)
        finally:
            self._emitting = False


def recent_logs(store: RunStateStore, namespace: str = "autoalt") -> list[str]:
    return list(store.get(log_key(namespace)) or [])


def clear_logs(store: RunStateStore, namespace: str = "autoalt") -> None:
    store.delete(log_key(namespace))


def install(store: RunStateStore, namespace: str = "autoalt") -> StoreLogHandler:
    """Attach a ``StoreLogHandler`` to the package logger."""
    handler = StoreLogHandler(store, namespace=namespace)
    pkg_logger = logging.getLogger("autoalt")
    pkg_logger.addHandler(handler)
    if pkg_logger.level == logging.NOTSET or pkg_logger.level > logging.DEBUG:
        pkg_logger.setLevel(logging.DEBUG)
    return handler
