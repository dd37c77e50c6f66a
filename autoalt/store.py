"""Run-state stores — small keyed values with optional expiry.

The batch engine keeps its session counters here so a run can be resumed
after the process exits. ``MemoryStore`` lives for one process;
``FileStore`` persists to a YAML file next to the image library.
"""

from __future__ import annotations

import logging
import os
import tempfile
import threading
import time
from pathlib import Path
from typing import Any, Callable, Protocol, runtime_checkable

import yaml

from autoalt.errors import StoreError

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


@runtime_checkable
class RunStateStore(Protocol):
    """Key-value contract the session tracker relies on."""

    def get(self, key: str) -> Any | None:
        ...

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        ...

    def delete(self, key: str) -> None:
        ...

    def incr(self, key: str, delta: int = 1, ttl: float | None = None) -> int:
        """Atomically add *delta* to an integer value and return the result."""
        ...


def _expiry(clock: Clock, ttl: float | None) -> float | None:
    return None if ttl is None else clock() + ttl


class MemoryStore:
    """In-process store. Thread-safe; values expire lazily on read."""

    def __init__(self, *, clock: Clock = time.time) -> None:
        self._clock = clock
        self._data: dict[str, tuple[Any, float | None]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Any | None:
        with self._lock:
            return self._get_locked(key)

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        with self._lock:
            self._data[key] = (value, _expiry(self._clock, ttl))

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def incr(self, key: str, delta: int = 1, ttl: float | None = None) -> int:
        with self._lock:
            value = int(self._get_locked(key) or 0) + delta
            self._data[key] = (value, _expiry(self._clock, ttl))
            return value

    def keys(self) -> list[str]:
        with self._lock:
            return [k for k in list(self._data) if self._get_locked(k) is not None]

    def _get_locked(self, key: str) -> Any | None:
        item = self._data.get(key)
        if item is None:
            return None
        value, expires = item
        if expires is not None and expires <= self._clock():
            del self._data[key]
            return None
        return value


class FileStore:
    """YAML-file store with atomic replace on every write.

    Read-modify-write cycles are serialized by a lock, which makes ``incr``
    atomic within one process. Separate processes sharing the file are not
    coordinated.
    """

    def __init__(self, path: Path, *, clock: Clock = time.time) -> None:
        self._path = Path(path)
        self._clock = clock
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def get(self, key: str) -> Any | None:
        with self._lock:
            data = self._load()
            return self._live_value(data, key)

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        with self._lock:
            data = self._load()
            data[key] = {"value": value, "expires": _expiry(self._clock, ttl)}
            self._save(data)

    def delete(self, key: str) -> None:
        with self._lock:
            data = self._load()
            if data.pop(key, None) is not None:
                self._save(data)

    def incr(self, key: str, delta: int = 1, ttl: float | None = None) -> int:
        with self._lock:
            data = self._load()
            current = self._live_value(data, key) or 0
            try:
                value = int(current) + delta
            except (TypeError, ValueError) as exc:
                raise StoreError(
                    f"Cannot increment non-integer value for {key!r}: {current!r}"
                ) from exc
            data[key] = {"value": value, "expires": _expiry(self._clock, ttl)}
            self._save(data)
            return value

    def _live_value(self, data: dict[str, Any], key: str) -> Any | None:
        entry = data.get(key)
        if not isinstance(entry, dict):
            return None
        expires = entry.get("expires")
        if expires is not None and expires <= self._clock():
            return None
        return entry.get("value")

    def _load(self) -> dict[str, Any]:
        if not self._path.is_file():
            return {}
        try:
            raw = yaml.safe_load(self._path.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as exc:
            raise StoreError(f"Cannot read run state from {self._path}: {exc}") from exc
        if raw is None:
            return {}
        if not isinstance(raw, dict):
            raise StoreError(f"Run state file is malformed: {self._path}")
        now = self._clock()
        # Drop expired entries so the file does not grow without bound.
        live: dict[str, Any] = {}
        for k, v in raw.items():
            if not isinstance(v, dict):
                continue
            expires = v.get("expires")
            if expires is not None:
                try:
                    expires = float(expires)
                except (TypeError, ValueError) as exc:
                    raise StoreError(
                        f"Run state file is malformed: {self._path} (bad expiry for {k!r})"
                    ) from exc
                if expires <= now:
                    continue
            live[k] = {"value": v.get("value"), "expires": expires}
        return live

    def _save(self, data: dict[str, Any]) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=self._path.parent, prefix=".state-", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    yaml.safe_dump(data, fh, default_flow_style=False, sort_keys=True)
                os.replace(tmp, self._path)
            except BaseException:
                Path(tmp).unlink(missing_ok=True)
                raise
        except OSError as exc:
            raise StoreError(f"Cannot write run state to {self._path}: {exc}") from exc
        logger.debug("Run state saved to %s (%d keys)", self._path, len(data))
