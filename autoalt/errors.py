"""Exception types raised at step and invoker boundaries.

Per-image failures are never exceptions: they travel as strings inside
``AltTextResult.error`` and ``Failure.reason`` so a batch can keep going.
"""

from __future__ import annotations


class AutoAltError(Exception):
    """Base class for autoalt errors."""


class ConfigurationError(AutoAltError):
    """Missing API key, unknown provider or an invalid step setting."""


class StoreError(AutoAltError):
    """The run-state store could not be read or written."""


class RateLimitExceeded(AutoAltError):
    """A caller exhausted its admission quota."""

    def __init__(self, message: str, *, retry_after: int | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class LibraryError(AutoAltError):
    """The image library or its alt text sidecar could not be read."""
