"""Shared data models used across the batch engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union


@dataclass(frozen=True)
class RateLimit:
    """Published request budget for one provider/model pair."""

    requests_per_minute: int
    inter_call_delay_seconds: float
    max_batch_size: int
    requests_per_day: int | None = None
    tokens_per_minute: int | None = None


@dataclass(frozen=True)
class Success:
    """An image that produced usable alt text."""

    text: str
    attempts: int = 1


@dataclass(frozen=True)
class Failure:
    """An image that still failed after all retries."""

    reason: str
    attempts: int = 1


AttemptOutcome = Union[Success, Failure]


@dataclass
class BatchResult:
    """Result of a single processing step."""

    attempted: int = 0
    succeeded: int = 0  # cumulative for the session
    errors: list[tuple[str, str]] = field(default_factory=list)
    completed: bool = False
    progress_percent: float = 0.0
    batch_succeeded: int = 0
    session_total: int = 0
    processed: int = 0
    remaining: int = 0
    error: str | None = None  # step-level failure, nothing was attempted

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def all_failed(self) -> bool:
        """True when a batch was attempted and every item in it failed."""
        return self.attempted > 0 and self.batch_succeeded == 0

    @property
    def message(self) -> str:
        if self.error is not None:
            return self.error
        if self.completed and self.attempted == 0:
            return f"All images processed. {self.succeeded} alt tags generated successfully."
        return (
            f"Processed {self.processed}/{self.session_total} images. "
            f"{self.succeeded} successful."
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "completed": self.completed,
            "progress": round(self.progress_percent, 1),
            "attempted": self.attempted,
            "batch_success": self.batch_succeeded,
            "total_success": self.succeeded,
            "session_total": self.session_total,
            "processed": self.processed,
            "remaining": self.remaining,
            "errors": [{"image_id": i, "error": msg} for i, msg in self.errors],
            "error": self.error,
            "message": self.message,
        }


@dataclass
class SessionStatus:
    """Resumability snapshot used to offer "resume" versus "start fresh"."""

    has_session: bool = False
    session_total: int = 0
    remaining: int = 0
    processed: int = 0


@dataclass
class ImageStats:
    """Alt text coverage across the whole image library."""

    total: int = 0
    with_alt: int = 0

    @property
    def without_alt(self) -> int:
        return self.total - self.with_alt

    @property
    def percentage(self) -> float:
        if self.total == 0:
            return 0.0
        return round(self.with_alt / self.total * 100, 1)


@dataclass
class PreviewItem:
    """Alt text drafted for an image without saving it."""

    image_id: str
    alt_text: str = ""
    error: str | None = None
    attempts: int = 0
