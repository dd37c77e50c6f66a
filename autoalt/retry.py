"""Bounded per-image retry around a vision provider."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from autoalt.models import AttemptOutcome, Failure, Success
from autoalt.providers.base import ImageRef, VisionProvider, clean_alt_text

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 2
DEFAULT_BACKOFF = 1.0  # seconds
DEFAULT_CALL_TIMEOUT = 60.0  # seconds

Sleep = Callable[[float], Awaitable[None]]


class RetryingDescriber:
    """Turns a flaky single-call provider into a reliable per-item operation.

    Each attempt is guarded by ``call_timeout``; a timeout, a raised
    exception, a provider error and an empty answer all count as a failed
    attempt. The backoff between attempts is fixed.
    """

    def __init__(
        self,
        provider: VisionProvider,
        *,
        backoff: float = DEFAULT_BACKOFF,
        call_timeout: float = DEFAULT_CALL_TIMEOUT,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._provider = provider
        self._backoff = backoff
        self._call_timeout = call_timeout
        self._sleep = sleep

    async def describe_with_retry(
        self,
        image: ImageRef,
        prompt: str,
        model: str,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ) -> AttemptOutcome:
        attempts = max(0, max_retries) + 1
        reason = "No attempt made"
        for attempt in range(1, attempts + 1):
            reason = await self._attempt(image, prompt, model)
            if isinstance(reason, Success):
                return Success(text=reason.text, attempts=attempt)

            if attempt < attempts:
                logger.warning(
                    "Image %s failed (%s), retrying in %.1fs (%d/%d)",
                    image.image_id, reason, self._backoff, attempt, attempts - 1,
                )
                await self._sleep(self._backoff)

        logger.error("Image %s failed after %d attempt(s): %s", image.image_id, attempts, reason)
        return Failure(reason=reason, attempts=attempts)

    async def _attempt(self, image: ImageRef, prompt: str, model: str) -> Success | str:
        """Run one provider call, returning Success or a failure reason."""
        try:
            result = await asyncio.wait_for(
                self._provider.describe(image, prompt, model), timeout=self._call_timeout,
            )
        except asyncio.TimeoutError:
            return f"Request timed out after {self._call_timeout:g}s"
        except Exception as exc:
            logger.debug("Provider raised for %s", image.image_id, exc_info=True)
            return str(exc) or type(exc).__name__

        if result.error:
            return result.error
        text = clean_alt_text(result.alt_text)
        if not text:
            return "API returned empty alt text"
        return Success(text=text)
