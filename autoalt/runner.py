"""Step loops for callers that want to drive a whole run in one process."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from typing import Any, Callable

from autoalt.config import StepConfig
from autoalt.models import BatchResult
from autoalt.step import ProcessingStep

logger = logging.getLogger(__name__)


@dataclass
class RunSummary:
    """What happened over a sequence of steps."""

    steps: int = 0
    attempted: int = 0
    succeeded: int = 0
    errors: list[tuple[str, str]] = field(default_factory=list)
    completed: bool = False
    stopped: bool = False
    halted_reason: str | None = None
    last: BatchResult | None = None


async def run_until_complete(
    engine: ProcessingStep,
    config: StepConfig | dict[str, Any],
    *,
    stop: threading.Event | None = None,
    max_steps: int | None = None,
    max_failed_steps: int | None = 3,
    on_step: Callable[[BatchResult], None] | None = None,
) -> RunSummary:
    """Call ``run_step`` until the session completes or something halts it.

    The stop flag is checked before each step only; a batch that has started
    always runs to the end. ``max_failed_steps`` halts after that many
    consecutive steps in which every attempted image failed, e.g. during a
    provider outage or because the remaining images fail permanently.
    """
    summary = RunSummary()
    failed_streak = 0

    while True:
        if stop is not None and stop.is_set():
            logger.info("Stop requested; halting before the next batch")
            summary.stopped = True
            break
        if max_steps is not None and summary.steps >= max_steps:
            summary.halted_reason = f"Reached step limit ({max_steps})"
            break

        result = await engine.run_step(config)
        summary.steps += 1
        summary.last = result
        if on_step is not None:
            on_step(result)

        if result.error is not None:
            summary.halted_reason = result.error
            break

        summary.attempted += result.attempted
        summary.succeeded = result.succeeded
        summary.errors.extend(result.errors)

        if result.completed:
            summary.completed = True
            if result.attempted > 0:
                # Let the engine observe the empty pending set and close the session.
                final = await engine.run_step(config)
                summary.steps += 1
                summary.last = final
                summary.succeeded = final.succeeded if final.error is None else summary.succeeded
            break

        failed_streak = failed_streak + 1 if result.all_failed else 0
        if max_failed_steps is not None and failed_streak >= max_failed_steps:
            summary.halted_reason = (
                f"{failed_streak} consecutive batches failed completely; halting"
            )
            logger.warning(summary.halted_reason)
            break

    return summary


async def regenerate_all(
    engine: ProcessingStep,
    config: StepConfig | dict[str, Any],
    *,
    stop: threading.Event | None = None,
    max_steps: int | None = None,
    on_step: Callable[[BatchResult], None] | None = None,
) -> RunSummary:
    """Rewrite alt text for every image in the library, described or not.

    The image list is taken once up front, so images saved along the way are
    not visited twice. ``on_step`` sees progress relative to the whole run.
    The saved session is not touched.

    Raises ``LibraryError`` if the library cannot be listed.
    """
    summary = RunSummary()
    image_ids = engine.repository.all_ids()
    total = len(image_ids)
    logger.info("Regenerating alt text for %d image(s)", total)

    done = 0
    while True:
        if stop is not None and stop.is_set():
            logger.info("Stop requested; halting before the next batch")
            summary.stopped = True
            break
        if max_steps is not None and summary.steps >= max_steps:
            summary.halted_reason = f"Reached step limit ({max_steps})"
            break

        result = await engine.regenerate(config, image_ids[done:])
        summary.steps += 1
        if result.error is None:
            done += result.attempted
            result = replace(
                result,
                succeeded=summary.succeeded + result.batch_succeeded,
                session_total=total,
                processed=done,
                remaining=total - done,
                progress_percent=done / total * 100 if total else 100.0,
            )
        summary.last = result
        if on_step is not None:
            on_step(result)

        if result.error is not None:
            summary.halted_reason = result.error
            break

        summary.attempted += result.attempted
        summary.succeeded = result.succeeded
        summary.errors.extend(result.errors)
        if result.completed:
            summary.completed = True
            break

    return summary
