"""Processing step: the single entry point that advances a session by one batch.

Each call:

1. Re-queries the pending images (never trusts a stored offset).
2. Starts or resumes the session.
3. Ends the session if nothing is pending.
4. Plans a batch from the front of the pending list.
5. Describes each image with retry, saving successes and collecting errors,
   pausing between items according to the provider's rate limit.
6. Records successes and reports progress.

Failed images keep their missing alt text, so they come back in the next
step's query without any extra bookkeeping. ``regenerate`` runs steps 4 and 5
over a caller-supplied list instead, overwriting existing alt text.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Callable, Coroutine, Sequence

from autoalt.config import AutoAltConfig, StepConfig
from autoalt.errors import ConfigurationError, LibraryError, StoreError
from autoalt.library import ImageRepository, LibraryRepository
from autoalt.models import BatchResult, Failure, ImageStats, PreviewItem, SessionStatus
from autoalt.planner import BatchPlanner
from autoalt.providers import canonical_name, default_model, get_provider
from autoalt.providers.base import VisionProvider
from autoalt.ratelimits import DEFAULT_BATCH_CEILING, RateLimitPolicy
from autoalt.retry import DEFAULT_BACKOFF, DEFAULT_CALL_TIMEOUT, RetryingDescriber, Sleep
from autoalt.session import DEFAULT_NAMESPACE, DEFAULT_TTL, SessionTracker
from autoalt.store import FileStore, RunStateStore

logger = logging.getLogger(__name__)

ProviderFactory = Callable[..., VisionProvider]

PREVIEW_COUNT = 5


class ProcessingStep:
    """Composes planner, describer and session tracker into one bounded step."""

    def __init__(
        self,
        repository: ImageRepository,
        store: RunStateStore,
        *,
        provider_factory: ProviderFactory = get_provider,
        provider_options: dict[str, Any] | None = None,
        policy: RateLimitPolicy | None = None,
        default_ceiling: int = DEFAULT_BATCH_CEILING,
        namespace: str = DEFAULT_NAMESPACE,
        session_ttl: float | None = DEFAULT_TTL,
        retry_backoff: float = DEFAULT_BACKOFF,
        call_timeout: float = DEFAULT_CALL_TIMEOUT,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.repository = repository
        self.store = store
        self.tracker = SessionTracker(store, namespace=namespace, ttl=session_ttl)
        self.planner = BatchPlanner(default_ceiling)
        self.policy = policy or RateLimitPolicy()
        self._provider_factory = provider_factory
        self._provider_options = dict(provider_options or {})
        self._retry_backoff = retry_backoff
        self._call_timeout = call_timeout
        self._sleep = sleep
        self._lock = asyncio.Lock()

    @classmethod
    def from_config(cls, config: AutoAltConfig, *, base_dir: Path | None = None) -> ProcessingStep:
        """Build an engine over the configured library and state file."""
        base = base_dir or Path.cwd()
        library_path = config.library.path
        if not library_path.is_absolute():
            library_path = base / library_path
        state_file = config.session.state_file
        if not state_file.is_absolute():
            state_file = base / state_file

        return cls(
            LibraryRepository(
                library_path,
                extensions=config.library.extensions,
                sidecar_name=config.library.sidecar_name,
            ),
            FileStore(state_file),
            provider_options={"max_tokens": config.ai.max_tokens, "timeout": config.ai.timeout},
            default_ceiling=config.batch.default_ceiling,
            namespace=config.session.namespace,
            session_ttl=config.session.ttl_seconds,
            retry_backoff=config.batch.retry_backoff,
            call_timeout=config.batch.call_timeout,
        )

    # ── Entry points ──────────────────────────────────────────────────────

    async def run_step(self, config: StepConfig | dict[str, Any]) -> BatchResult:
        """Process at most one batch. Never raises; failures come back in ``error``."""
        return await self._guarded(self._run(config))

    async def regenerate(
        self, config: StepConfig | dict[str, Any], image_ids: Sequence[str],
    ) -> BatchResult:
        """Describe the next batch from *image_ids* and overwrite its alt text.

        Images are processed whether or not they already have alt text, and
        the session counters are left alone. The caller owns the list and
        drops the ``attempted`` head before the next call. Never raises.
        """
        return await self._guarded(self._regenerate(config, list(image_ids)))

    def check_session(self) -> SessionStatus:
        """Resumability check for callers deciding between resume and start fresh."""
        return self.tracker.check_resumable(len(self.repository.list_pending()))

    def start_fresh_session(self) -> None:
        """Forget any stored session so the next step records a new total."""
        self.tracker.end_session()

    def stats(self) -> ImageStats:
        return self.repository.stats()

    async def preview(
        self, config: StepConfig | dict[str, Any], count: int = PREVIEW_COUNT,
    ) -> list[PreviewItem]:
        """Draft alt text for the first *count* pending images without saving.

        Raises ``ConfigurationError`` for an unusable provider setup.
        """
        step, provider_name, provider, model = await self._resolve(config)
        pending = self.repository.list_pending()[: max(0, count)]
        limits = self.policy.limits_for(provider_name, model)
        _, delay = self.planner.plan_batch(pending, len(pending), limits)
        describer = self._describer(provider)

        items: list[PreviewItem] = []
        for index, image_id in enumerate(pending):
            outcome = await describer.describe_with_retry(
                self.repository.image_ref(image_id), step.effective_prompt, model, step.max_retries,
            )
            if isinstance(outcome, Failure):
                items.append(PreviewItem(image_id, error=outcome.reason, attempts=outcome.attempts))
            else:
                items.append(PreviewItem(image_id, alt_text=outcome.text, attempts=outcome.attempts))
            if delay > 0 and self.planner.should_pause_after(index, len(pending)):
                await self._sleep(delay)
        return items

    async def test_connection(self, config: StepConfig | dict[str, Any]) -> str | None:
        """Provider preflight. Returns None when the API answers, else a message."""
        try:
            _, _, provider, model = await self._resolve(config)
        except ConfigurationError as exc:
            return str(exc)
        return await provider.preflight(model)

    # ── Internals ─────────────────────────────────────────────────────────

    async def _guarded(self, work: Coroutine[Any, Any, BatchResult]) -> BatchResult:
        """One step at a time per engine; exceptions become ``BatchResult.error``."""
        if self._lock.locked():
            work.close()
            return BatchResult(error="A processing step is already running for this session.")

        async with self._lock:
            try:
                return await work
            except (ConfigurationError, StoreError, LibraryError) as exc:
                logger.error("Step aborted: %s", exc)
                return BatchResult(error=str(exc))
            except Exception as exc:
                logger.error("Step failed: %s", exc, exc_info=True)
                return BatchResult(error=f"Step failed: {exc}")

    async def _run(self, config: StepConfig | dict[str, Any]) -> BatchResult:
        step, provider_name, provider, model = await self._resolve(config)

        pending = self.repository.list_pending()
        total_remaining = len(pending)
        session_total = self.tracker.start_or_resume(total_remaining)
        logger.info("Found %d image(s) without alt text (session total %d)",
                    total_remaining, session_total)

        if total_remaining == 0:
            cumulative = self.tracker.cumulative_success()
            self.tracker.end_session()
            logger.info("Processing complete! %d alt tag(s) generated", cumulative)
            return BatchResult(
                completed=True,
                progress_percent=100.0,
                succeeded=cumulative,
                session_total=session_total,
                processed=session_total,
            )

        limits = self.policy.limits_for(provider_name, model)
        batch, delay = self.planner.plan_batch(pending, step.batch_size, limits)
        if limits is None:
            logger.debug("No rate limit known for %s/%s; using default ceiling", provider_name, model)
        logger.info("Processing batch of %d with %s/%s (%.2fs between calls)",
                    len(batch), provider_name, model, delay)

        batch_success, errors = await self._process_batch(provider, step, model, batch, delay)

        cumulative = self.tracker.record_success(batch_success)
        estimated_remaining = total_remaining - batch_success
        processed, percent = self.tracker.progress(session_total, estimated_remaining, cumulative)

        if errors and batch_success == 0:
            logger.warning("Every image in the batch failed (%d error(s))", len(errors))

        return BatchResult(
            attempted=len(batch),
            succeeded=cumulative,
            errors=errors,
            completed=estimated_remaining == 0,
            progress_percent=percent,
            batch_succeeded=batch_success,
            session_total=session_total,
            processed=processed,
            remaining=estimated_remaining,
        )

    async def _regenerate(
        self, config: StepConfig | dict[str, Any], image_ids: list[str],
    ) -> BatchResult:
        step, provider_name, provider, model = await self._resolve(config)
        if not image_ids:
            return BatchResult(completed=True, progress_percent=100.0)

        limits = self.policy.limits_for(provider_name, model)
        batch, delay = self.planner.plan_batch(image_ids, step.batch_size, limits)
        logger.info("Regenerating alt text for %d image(s) with %s/%s (%.2fs between calls)",
                    len(batch), provider_name, model, delay)

        batch_success, errors = await self._process_batch(provider, step, model, batch, delay)
        remaining = len(image_ids) - len(batch)
        return BatchResult(
            attempted=len(batch),
            succeeded=batch_success,
            errors=errors,
            completed=remaining == 0,
            progress_percent=len(batch) / len(image_ids) * 100,
            batch_succeeded=batch_success,
            session_total=len(image_ids),
            processed=len(batch),
            remaining=remaining,
        )

    async def _process_batch(
        self,
        provider: VisionProvider,
        step: StepConfig,
        model: str,
        batch: list[str],
        delay: float,
    ) -> tuple[int, list[tuple[str, str]]]:
        describer = self._describer(provider)
        batch_success = 0
        errors: list[tuple[str, str]] = []

        for index, image_id in enumerate(batch):
            error = await self._process_one(describer, step, model, image_id)
            if error is None:
                batch_success += 1
            else:
                errors.append((image_id, error))
            if delay > 0 and self.planner.should_pause_after(index, len(batch)):
                await self._sleep(delay)
        return batch_success, errors

    async def _process_one(
        self, describer: RetryingDescriber, step: StepConfig, model: str, image_id: str,
    ) -> str | None:
        """Describe and save one image. Returns an error message or None."""
        logger.debug("Processing image %s", image_id)
        try:
            image = self.repository.image_ref(image_id)
        except Exception as exc:
            return f"Failed to resolve image: {exc}"

        outcome = await describer.describe_with_retry(
            image, step.effective_prompt, model, step.max_retries,
        )
        if isinstance(outcome, Failure):
            return outcome.reason

        try:
            self.repository.set_alt_text(image_id, outcome.text)
        except Exception as exc:
            logger.error("Saving alt text for %s failed: %s", image_id, exc)
            return f"Failed to save alt text: {exc}"
        logger.debug("Success: %s -> %s", image_id, outcome.text)
        return None

    async def _resolve(
        self, config: StepConfig | dict[str, Any],
    ) -> tuple[StepConfig, str, VisionProvider, str]:
        step = StepConfig.parse(config)
        try:
            name = canonical_name(step.provider)
            provider = self._provider_factory(
                name, api_key=step.api_key or None, **self._provider_options,
            )
        except (ValueError, ImportError) as exc:
            raise ConfigurationError(str(exc)) from exc

        if not await provider.is_available():
            raise ConfigurationError(f"{name} API key not configured")

        model = step.model.strip() or default_model(name)
        return step, name, provider, model

    def _describer(self, provider: VisionProvider) -> RetryingDescriber:
        return RetryingDescriber(
            provider,
            backoff=self._retry_backoff,
            call_timeout=self._call_timeout,
            sleep=self._sleep,
        )
