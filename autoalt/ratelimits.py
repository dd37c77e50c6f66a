"""Per provider/model request budgets.

Figures are the published entry-tier limits (Gemini free tier, OpenAI tier 1,
Anthropic tier 1, OpenRouter per-key default). Pacing is derived from the
requests-per-minute figure with a 25% margin, and the batch ceiling is the
number of paced calls that fit in one minute, capped at 50.
"""

from __future__ import annotations

import math

from autoalt.models import RateLimit

DEFAULT_BATCH_CEILING = 50

_SAFETY_MARGIN = 1.25


def derive_limit(
    rpm: int, *, rpd: int | None = None, tpm: int | None = None,
) -> RateLimit:
    """Build a RateLimit whose ceiling of paced calls fits inside one minute."""
    if rpm <= 0:
        raise ValueError(f"requests per minute must be positive, got {rpm}")
    delay = round(60.0 / rpm * _SAFETY_MARGIN, 2)
    if delay > 0:
        ceiling = max(1, min(DEFAULT_BATCH_CEILING, math.floor(60.0 / delay)))
    else:
        ceiling = DEFAULT_BATCH_CEILING
    return RateLimit(
        requests_per_minute=rpm,
        requests_per_day=rpd,
        tokens_per_minute=tpm,
        inter_call_delay_seconds=delay,
        max_batch_size=ceiling,
    )


_TABLE: dict[tuple[str, str], RateLimit] = {
    # Gemini free tier
    ("gemini", "gemini-2.0-flash"): derive_limit(15, rpd=1_500, tpm=1_000_000),
    ("gemini", "gemini-1.5-flash"): derive_limit(15, rpd=1_500, tpm=1_000_000),
    ("gemini", "gemini-1.5-flash-8b"): derive_limit(15, rpd=1_500, tpm=1_000_000),
    ("gemini", "gemini-1.5-pro"): derive_limit(2, rpd=50, tpm=32_000),
    # OpenAI tier 1
    ("openai", "gpt-4o"): derive_limit(500, tpm=30_000),
    ("openai", "gpt-4o-mini"): derive_limit(500, rpd=10_000, tpm=200_000),
    ("openai", "gpt-4-turbo"): derive_limit(500, tpm=30_000),
    # Anthropic tier 1
    ("claude", "claude-3-5-sonnet-20241022"): derive_limit(50, tpm=40_000),
    ("claude", "claude-3-5-haiku-20241022"): derive_limit(50, tpm=50_000),
    ("claude", "claude-3-opus-20240229"): derive_limit(50, tpm=20_000),
    # OpenRouter
    ("openrouter", "anthropic/claude-3.5-sonnet"): derive_limit(20),
    ("openrouter", "openai/gpt-4o"): derive_limit(20),
    ("openrouter", "openai/gpt-4o-mini"): derive_limit(20),
    ("openrouter", "google/gemini-pro-1.5"): derive_limit(20),
}

_PROVIDER_ALIASES = {"anthropic": "claude", "google": "gemini"}


class RateLimitPolicy:
    """Lookup of rate limits by provider and model.

    ``overrides`` entries take precedence over the built-in table.
    """

    def __init__(self, overrides: dict[tuple[str, str], RateLimit] | None = None) -> None:
        self._table = dict(_TABLE)
        if overrides:
            self._table.update(
                {(_normalize(p), m): limit for (p, m), limit in overrides.items()}
            )

    def limits_for(self, provider: str, model: str) -> RateLimit | None:
        return self._table.get((_normalize(provider), model.strip()))

    def entries(self) -> list[tuple[str, str, RateLimit]]:
        return [(p, m, limit) for (p, m), limit in self._table.items()]


def limits_for(provider: str, model: str) -> RateLimit | None:
    """Module-level lookup against the built-in table."""
    return _TABLE.get((_normalize(provider), model.strip()))


def _normalize(provider: str) -> str:
    key = provider.lower().strip()
    return _PROVIDER_ALIASES.get(key, key)
