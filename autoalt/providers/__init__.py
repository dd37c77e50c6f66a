"""AI vision providers for alt text generation.

Provider registry — use ``get_provider()`` to obtain a ``VisionProvider``
by name, and ``list_available()`` to check which providers are configured.
"""

from __future__ import annotations

import asyncio
import importlib
import logging
from typing import Any

from autoalt.providers.base import VisionProvider

logger = logging.getLogger(__name__)

# Map of provider name → module path, class name
_PROVIDER_MAP: dict[str, tuple[str, str]] = {
    "gemini": ("autoalt.providers.gemini", "GeminiProvider"),
    "openai": ("autoalt.providers.openai", "OpenAIProvider"),
    "claude": ("autoalt.providers.claude", "ClaudeProvider"),
    "openrouter": ("autoalt.providers.openrouter", "OpenRouterProvider"),
}

_ALIASES: dict[str, str] = {
    "anthropic": "claude",
    "google": "gemini",
}

# Models offered per provider, first entry is the default.
AVAILABLE_MODELS: dict[str, dict[str, str]] = {
    "gemini": {
        "gemini-2.0-flash": "Gemini 2.0 Flash (Recommended - Fast & Efficient)",
        "gemini-1.5-flash": "Gemini 1.5 Flash",
        "gemini-1.5-flash-8b": "Gemini 1.5 Flash 8B (Smallest)",
        "gemini-1.5-pro": "Gemini 1.5 Pro (Most Capable)",
    },
    "openai": {
        "gpt-4o": "GPT-4o (Latest - Vision Capable)",
        "gpt-4o-mini": "GPT-4o Mini (Cost Effective)",
        "gpt-4-turbo": "GPT-4 Turbo (Most Capable)",
    },
    "claude": {
        "claude-3-5-sonnet-20241022": "Claude 3.5 Sonnet (Latest)",
        "claude-3-5-haiku-20241022": "Claude 3.5 Haiku (Fast)",
        "claude-3-opus-20240229": "Claude 3 Opus (Most Capable)",
    },
    "openrouter": {
        "anthropic/claude-3.5-sonnet": "Claude 3.5 Sonnet via OpenRouter",
        "openai/gpt-4o": "GPT-4o via OpenRouter",
        "openai/gpt-4o-mini": "GPT-4o Mini via OpenRouter",
        "google/gemini-pro-1.5": "Gemini Pro 1.5 via OpenRouter",
    },
}

API_KEY_ENV: dict[str, str] = {
    "gemini": "GEMINI_API_KEY",
    "openai": "OPENAI_API_KEY",
    "claude": "ANTHROPIC_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
}


def canonical_name(name: str) -> str:
    """Normalize a provider name, resolving aliases.

    Raises ``ValueError`` if the provider name is unknown.
    """
    key = name.lower().strip()
    key = _ALIASES.get(key, key)
    if key not in _PROVIDER_MAP:
        raise ValueError(
            f"Unknown provider: {name!r}. Available: {', '.join(_PROVIDER_MAP)}"
        )
    return key


def default_model(name: str) -> str:
    """Return the default model for a provider."""
    return next(iter(AVAILABLE_MODELS[canonical_name(name)]))


def get_provider(name: str, *, api_key: str | None = None, **kwargs: Any) -> VisionProvider:
    """Create a provider instance by name.

    Raises ``ValueError`` if the provider name is unknown.
    Raises ``ImportError`` if the required SDK is not installed.
    """
    module_path, class_name = _PROVIDER_MAP[canonical_name(name)]
    module = importlib.import_module(module_path)
    cls = getattr(module, class_name)

    init_kwargs: dict[str, Any] = dict(kwargs)
    if api_key:
        init_kwargs["api_key"] = api_key

    return cls(**init_kwargs)


def list_available() -> list[tuple[str, bool]]:
    """Return (provider_name, is_available) for all known providers.

    Providers whose SDK is not installed are reported as unavailable.
    """
    results: list[tuple[str, bool]] = []
    for name in _PROVIDER_MAP:
        try:
            provider = get_provider(name)
            available = _run_async(provider.is_available())
        except Exception as exc:
            logger.debug("Provider %s unavailable: %s", name, exc)
            available = False
        results.append((name, available))
    return results


def _run_async(coro):  # type: ignore[no-untyped-def]
    """Run a coroutine, handling the case where an event loop is already running."""
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None

    if loop and loop.is_running():
        # We're inside an async context (e.g. FastAPI); run in a new thread
        import concurrent.futures
        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            return pool.submit(asyncio.run, coro).result(timeout=10)
    else:
        return asyncio.run(coro)
