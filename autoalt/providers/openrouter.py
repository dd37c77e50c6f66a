"""OpenRouter provider — OpenAI-compatible chat completions API."""

from __future__ import annotations

from autoalt.providers.openai import OpenAIProvider


class OpenRouterProvider(OpenAIProvider):
    """Any OpenRouter-hosted vision model, addressed as ``vendor/model``."""

    default_model = "anthropic/claude-3.5-sonnet"
    _env_var = "OPENROUTER_API_KEY"
    _base_url = "https://openrouter.ai/api/v1"
    _label = "OpenRouter"

    @property
    def name(self) -> str:
        return "openrouter"
