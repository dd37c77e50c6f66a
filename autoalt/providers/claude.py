"""Anthropic (Claude) vision provider."""

from __future__ import annotations

import base64
import logging
import os

from autoalt.providers.base import PROBE_PROMPT, AltTextResult, ImageRef, read_image

logger = logging.getLogger(__name__)


class ClaudeProvider:
    """Claude vision model provider via the Anthropic API."""

    default_model = "claude-3-5-sonnet-20241022"

    def __init__(
        self,
        *,
        api_key: str | None = None,
        max_tokens: int = 50,
        timeout: float = 30.0,
        **_kwargs: object,
    ) -> None:
        self._api_key = api_key or os.environ.get("ANTHROPIC_API_KEY", "")
        self._max_tokens = max_tokens
        self._timeout = timeout

    @property
    def name(self) -> str:
        return "claude"

    def _client(self):  # type: ignore[no-untyped-def]
        import anthropic

        return anthropic.AsyncAnthropic(
            api_key=self._api_key, timeout=self._timeout, max_retries=0,
        )

    async def describe(self, image: ImageRef, prompt: str, model: str) -> AltTextResult:
        if not self._api_key:
            return AltTextResult(error="Claude API key not configured (ANTHROPIC_API_KEY)")

        data, error = read_image(image)
        if data is None:
            return AltTextResult(error=error)

        try:
            client = self._client()
            message = await client.messages.create(
                model=model,
                max_tokens=self._max_tokens,
                messages=[{
                    "role": "user",
                    "content": [
                        {
                            "type": "image",
                            "source": {
                                "type": "base64",
                                "media_type": image.mime_type,
                                "data": base64.b64encode(data).decode(),
                            },
                        },
                        {"type": "text", "text": prompt},
                    ],
                }],
            )

            if not message.content:
                return AltTextResult(error="Claude returned empty response")
            first_block = message.content[0]
            if not hasattr(first_block, "text"):
                return AltTextResult(error="Unexpected response format from Claude")
            usage = {}
            if message.usage:
                usage = {
                    "input_tokens": message.usage.input_tokens,
                    "output_tokens": message.usage.output_tokens,
                }

            return AltTextResult(alt_text=first_block.text.strip(), usage=usage)
        except Exception as exc:
            logger.error("Claude generation failed: %s", exc)
            return AltTextResult(error=str(exc) or type(exc).__name__)

    async def preflight(self, model: str) -> str | None:
        if not self._api_key:
            return "Claude API key not configured (ANTHROPIC_API_KEY)"
        try:
            await self._client().messages.create(
                model=model,
                max_tokens=5,
                messages=[{"role": "user", "content": PROBE_PROMPT}],
            )
        except Exception as exc:
            return f"Claude connection failed: {exc}"
        return None

    async def is_available(self) -> bool:
        return bool(self._api_key)
