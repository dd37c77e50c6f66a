"""OpenAI (GPT-4o) vision provider."""

from __future__ import annotations

import base64
import logging
import os

from autoalt.providers.base import PROBE_PROMPT, AltTextResult, ImageRef, read_image

logger = logging.getLogger(__name__)


class OpenAIProvider:
    """GPT-4o vision model provider via the OpenAI API."""

    default_model = "gpt-4o"
    _env_var = "OPENAI_API_KEY"
    _base_url: str | None = None
    _label = "OpenAI"

    def __init__(
        self,
        *,
        api_key: str | None = None,
        max_tokens: int = 50,
        timeout: float = 30.0,
        **_kwargs: object,
    ) -> None:
        self._api_key = api_key or os.environ.get(self._env_var, "")
        self._max_tokens = max_tokens
        self._timeout = timeout

    @property
    def name(self) -> str:
        return "openai"

    def _client(self):  # type: ignore[no-untyped-def]
        import openai

        return openai.AsyncOpenAI(
            api_key=self._api_key,
            base_url=self._base_url,
            timeout=self._timeout,
            max_retries=0,
        )

    async def describe(self, image: ImageRef, prompt: str, model: str) -> AltTextResult:
        if not self._api_key:
            return AltTextResult(error=f"{self._label} API key not configured ({self._env_var})")

        data, error = read_image(image)
        if data is None:
            return AltTextResult(error=error)

        try:
            client = self._client()
            img_b64 = base64.b64encode(data).decode()

            response = await client.chat.completions.create(
                model=model,
                max_tokens=self._max_tokens,
                messages=[
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": prompt},
                            {
                                "type": "image_url",
                                "image_url": {
                                    "url": f"data:{image.mime_type};base64,{img_b64}",
                                },
                            },
                        ],
                    },
                ],
            )

            if not response.choices:
                return AltTextResult(error=f"Unexpected response format from {self._label}")
            alt_text = (response.choices[0].message.content or "").strip()
            usage = {}
            if response.usage:
                usage = {
                    "prompt_tokens": response.usage.prompt_tokens,
                    "completion_tokens": response.usage.completion_tokens,
                }

            return AltTextResult(alt_text=alt_text, usage=usage)
        except Exception as exc:
            logger.error("%s generation failed: %s", self._label, exc)
            return AltTextResult(error=str(exc) or type(exc).__name__)

    async def preflight(self, model: str) -> str | None:
        if not self._api_key:
            return f"{self._label} API key not configured ({self._env_var})"
        try:
            client = self._client()
            await client.chat.completions.create(
                model=model,
                max_tokens=5,
                messages=[{"role": "user", "content": PROBE_PROMPT}],
            )
        except Exception as exc:
            return f"{self._label} connection failed: {exc}"
        return None

    async def is_available(self) -> bool:
        return bool(self._api_key)
