"""Google Gemini vision provider — uses REST API directly (no SDK install needed)."""

from __future__ import annotations

import base64
import json
import logging
import os

import httpx

from autoalt.providers.base import PROBE_PROMPT, AltTextResult, ImageRef, read_image

logger = logging.getLogger(__name__)

_API_BASE = "https://generativelanguage.googleapis.com/v1beta/models"

_NO_KEY = (
    "No API key. Set GEMINI_API_KEY or pass --api-key. "
    "Get a free key at https://aistudio.google.com/apikey"
)


class GeminiProvider:
    """Google Gemini vision model provider (free tier, no SDK required)."""

    default_model = "gemini-2.0-flash"

    def __init__(
        self,
        *,
        api_key: str | None = None,
        max_tokens: int = 50,
        timeout: float = 30.0,
        **_kwargs: object,
    ) -> None:
        self._api_key = (
            api_key
            or os.environ.get("GEMINI_API_KEY", "")
            or os.environ.get("GOOGLE_API_KEY", "")
        )
        self._max_tokens = max_tokens
        self._timeout = timeout
        self._client: httpx.AsyncClient | None = None

    def _get_client(self) -> httpx.AsyncClient:
        """Return a shared httpx client (connection pooling)."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    @property
    def name(self) -> str:
        return "gemini"

    async def describe(self, image: ImageRef, prompt: str, model: str) -> AltTextResult:
        if not self._api_key:
            return AltTextResult(error=_NO_KEY)

        data, error = read_image(image)
        if data is None:
            return AltTextResult(error=error)

        payload = {
            "contents": [
                {
                    "parts": [
                        {"text": prompt},
                        {
                            "inline_data": {
                                "mime_type": image.mime_type,
                                "data": base64.b64encode(data).decode(),
                            }
                        },
                    ]
                }
            ],
            "generationConfig": {
                "maxOutputTokens": self._max_tokens,
                "temperature": 0.1,
            },
        }

        try:
            resp = await self._post(model, payload)
            resp.raise_for_status()
            body = resp.json()
        except httpx.HTTPStatusError as exc:
            message = _error_message(exc.response)
            logger.error("Gemini API error (%s): %s", exc.response.status_code, message)
            return AltTextResult(error=f"Gemini API error {exc.response.status_code}: {message}")
        except Exception as exc:
            logger.error("Gemini generation failed: %s", exc)
            return AltTextResult(error=str(exc) or type(exc).__name__)

        candidates = body.get("candidates", [])
        if not candidates:
            return AltTextResult(error="Gemini returned no candidates.")

        parts = candidates[0].get("content", {}).get("parts", [])
        alt_text = parts[0].get("text", "").strip() if parts else ""
        if not alt_text:
            return AltTextResult(error="Unexpected response format from Gemini")

        usage = {}
        usage_meta = body.get("usageMetadata", {})
        if usage_meta:
            usage = {
                "prompt_tokens": usage_meta.get("promptTokenCount", 0),
                "completion_tokens": usage_meta.get("candidatesTokenCount", 0),
            }
        return AltTextResult(alt_text=alt_text, usage=usage)

    async def preflight(self, model: str) -> str | None:
        """Quick API check — returns None if OK, or an error message.

        Sends a tiny text-only request to verify the key works and
        the rate limit isn't exhausted before committing to a batch.
        """
        if not self._api_key:
            return _NO_KEY

        payload = {
            "contents": [{"parts": [{"text": PROBE_PROMPT}]}],
            "generationConfig": {"maxOutputTokens": 5},
        }
        try:
            resp = await self._post(model, payload)
        except Exception as exc:
            return f"Cannot reach Gemini API: {exc}"

        if resp.status_code == 429:
            return f"Gemini rate limit reached. {_friendly_wait_message(resp)}"
        if resp.status_code == 403:
            return "API key rejected (403 Forbidden). Check your key at https://aistudio.google.com/apikey"
        if resp.status_code != 200:
            return f"Gemini API error {resp.status_code}: {_error_message(resp)}"
        return None

    async def is_available(self) -> bool:
        return bool(self._api_key)

    async def _post(self, model: str, payload: dict) -> httpx.Response:
        url = f"{_API_BASE}/{model}:generateContent"
        # Serialize to bytes so httpx sends Content-Length (Google rejects chunked)
        body = json.dumps(payload).encode("utf-8")
        headers = {
            "Content-Type": "application/json",
            "Content-Length": str(len(body)),
            "x-goog-api-key": self._api_key,
        }
        return await self._get_client().post(url, content=body, headers=headers)


def _error_message(resp: httpx.Response) -> str:
    try:
        return resp.json().get("error", {}).get("message") or resp.text
    except Exception:
        return resp.text or "Unknown error"


def _friendly_wait_message(resp: httpx.Response) -> str:
    """Try to extract a human-readable wait time from a 429 response."""
    try:
        data = resp.json()
        details = data.get("error", {}).get("details", [])
        for d in details:
            if "retryDelay" in d:
                secs = float(d["retryDelay"].rstrip("s"))
                if secs > 60:
                    return f"Try again in about {int(secs // 60)} minute(s)."
                return f"Try again in about {int(secs)} seconds."
    except Exception:
        pass
    return "Try again in a minute or two."
