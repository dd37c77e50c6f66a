"""Base protocol and shared types for AI vision providers."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol, runtime_checkable

DEFAULT_PROMPT = (
    "You are an accessibility expert. Generate ONLY the alt text for this image - "
    "no explanations, no options, just the final alt text. Describe what is shown "
    "objectively. For people, describe only their actions, clothing, or position - "
    "never mention age, attractiveness, weight, or other physical attributes that "
    "could be considered judgmental. Keep it under 125 characters. Do not include "
    'phrases like "image of" or "picture of". Return only the alt text string, '
    "nothing else."
)

# Tiny prompt used by preflight checks; keeps the probe cheap.
PROBE_PROMPT = "Say OK"


@dataclass(frozen=True)
class ImageRef:
    """A prepared image representation ready to send to a provider."""

    image_id: str
    path: Path
    mime_type: str = "image/jpeg"

    def read_bytes(self) -> bytes:
        return self.path.read_bytes()


@dataclass
class AltTextResult:
    """Result returned by an AI provider for a single describe call."""

    alt_text: str = ""
    error: str | None = None
    usage: dict[str, int] = field(default_factory=dict)  # token counts, etc.

    @property
    def ok(self) -> bool:
        return self.error is None and bool(self.alt_text)


@runtime_checkable
class VisionProvider(Protocol):
    """Interface that every AI vision provider must implement.

    Providers live in ``autoalt/providers/`` — one file per provider.
    No provider-specific code should exist outside that directory.
    """

    @property
    def name(self) -> str:
        """Provider identifier (e.g. 'gemini', 'claude')."""
        ...

    async def describe(self, image: ImageRef, prompt: str, model: str) -> AltTextResult:
        """Describe a single image.

        On failure the result carries an ``error`` message rather than raising.
        """
        ...

    async def is_available(self) -> bool:
        """True when the provider is configured (API key present)."""
        ...

    async def preflight(self, model: str) -> str | None:
        """Quick connection test. Returns None if OK, or an error message."""
        ...


_WRAPPING = "\"'*`"


def clean_alt_text(text: str) -> str:
    """Normalize model output into a single-line alt text string.

    Models like to wrap answers in quotes or markdown emphasis; those are
    stripped along with newlines and repeated whitespace.
    """
    text = re.sub(r"\s+", " ", text).strip()
    text = text.strip(_WRAPPING).strip()
    return text


def read_image(image: ImageRef) -> tuple[bytes | None, str | None]:
    """Read image bytes, returning ``(None, error)`` when the file is missing."""
    try:
        return image.read_bytes(), None
    except FileNotFoundError:
        return None, f"Image file not found: {image.path}"
    except OSError as exc:
        return None, f"Failed to read image file: {exc}"
