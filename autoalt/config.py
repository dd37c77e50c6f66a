"""Pydantic configuration model with YAML loading."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from autoalt.errors import ConfigurationError
from autoalt.providers.base import DEFAULT_PROMPT

_DEFAULT_CONFIG_NAME = "autoalt.yaml"

ProviderName = Literal["gemini", "openai", "claude", "openrouter"]


class AIConfig(BaseModel):
    """AI provider settings."""

    provider: ProviderName = "gemini"
    model: str = ""
    api_key: str = ""  # empty: read the provider's env var
    prompt: str = ""  # empty: built-in accessibility prompt
    max_tokens: int = Field(50, ge=1)
    timeout: float = Field(30.0, gt=0)

    @field_validator("provider", mode="before")
    @classmethod
    def _alias_provider(cls, value: Any) -> Any:
        if isinstance(value, str) and value.lower().strip() == "anthropic":
            return "claude"
        return value


class BatchConfig(BaseModel):
    """Batch sizing, retry and timeout settings."""

    batch_size: int = Field(10, ge=1)
    max_retries: int = Field(2, ge=0)
    retry_backoff: float = Field(1.0, ge=0)
    default_ceiling: int = Field(50, ge=1)
    call_timeout: float = Field(60.0, gt=0)


class SessionConfig(BaseModel):
    """Run-state persistence settings."""

    state_file: Path = Path(".autoalt/state.yaml")
    ttl_seconds: int = Field(3600, ge=1)
    namespace: str = "autoalt"
    hourly_quota: int = Field(30, ge=1)
    debug_log: bool = False


class LibraryConfig(BaseModel):
    """Where the images live."""

    path: Path = Path(".")
    extensions: list[str] = Field(default_factory=lambda: ["png", "jpg", "jpeg", "gif", "webp"])
    sidecar_name: str = ".alttext.yaml"


class StepConfig(BaseModel):
    """Settings for a single processing step."""

    provider: str = "gemini"
    model: str = ""
    prompt: str = ""
    batch_size: int = Field(10, ge=1)
    max_retries: int = Field(2, ge=0)
    api_key: str = ""

    @property
    def effective_prompt(self) -> str:
        return self.prompt.strip() or DEFAULT_PROMPT

    @classmethod
    def parse(cls, raw: StepConfig | dict[str, Any]) -> StepConfig:
        """Validate *raw*, raising ``ConfigurationError`` on bad input."""
        if isinstance(raw, cls):
            return raw
        try:
            return cls.model_validate(raw)
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid step configuration: {exc}") from exc


class AutoAltConfig(BaseModel):
    """Top-level configuration for autoalt."""

    ai: AIConfig = Field(default_factory=AIConfig)
    batch: BatchConfig = Field(default_factory=BatchConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    library: LibraryConfig = Field(default_factory=LibraryConfig)

    def step_config(self, **overrides: Any) -> StepConfig:
        """Build the per-step config, letting non-None *overrides* win."""
        values: dict[str, Any] = {
            "provider": self.ai.provider,
            "model": self.ai.model,
            "prompt": self.ai.prompt,
            "api_key": self.ai.api_key,
            "batch_size": self.batch.batch_size,
            "max_retries": self.batch.max_retries,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return StepConfig.parse(values)

    @classmethod
    def load(cls, path: Path | None = None) -> AutoAltConfig:
        """Load config from a YAML file.

        Search order when *path* is None:
          1. ./autoalt.yaml
          2. ~/.config/autoalt/autoalt.yaml

        Returns default config if no file is found.
        """
        if path is not None:
            return cls._from_yaml(path)

        candidates = [
            Path.cwd() / _DEFAULT_CONFIG_NAME,
            Path.home() / ".config" / "autoalt" / _DEFAULT_CONFIG_NAME,
        ]
        for candidate in candidates:
            if candidate.is_file():
                return cls._from_yaml(candidate)

        return cls()

    @classmethod
    def _from_yaml(cls, path: Path) -> AutoAltConfig:
        raw: dict[str, Any] = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        try:
            return cls.model_validate(raw)
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid config file {path}: {exc}") from exc
