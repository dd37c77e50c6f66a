"""Shared test fixtures."""

from __future__ import annotations

from pathlib import Path
from typing import Callable

import pytest

from autoalt.step import ProcessingStep
from autoalt.store import MemoryStore
from tests.utils.fakes import (
    PNG_BYTES,
    UNLISTED_MODEL,
    FakeRepository,
    ScriptedProvider,
    SleepRecorder,
)


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def sleeps() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def provider() -> ScriptedProvider:
    return ScriptedProvider()


@pytest.fixture
def make_engine(
    store: MemoryStore, sleeps: SleepRecorder,
) -> Callable[..., ProcessingStep]:
    """Factory building an engine over a fake repository and provider."""

    def _make(
        repository: FakeRepository,
        provider: ScriptedProvider,
        **kwargs: object,
    ) -> ProcessingStep:
        kwargs.setdefault("sleep", sleeps)
        return ProcessingStep(
            repository,
            kwargs.pop("store", store),  # type: ignore[arg-type]
            provider_factory=lambda name, **_kw: provider,
            **kwargs,  # type: ignore[arg-type]
        )

    return _make


@pytest.fixture
def step_config() -> dict:
    return {"provider": "gemini", "model": UNLISTED_MODEL, "batch_size": 10, "max_retries": 2}


@pytest.fixture
def library_dir(tmp_path: Path) -> Path:
    """A small image library on disk."""
    root = tmp_path / "library"
    (root / "2024").mkdir(parents=True)
    (root / ".cache").mkdir()
    for name in ("b.png", "a.jpg", "2024/c.webp", ".cache/hidden.png"):
        (root / name).write_bytes(PNG_BYTES)
    (root / "notes.txt").write_text("not an image", encoding="utf-8")
    return root


@pytest.fixture
def png_file(tmp_path: Path) -> Path:
    path = tmp_path / "photo.png"
    path.write_bytes(PNG_BYTES)
    return path
