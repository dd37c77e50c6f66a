"""Image library backed by a directory and an alt text sidecar file.

The sidecar (``.alttext.yaml`` in the library root) is the single source of
truth for alt text. An image is pending while it has no entry or its entry
has an empty ``alt_text``. Image IDs are POSIX paths relative to the library
root, so they stay stable across runs and sort deterministically.
"""

from __future__ import annotations

import logging
import mimetypes
import os
import re
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Protocol, runtime_checkable

import yaml
from pydantic import BaseModel, Field, ValidationError

from autoalt.errors import LibraryError
from autoalt.models import ImageStats
from autoalt.providers.base import ImageRef

logger = logging.getLogger(__name__)

DEFAULT_EXTENSIONS = ("png", "jpg", "jpeg", "gif", "webp")
DEFAULT_SIDECAR_NAME = ".alttext.yaml"


@runtime_checkable
class ImageRepository(Protocol):
    """Where pending images come from and where alt text goes."""

    def all_ids(self) -> list[str]:
        """Every image, described or not, in stable ascending order."""
        ...

    def alt_text(self, image_id: str) -> str:
        ...

    def list_pending(self) -> list[str]:
        """Images lacking alt text, in stable ascending order."""
        ...

    def is_pending(self, image_id: str) -> bool:
        ...

    def set_alt_text(self, image_id: str, text: str) -> None:
        ...

    def image_ref(self, image_id: str) -> ImageRef:
        ...

    def stats(self) -> ImageStats:
        ...


class AltTextEntry(BaseModel):
    """A single image entry in the sidecar file."""

    id: str
    alt_text: str = ""
    updated: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class LibrarySidecar(BaseModel):
    """In-memory representation of the library sidecar file."""

    generated: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    images: list[AltTextEntry] = Field(default_factory=list)

    def get_entry(self, image_id: str) -> AltTextEntry | None:
        for entry in self.images:
            if entry.id == image_id:
                return entry
        return None

    def upsert(self, image_id: str, alt_text: str) -> AltTextEntry:
        entry = self.get_entry(image_id)
        if entry is None:
            entry = AltTextEntry(id=image_id, alt_text=alt_text)
            self.images.append(entry)
        else:
            entry.alt_text = alt_text
            entry.updated = datetime.now(timezone.utc)
        return entry

    def described_ids(self) -> set[str]:
        return {e.id for e in self.images if e.alt_text.strip()}


def sanitize_alt_text(text: str) -> str:
    """Single line, no markup, trimmed."""
    text = re.sub(r"<[^>]*>", "", text)
    return re.sub(r"\s+", " ", text).strip()


class LibraryRepository:
    """``ImageRepository`` over a directory tree of image files."""

    def __init__(
        self,
        root: Path,
        *,
        extensions: Iterable[str] = DEFAULT_EXTENSIONS,
        sidecar_name: str = DEFAULT_SIDECAR_NAME,
    ) -> None:
        self._root = Path(root)
        self._extensions = {e.lower().lstrip(".") for e in extensions}
        self._sidecar_path = self._root / sidecar_name
        self._lock = threading.Lock()

    @property
    def root(self) -> Path:
        return self._root

    @property
    def sidecar_path(self) -> Path:
        return self._sidecar_path

    def all_ids(self) -> list[str]:
        """Every image in the library, sorted by ID."""
        if not self._root.is_dir():
            raise LibraryError(f"Image library not found: {self._root}")
        ids = []
        for path in self._root.rglob("*"):
            if not path.is_file() or path.suffix.lower().lstrip(".") not in self._extensions:
                continue
            rel = path.relative_to(self._root)
            if any(part.startswith(".") for part in rel.parts):
                continue
            ids.append(rel.as_posix())
        return sorted(ids)

    def list_pending(self) -> list[str]:
        described = self.load_sidecar().described_ids()
        return [i for i in self.all_ids() if i not in described]

    def is_pending(self, image_id: str) -> bool:
        if not (self._root / image_id).is_file():
            return False
        return image_id not in self.load_sidecar().described_ids()

    def set_alt_text(self, image_id: str, text: str) -> None:
        text = sanitize_alt_text(text)
        if not text:
            raise ValueError(f"Refusing to store empty alt text for {image_id}")
        with self._lock:
            sidecar = self.load_sidecar()
            sidecar.upsert(image_id, text)
            self.save_sidecar(sidecar)
        logger.debug("Saved alt text for %s", image_id)

    def alt_text(self, image_id: str) -> str:
        entry = self.load_sidecar().get_entry(image_id)
        return entry.alt_text if entry else ""

    def image_ref(self, image_id: str) -> ImageRef:
        path = self._root / image_id
        mime_type, _ = mimetypes.guess_type(path.name)
        return ImageRef(image_id=image_id, path=path, mime_type=mime_type or "image/jpeg")

    def stats(self) -> ImageStats:
        ids = self.all_ids()
        described = self.load_sidecar().described_ids()
        return ImageStats(total=len(ids), with_alt=sum(1 for i in ids if i in described))

    def load_sidecar(self) -> LibrarySidecar:
        """Read the sidecar. Raises ``LibraryError`` if it cannot be parsed."""
        if not self._sidecar_path.is_file():
            return LibrarySidecar()
        try:
            raw = yaml.safe_load(self._sidecar_path.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as exc:
            raise LibraryError(f"Cannot read alt text file {self._sidecar_path}: {exc}") from exc
        if raw is None:
            return LibrarySidecar()
        try:
            return LibrarySidecar.model_validate(raw)
        except ValidationError as exc:
            raise LibraryError(
                f"Alt text file is malformed: {self._sidecar_path}\n{exc}"
            ) from exc

    def save_sidecar(self, sidecar: LibrarySidecar) -> None:
        data = sidecar.model_dump(mode="json")
        yaml_str = yaml.dump(
            data,
            default_flow_style=False,
            sort_keys=False,
            allow_unicode=True,
        )
        self._sidecar_path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self._sidecar_path.parent, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(yaml_str)
            os.replace(tmp, self._sidecar_path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
