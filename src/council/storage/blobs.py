"""
Blob storage with a pluggable backend interface.

Paths are relative, ``/``-separated keys. Writes are atomic: content lands in
a temporary sibling file and is renamed into place, so a crash never leaves a
half-written record behind.
"""

import json
import os
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..observability.logging import get_logger

log = get_logger("council.storage")


@dataclass
class BlobRef:
    """Reference to a stored blob."""

    uri: str
    backend: str
    size_bytes: int | None = None
    content_type: str | None = None


class BlobStore(ABC):
    """Abstract interface for blob storage."""

    @abstractmethod
    def save_text(self, relpath: str, text: str) -> BlobRef:
        """Write text, replacing any previous content atomically."""

    @abstractmethod
    def create_text(self, relpath: str, text: str) -> BlobRef:
        """Write text only if nothing exists at ``relpath``; raise FileExistsError otherwise."""

    @abstractmethod
    def read_text(self, relpath: str) -> str:
        """Read text; raise FileNotFoundError when missing."""

    @abstractmethod
    def exists(self, relpath: str) -> bool: ...

    @abstractmethod
    def list_paths(self, prefix: str = "") -> list[str]:
        """List blob paths under ``prefix`` in sorted order."""

    def save_json(self, relpath: str, obj: Any) -> BlobRef:
        ref = self.save_text(relpath, json.dumps(obj, indent=2, sort_keys=True, default=str))
        ref.content_type = "application/json"
        return ref

    def create_json(self, relpath: str, obj: Any) -> BlobRef:
        ref = self.create_text(relpath, json.dumps(obj, indent=2, sort_keys=True, default=str))
        ref.content_type = "application/json"
        return ref

    def read_json(self, relpath: str) -> Any:
        return json.loads(self.read_text(relpath))


class LocalStore(BlobStore):
    """Filesystem blob storage."""

    def __init__(self, root: Path):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        log.info("Local blob store initialized", root=str(self.root))

    def _path(self, relpath: str) -> Path:
        path = (self.root / relpath).resolve()
        if not path.is_relative_to(self.root.resolve()):
            raise ValueError(f"Path escapes store root: {relpath}")
        return path

    def _ref(self, path: Path, size: int) -> BlobRef:
        return BlobRef(
            uri=f"file://{path}", backend="local", size_bytes=size, content_type="text/plain"
        )

    def save_text(self, relpath: str, text: str) -> BlobRef:
        path = self._path(relpath)
        path.parent.mkdir(parents=True, exist_ok=True)
        data = text.encode("utf-8")

        fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, path)
        except BaseException:
            Path(tmp_path).unlink(missing_ok=True)
            raise

        log.debug("Saved blob", path=relpath, size=len(data))
        return self._ref(path, len(data))

    def create_text(self, relpath: str, text: str) -> BlobRef:
        path = self._path(relpath)
        path.parent.mkdir(parents=True, exist_ok=True)
        data = text.encode("utf-8")

        # Hard-link a fully written temp file into place: the link fails if
        # the target exists, and readers never observe a partial file.
        fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
                handle.flush()
                os.fsync(handle.fileno())
            os.link(tmp_path, path)
        finally:
            Path(tmp_path).unlink(missing_ok=True)

        log.debug("Created blob", path=relpath, size=len(data))
        return self._ref(path, len(data))

    def read_text(self, relpath: str) -> str:
        path = self._path(relpath)
        if not path.is_file():
            raise FileNotFoundError(f"Blob not found: {relpath}")
        return path.read_text(encoding="utf-8")

    def exists(self, relpath: str) -> bool:
        return self._path(relpath).is_file()

    def list_paths(self, prefix: str = "") -> list[str]:
        base = self._path(prefix) if prefix else self.root.resolve()
        if not base.exists():
            return []
        root = self.root.resolve()
        return sorted(
            str(p.relative_to(root).as_posix())
            for p in base.rglob("*")
            if p.is_file() and not p.name.startswith(".")
        )
