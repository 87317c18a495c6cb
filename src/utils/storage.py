"""
Object storage collaborator.

Paths are namespaced by owner id as the first path segment
(``<owner_id>/<filename>``). LocalStorage keeps objects on disk under
``config.paths.storage_dir``; any backend with the same methods can be
injected instead.
"""

from __future__ import annotations

import time
from pathlib import Path
from typing import Optional, Protocol, runtime_checkable

from loguru import logger

try:
    from ..config import config
except ImportError:
    from src.config import config


class StorageError(Exception):
    """Raised when an object cannot be read, written or removed."""


@runtime_checkable
class StorageBackend(Protocol):
    def upload(self, path: str, data: bytes, content_type: str) -> None:
        ...

    def download(self, path: str) -> bytes:
        ...

    def create_signed_url(self, path: str, ttl_seconds: int) -> str:
        ...

    def remove(self, path: str) -> None:
        ...


def owner_prefix_matches(path: str, owner_id: str) -> bool:
    """
    True if ``path`` is ``<owner_id>/<something>`` with no traversal segments.
    """
    if not path or not owner_id:
        return False
    segments = path.split("/")
    if len(segments) < 2 or segments[0] != owner_id:
        return False
    return all(seg not in ("", ".", "..") for seg in segments[1:])


class LocalStorage:
    """Filesystem-backed storage for development and tests."""

    def __init__(self, root: Optional[Path | str] = None):
        self.root = Path(root) if root else config.paths.storage_dir
        self.root.mkdir(parents=True, exist_ok=True)

    def _resolve(self, path: str) -> Path:
        if ".." in path.split("/"):
            raise StorageError(f"Invalid storage path: {path}")
        return self.root / path

    def upload(self, path: str, data: bytes, content_type: str) -> None:
        target = self._resolve(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as e:
            raise StorageError(f"Upload failed for {path}: {e}") from e
        logger.debug(f"Stored {len(data)} bytes at {path} ({content_type})")

    def download(self, path: str) -> bytes:
        target = self._resolve(path)
        try:
            return target.read_bytes()
        except OSError as e:
            raise StorageError(f"Download failed for {path}: {e}") from e

    def create_signed_url(self, path: str, ttl_seconds: int) -> str:
        target = self._resolve(path)
        if not target.exists():
            raise StorageError(f"No object at {path}")
        expires = int(time.time()) + ttl_seconds
        return f"{target.resolve().as_uri()}?expires={expires}"

    def remove(self, path: str) -> None:
        target = self._resolve(path)
        try:
            target.unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(f"Remove failed for {path}: {e}") from e
