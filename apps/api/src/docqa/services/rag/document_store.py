from __future__ import annotations

from pathlib import Path
from typing import Protocol


class FetchError(RuntimeError):
    pass


class DocumentStore(Protocol):
    def put(self, storage_path: str, data: bytes) -> None: ...

    def fetch(self, storage_path: str) -> bytes: ...


class LocalDocumentStore:
    """Raw document bytes kept under a root directory, addressed by relative storage paths."""

    def __init__(self, root_dir: Path) -> None:
        self._root_dir = root_dir

    def _resolve(self, storage_path: str) -> Path:
        root = self._root_dir.resolve()
        candidate = (root / storage_path).resolve()
        if not candidate.is_relative_to(root):
            raise FetchError(f"storage path escapes document root: {storage_path}")
        return candidate

    def put(self, storage_path: str, data: bytes) -> None:
        target = self._resolve(storage_path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)

    def fetch(self, storage_path: str) -> bytes:
        path = self._resolve(storage_path)
        try:
            return path.read_bytes()
        except OSError as exc:
            raise FetchError(f"document not available at {storage_path}: {exc}") from exc
