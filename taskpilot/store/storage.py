"""
Key/value persistence for the Task State Store.

Each project owns exactly two keys: `ledger` (JSON document) and
`progress` (flat markdown string). Values are opaque strings here.
"""

from __future__ import annotations

import os
import tempfile
import threading
from pathlib import Path
from typing import Protocol

_FILENAMES = {"ledger": "ledger.json", "progress": "progress.md"}


class StateStorage(Protocol):
    def get(self, key: str) -> str | None: ...

    def put(self, key: str, value: str) -> None: ...


class MemoryStateStorage:
    """Process-local storage. Lost on exit."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._data.get(key)

    def put(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value


class FileStateStorage:
    """One directory per project; every put replaces the file atomically."""

    def __init__(self, root: Path, project_name: str):
        self.directory = root.expanduser() / project_name
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.directory / _FILENAMES.get(key, f"{key}.txt")

    def get(self, key: str) -> str | None:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def put(self, key: str, value: str) -> None:
        path = self._path(key)
        fd, tmp = tempfile.mkstemp(dir=self.directory, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(value)
            os.replace(tmp, path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
