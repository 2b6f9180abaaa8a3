"""Async key-value persistence port and its adapters.

``KeyValueStore`` is the only persistence capability the local replica and
the outbox depend on.  Two implementations ship:

* ``JsonFileStore`` -- one JSON file per key in a data directory.  Writes
  go to a temp file that is then ``os.replace()``-d over the target, so
  readers never see partial data.
* ``MemoryStore`` -- a dict, for ephemeral sessions and tests.
"""

from __future__ import annotations

import asyncio
import copy
import json
import os
import re
import tempfile
from pathlib import Path
from typing import Any, Protocol

from ..core.async_utils import run_sync

_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")


class KeyValueStore(Protocol):
    """Async get/set/remove over JSON-serialisable values."""

    async def get(self, key: str) -> Any | None:
        """Return the stored value, or ``None`` if the key is absent."""
        ...  # pragma: no cover

    async def set(self, key: str, value: Any) -> None:
        """Store *value* under *key*, replacing any previous value."""
        ...  # pragma: no cover

    async def remove(self, key: str) -> None:
        """Delete *key*.  No-op if absent."""
        ...  # pragma: no cover


class MemoryStore:
    """In-process store.  Values are deep-copied on the way in and out."""

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._data: dict[str, Any] = copy.deepcopy(initial or {})

    async def get(self, key: str) -> Any | None:
        return copy.deepcopy(self._data.get(key))

    async def set(self, key: str, value: Any) -> None:
        self._data[key] = copy.deepcopy(value)

    async def remove(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileStore:
    """Store each key as ``<data_dir>/<key>.json``.

    Args:
        data_dir: Directory for the files; created on first write.
    """

    def __init__(self, data_dir: Path) -> None:
        self._data_dir = Path(data_dir)
        self._lock = asyncio.Lock()

    @property
    def data_dir(self) -> Path:
        return self._data_dir

    async def get(self, key: str) -> Any | None:
        async with self._lock:
            return await run_sync(self._read, self._path(key))

    async def set(self, key: str, value: Any) -> None:
        async with self._lock:
            await run_sync(self._write, self._path(key), value)

    async def remove(self, key: str) -> None:
        async with self._lock:
            await run_sync(self._unlink, self._path(key))

    # ------------------------------------------------------------------
    # Blocking helpers (run in a worker thread)
    # ------------------------------------------------------------------

    def _path(self, key: str) -> Path:
        if not _KEY_PATTERN.match(key):
            raise ValueError(f"Invalid storage key: '{key}'")
        return self._data_dir / f"{key}.json"

    @staticmethod
    def _read(path: Path) -> Any | None:
        if not path.exists():
            return None
        with open(path, encoding="utf-8") as fh:
            return json.load(fh)

    def _write(self, path: Path, value: Any) -> None:
        self._data_dir.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=str(self._data_dir), suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(value, fh, indent=2)
            os.replace(tmp_path, path)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    @staticmethod
    def _unlink(path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            pass
