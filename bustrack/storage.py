"""Persistent key-value store abstraction.

Every stateful component in bustrack persists through a flat, string-valued
key-value store with an async interface (the device storage of the mobile
client).  Values are JSON documents produced by :mod:`bustrack.records`.

Two implementations live here:

- :class:`MemoryStore`: a plain dict, used in tests and for throwaway state.
- :class:`JsonFileStore`: a single JSON document on disk, rewritten
  atomically on every mutation so it survives process restarts.

A SQLAlchemy-backed store for the HTTP service lives in
``backend.api.services.db_kv_store``.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Iterable
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Raised when the underlying store cannot read or write a key."""


class KeyValueStore(Protocol):
    """Async string key-value store."""

    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str) -> None: ...

    async def remove(self, key: str) -> None: ...

    async def keys(self) -> list[str]: ...

    async def multi_remove(self, keys: Iterable[str]) -> None: ...


class MemoryStore:
    """Dict-backed store. State lives only as long as the instance."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._data: dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> str | None:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value

    async def remove(self, key: str) -> None:
        self._data.pop(key, None)

    async def keys(self) -> list[str]:
        return list(self._data)

    async def multi_remove(self, keys: Iterable[str]) -> None:
        for key in keys:
            self._data.pop(key, None)

    def __len__(self) -> int:
        return len(self._data)


class JsonFileStore:
    """Store persisted as one JSON object on disk.

    The file is read lazily on first access and rewritten in full after each
    mutation via a temporary file and :func:`os.replace`, so a crash mid-write
    never leaves a truncated document behind.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._data: dict[str, str] | None = None

    def _load(self) -> dict[str, str]:
        if self._data is not None:
            return self._data
        if not self.path.exists():
            self._data = {}
            return self._data
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise StorageError(f"Failed to read store at {self.path}") from exc
        if not isinstance(raw, dict):
            raise StorageError(f"Store at {self.path} is not a JSON object")
        self._data = {str(k): str(v) for k, v in raw.items()}
        return self._data

    def _flush(self, data: dict[str, str]) -> None:
        """Write *data* to disk, then adopt it as the in-memory state."""
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
            os.replace(tmp, self.path)
        except OSError as exc:
            raise StorageError(f"Failed to write store at {self.path}") from exc
        self._data = data

    async def get(self, key: str) -> str | None:
        return self._load().get(key)

    async def set(self, key: str, value: str) -> None:
        self._flush({**self._load(), key: value})

    async def remove(self, key: str) -> None:
        data = dict(self._load())
        if data.pop(key, None) is not None:
            self._flush(data)

    async def keys(self) -> list[str]:
        return list(self._load())

    async def multi_remove(self, keys: Iterable[str]) -> None:
        data = dict(self._load())
        removed = [key for key in keys if data.pop(key, None) is not None]
        if removed:
            self._flush(data)
            logger.debug("Removed %d key(s) from %s", len(removed), self.path)
