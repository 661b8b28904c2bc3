"""Durable key-value string store.

Values are opaque strings; callers own their encoding. Two backends are
provided: ``FileKeyValueStore`` keeps one file per key under a data
directory, ``MemoryKeyValueStore`` keeps everything in a dict.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)

_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")


class KeyValueStore(Protocol):
    """Async string store used by the persistence adapter."""

    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str) -> None: ...

    async def delete(self, key: str) -> None: ...


def _validate_key(key: str) -> str:
    if _KEY_PATTERN.fullmatch(key) is None:
        raise ValueError(f"Invalid state key {key!r}: use letters, digits, '.', '_' or '-'")
    return key


class MemoryKeyValueStore:
    """Dict-backed store; contents vanish with the process."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self.data: dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> str | None:
        return self.data.get(_validate_key(key))

    async def set(self, key: str, value: str) -> None:
        self.data[_validate_key(key)] = value

    async def delete(self, key: str) -> None:
        self.data.pop(_validate_key(key), None)


class FileKeyValueStore:
    """Store each key as ``<root>/<key>`` with atomic replace-on-write.

    File IO runs in a worker thread so the event loop is never blocked.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root).expanduser()

    def _path(self, key: str) -> Path:
        return self.root / _validate_key(key)

    async def get(self, key: str) -> str | None:
        return await asyncio.to_thread(self._read, self._path(key))

    async def set(self, key: str, value: str) -> None:
        await asyncio.to_thread(self._write, self._path(key), value)

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self._path(key).unlink, missing_ok=True)

    @staticmethod
    def _read(path: Path) -> str | None:
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    @staticmethod
    def _write(path: Path, value: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(value)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        logger.debug("Wrote %d bytes to %s", len(value), path)
