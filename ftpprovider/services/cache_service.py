"""Content cache consulted for whole-file reads."""
from __future__ import annotations

import asyncio
import hashlib
import logging
from collections import OrderedDict
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol

import aiofiles
import aiofiles.os
import aiofiles.tempfile

logger = logging.getLogger(__name__)


class ContentCache(Protocol):
    async def lookup(self, key: str) -> Optional[bytes]:
        ...

    async def store(self, key: str, data: bytes) -> None:
        ...

    async def invalidate(self, key: str) -> None:
        ...


@dataclass(frozen=True)
class CacheStats:
    total_bytes: int
    entry_count: int


class MemoryContentCache:
    """LRU cache bounded by total payload size."""

    def __init__(self, max_bytes: int = 32 * 1024 * 1024) -> None:
        self._max_bytes = max_bytes
        self._entries: OrderedDict[str, bytes] = OrderedDict()
        self._size = 0
        self._lock = asyncio.Lock()

    async def lookup(self, key: str) -> Optional[bytes]:
        async with self._lock:
            data = self._entries.get(key)
            if data is not None:
                self._entries.move_to_end(key)
            return data

    async def store(self, key: str, data: bytes) -> None:
        if len(data) > self._max_bytes:
            return
        async with self._lock:
            previous = self._entries.pop(key, None)
            if previous is not None:
                self._size -= len(previous)
            self._entries[key] = bytes(data)
            self._size += len(data)
            while self._size > self._max_bytes:
                _, evicted = self._entries.popitem(last=False)
                self._size -= len(evicted)

    async def invalidate(self, key: str) -> None:
        async with self._lock:
            previous = self._entries.pop(key, None)
            if previous is not None:
                self._size -= len(previous)

    def get_stats(self) -> CacheStats:
        return CacheStats(total_bytes=self._size, entry_count=len(self._entries))


class DiskContentCache:
    """One file per key under ``base_dir``."""

    def __init__(self, base_dir: Path | str) -> None:
        self._base_dir = Path(base_dir)

    def _path_for(self, key: str) -> Path:
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
        return self._base_dir / digest[:2] / digest

    async def lookup(self, key: str) -> Optional[bytes]:
        path = self._path_for(key)
        try:
            async with aiofiles.open(path, "rb") as handle:
                return await handle.read()
        except FileNotFoundError:
            return None

    async def store(self, key: str, data: bytes) -> None:
        path = self._path_for(key)
        await aiofiles.os.makedirs(path.parent, exist_ok=True)
        async with aiofiles.tempfile.NamedTemporaryFile(
            "wb", dir=path.parent, prefix=path.name + ".", suffix=".tmp", delete=False
        ) as handle:
            temp_path = handle.name
            await handle.write(data)
        try:
            await aiofiles.os.replace(temp_path, path)
        except OSError:
            await aiofiles.os.remove(temp_path)
            raise

    async def invalidate(self, key: str) -> None:
        try:
            await aiofiles.os.remove(self._path_for(key))
        except FileNotFoundError:
            pass

    async def get_stats(self) -> CacheStats:
        return await asyncio.to_thread(self._collect_stats)

    def _collect_stats(self) -> CacheStats:
        total_bytes = 0
        entry_count = 0
        if not self._base_dir.exists():
            return CacheStats(total_bytes=0, entry_count=0)
        for path in self._base_dir.rglob("*"):
            if not path.is_file() or path.suffix == ".tmp":
                continue
            try:
                total_bytes += path.stat().st_size
                entry_count += 1
            except FileNotFoundError:
                continue
        return CacheStats(total_bytes=total_bytes, entry_count=entry_count)
