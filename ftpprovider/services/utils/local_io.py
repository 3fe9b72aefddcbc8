import logging
import os
from typing import List, Optional

import aiofiles
import aiofiles.os

from ftpprovider.core.exceptions import ResourceError

logger = logging.getLogger(__name__)


class BytesSource:
	"""In-memory upload source."""

	def __init__(self, data: bytes):
		self._data = bytes(data)
		self._position = 0
		self.path: Optional[str] = None

	@property
	def size(self) -> int:
		return len(self._data)

	async def seek(self, offset: int) -> None:
		self._position = max(0, min(offset, len(self._data)))

	async def read(self, size: int) -> bytes:
		chunk = self._data[self._position:self._position + size]
		self._position += len(chunk)
		return chunk

	async def close(self) -> None:
		return None


class FileSource:
	"""Local file read through aiofiles."""

	def __init__(self, path: str, handle, size: int):
		self.path = path
		self._handle = handle
		self._size = size

	@classmethod
	async def open(cls, path: str) -> "FileSource":
		try:
			stat = await aiofiles.os.stat(path)
			handle = await aiofiles.open(path, "rb")
		except OSError as exc:
			raise ResourceError(path, f"Cannot open {path} for reading: {exc}") from exc
		return cls(path, handle, stat.st_size)

	@property
	def size(self) -> int:
		return self._size

	async def seek(self, offset: int) -> None:
		try:
			await self._handle.seek(offset, os.SEEK_SET)
		except OSError as exc:
			raise ResourceError(self.path, f"Cannot seek {self.path}: {exc}") from exc

	async def read(self, size: int) -> bytes:
		try:
			return await self._handle.read(size)
		except OSError as exc:
			raise ResourceError(self.path, f"Cannot read {self.path}: {exc}") from exc

	async def close(self) -> None:
		try:
			await self._handle.close()
		except OSError as exc:
			logger.debug("closing %s failed: %s", self.path, exc)


class BytesSink:
	"""Collects downloaded chunks in memory."""

	def __init__(self):
		self._parts: List[bytes] = []
		self.path: Optional[str] = None

	async def write(self, data: bytes) -> None:
		self._parts.append(data)

	def getvalue(self) -> bytes:
		return b"".join(self._parts)

	async def close(self) -> None:
		return None


class FileSink:
	"""Local file written through aiofiles."""

	def __init__(self, path: str, handle):
		self.path = path
		self._handle = handle
		self.written = 0

	@classmethod
	async def open(cls, path: str, *, append: bool = False) -> "FileSink":
		directory = os.path.dirname(path)
		try:
			if directory:
				await aiofiles.os.makedirs(directory, exist_ok=True)
			handle = await aiofiles.open(path, "ab" if append else "wb")
		except OSError as exc:
			raise ResourceError(path, f"Cannot open {path} for writing: {exc}") from exc
		return cls(path, handle)

	async def write(self, data: bytes) -> None:
		try:
			await self._handle.write(data)
		except OSError as exc:
			raise ResourceError(self.path, f"Cannot write {self.path}: {exc}") from exc
		self.written += len(data)

	async def close(self) -> None:
		try:
			await self._handle.close()
		except OSError as exc:
			raise ResourceError(self.path, f"Cannot flush {self.path}: {exc}") from exc


async def remove_partial(path: str) -> None:
	"""Delete a partially written download."""
	try:
		await aiofiles.os.remove(path)
	except FileNotFoundError:
		return
	except OSError as exc:
		logger.warning("Could not remove partial file %s: %s", path, exc)
