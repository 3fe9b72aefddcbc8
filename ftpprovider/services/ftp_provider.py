"""
FTP/FTPS file provider
- One authenticated control channel per operation, QUIT in the background
- MLSD/MLST preferred, LIST fallback latched per provider
- Whole-file reads served from the content cache when one is attached
"""

import logging
import posixpath
from contextlib import AsyncExitStack, asynccontextmanager
from pathlib import PurePosixPath
from typing import AsyncIterator, List, Optional

from ftpprovider.core.config import SessionConfig
from ftpprovider.core.exceptions import FTPProviderError, ProtocolError
from ftpprovider.core.ftp_control import ControlChannel, FTPCommand, expect_reply
from ftpprovider.core.operation_context import OperationIdGenerator, operation_context
from ftpprovider.core.tasks import BackgroundTasks
from ftpprovider.models import FileEntry, FileKind
from ftpprovider.services.cache_service import ContentCache
from ftpprovider.services.listing_service import (
	CapabilityLatch,
	DirectoryLister,
	FoundItems,
	RecursiveLister,
)
from ftpprovider.services.parsers.listing_parser import ListingParser
from ftpprovider.services.transfer_service import ProgressCallback, TransferEngine, upload_strategy_for
from ftpprovider.services.utils.local_io import BytesSink, BytesSource, FileSink, FileSource, remove_partial

logger = logging.getLogger(__name__)


class FTPFileProvider:
	def __init__(
		self,
		config: SessionConfig,
		*,
		cache: Optional[ContentCache] = None,
		transport_factory=None,
		parser: Optional[ListingParser] = None,
	):
		self.config = config
		self._cache = cache
		self._transport_factory = transport_factory
		self._ids = OperationIdGenerator(prefix="ftp")
		self._background = BackgroundTasks(name="ftp-provider", logger=logger)

		self.machine_listing = CapabilityLatch("MLSD")
		self.parser = parser or ListingParser(config.base_path)
		self.lister = DirectoryLister(self.parser, self.machine_listing)

	@classmethod
	def from_url(cls, url: str, **kwargs) -> "FTPFileProvider":
		cache = kwargs.pop("cache", None)
		transport_factory = kwargs.pop("transport_factory", None)
		return cls(SessionConfig.from_url(url, **kwargs), cache=cache, transport_factory=transport_factory)

	# -------------------------
	# sessions
	# -------------------------
	@asynccontextmanager
	async def session(self) -> AsyncIterator[ControlChannel]:
		"""Authenticated control channel, closed in the background on exit."""
		control = ControlChannel(self.config, transport_factory=self._transport_factory)
		await control.connect()
		try:
			yield control
		finally:
			self._background.spawn(control.close(), name="quit")

	async def aclose(self) -> None:
		"""Wait for pending QUIT cleanups."""
		await self._background.drain()

	# -------------------------
	# helpers
	# -------------------------
	def _normalize_path(self, path: str) -> str:
		raw = path or "/"
		clean = raw.strip() or "/"
		target = PurePosixPath("/").joinpath(PurePosixPath(clean.lstrip("/")))
		if ".." in target.parts:
			raise ValueError(f"Path traversal detected: {path}")
		result = target.as_posix()
		if len(result) > 1 and result.endswith("/"):
			result = result.rstrip("/")
		return result or "/"

	async def _invalidate(self, path: str) -> None:
		if self._cache is not None:
			await self._cache.invalidate(self.config.resource_url(self._normalize_path(path)))

	# -------------------------
	# listing & attributes
	# -------------------------
	async def contents_of_directory(self, path: str = "/") -> List[FileEntry]:
		path = self._normalize_path(path)
		with operation_context(self._ids.next_id("list")):
			async with self.session() as control:
				entries = await self.lister.list(control, path)
			logger.debug("Listed %s entries in %s", len(entries), path)
			return entries

	async def recursive_list(self, path: str = "/", found_items: Optional[FoundItems] = None) -> List[FileEntry]:
		path = self._normalize_path(path)
		with operation_context(self._ids.next_id("walk")):
			walker = RecursiveLister(self.session, self.lister, self.config.max_connections)
			entries = await walker.walk(path, found_items)
			logger.info("Recursive listing of %s found %s entries", path, len(entries))
			return entries

	async def attributes_of_item(self, path: str) -> FileEntry:
		path = self._normalize_path(path)
		with operation_context(self._ids.next_id("stat")):
			async with self.session() as control:
				return await self._attributes(control, path)

	async def _attributes(self, control: ControlChannel, path: str) -> FileEntry:
		if self.machine_listing.usable:
			reply = await control.execute(FTPCommand.MLST, self.config.server_path(path))
			if reply.is_success:
				self.machine_listing.confirm()
				directory = posixpath.dirname(path)
				for line in reply.lines[1:]:
					entry = self.parser.parse_mlst(line.strip(), directory, listing=False)
					if entry is not None:
						return entry
				raise ProtocolError(reply.code, "MLST reply carried no entry", path=path)
			if not reply.matches("50"):
				raise ProtocolError.from_reply(reply, path=path)
			self.machine_listing.revoke()
		return await self._attributes_from_listing(control, path)

	async def _expected_size(self, control: ControlChannel, path: str) -> int:
		"""Size for progress totals; -1 when the server cannot tell."""
		try:
			entry = await self._attributes(control, path)
		except ProtocolError as exc:
			logger.debug("No size for %s: %s", path, exc)
			return -1
		return entry.size

	async def _attributes_from_listing(self, control: ControlChannel, path: str) -> FileEntry:
		if path == "/":
			return FileEntry(name="/", path="/", kind=FileKind.DIRECTORY)
		parent, name = posixpath.split(path)
		for entry in await self.lister.list(control, parent or "/"):
			if entry.name == name:
				return entry
		raise ProtocolError(550, f"No such file or directory: {path}", path=path)

	async def is_reachable(self) -> bool:
		try:
			await self.attributes_of_item("/")
			return True
		except FTPProviderError as exc:
			logger.info("FTP server %s unreachable: %s", self.config.host, exc)
			return False

	# -------------------------
	# reading
	# -------------------------
	async def contents(
		self,
		path: str,
		offset: int = 0,
		length: int = -1,
		on_progress: Optional[ProgressCallback] = None,
	) -> bytes:
		"""Read ``length`` bytes from ``offset``; a negative length reads to the end."""
		path = self._normalize_path(path)
		with operation_context(self._ids.next_id("read")):
			cache_key = None
			if self._cache is not None and offset == 0 and length < 0:
				cache_key = self.config.resource_url(path)
				cached = await self._cache.lookup(cache_key)
				if cached is not None:
					logger.debug("Serving %s from cache", path)
					return cached
			if length == 0:
				return b""

			sink = BytesSink()
			async with self.session() as control:
				expected = -1
				if on_progress is not None and length < 0:
					expected = await self._expected_size(control, path)
				await TransferEngine(control).retrieve(
					self.config.server_path(path),
					offset=offset,
					length=length,
					expected_size=expected,
					on_data=sink.write,
					on_progress=on_progress,
				)
			data = sink.getvalue()
			if cache_key is not None:
				await self._cache.store(cache_key, data)
			return data

	async def download(self, path: str, local_path: str, on_progress: Optional[ProgressCallback] = None) -> int:
		path = self._normalize_path(path)
		with operation_context(self._ids.next_id("download")):
			sink = await FileSink.open(local_path)
			try:
				async with self.session() as control:
					expected = -1
					if on_progress is not None:
						expected = await self._expected_size(control, path)
					received = await TransferEngine(control).retrieve(
						self.config.server_path(path),
						expected_size=expected,
						on_data=sink.write,
						on_progress=on_progress,
					)
			except BaseException:
				await sink.close()
				await remove_partial(local_path)
				raise
			await sink.close()
			logger.info("Downloaded %s to %s (%s bytes)", path, local_path, received)
			return received

	# -------------------------
	# writing
	# -------------------------
	async def write_contents(self, path: str, data: bytes, on_progress: Optional[ProgressCallback] = None) -> int:
		path = self._normalize_path(path)
		with operation_context(self._ids.next_id("write")):
			sent = await self._upload(BytesSource(data), path, on_progress=on_progress)
			await self._invalidate(path)
			return sent

	async def upload(
		self,
		local_path: str,
		path: str,
		on_progress: Optional[ProgressCallback] = None,
		offset: int = 0,
	) -> int:
		path = self._normalize_path(path)
		with operation_context(self._ids.next_id("upload")):
			source = await FileSource.open(local_path)
			try:
				sent = await self._upload(source, path, offset=offset, on_progress=on_progress)
			finally:
				await source.close()
			await self._invalidate(path)
			logger.info("Uploaded %s to %s (%s bytes)", local_path, path, sent)
			return sent

	async def _upload(self, source, path: str, *, offset: int = 0, on_progress: Optional[ProgressCallback] = None) -> int:
		async with AsyncExitStack() as sessions:

			async def reopen() -> ControlChannel:
				logger.info("Reconnecting to resume upload of %s", path)
				return await sessions.enter_async_context(self.session())

			control = await sessions.enter_async_context(self.session())
			strategy = upload_strategy_for(TransferEngine(control), reopen)
			return await strategy.upload(source, self.config.server_path(path), offset=offset, on_progress=on_progress)

	# -------------------------
	# file operations
	# -------------------------
	async def create_folder(self, name: str, at: str = "/") -> str:
		clean = name.strip().strip("/")
		if not clean:
			raise ValueError("Folder name is required")
		path = self._normalize_path(posixpath.join(self._normalize_path(at), clean))
		with operation_context(self._ids.next_id("mkdir")):
			async with self.session() as control:
				reply = await control.execute(FTPCommand.MKD, self.config.server_path(path))
				expect_reply(reply, "25", path=path)
			return path

	async def move_item(self, path: str, to_path: str) -> str:
		source = self._normalize_path(path)
		target = self._normalize_path(to_path)
		with operation_context(self._ids.next_id("move")):
			async with self.session() as control:
				async with control.exclusive():
					reply = await control.execute(FTPCommand.RNFR, self.config.server_path(source), lock=False)
					expect_reply(reply, "350", path=source)
					reply = await control.execute(FTPCommand.RNTO, self.config.server_path(target), lock=False)
					expect_reply(reply, "25", path=target)
			await self._invalidate(source)
			return target

	async def remove_item(self, path: str) -> None:
		path = self._normalize_path(path)
		with operation_context(self._ids.next_id("remove")):
			async with self.session() as control:
				server_path = self.config.server_path(path)
				reply = await control.execute(FTPCommand.DELE, server_path)
				if not reply.is_success:
					logger.debug("DELE %s answered %s, trying RMD", path, reply)
					reply = await control.execute(FTPCommand.RMD, server_path)
					expect_reply(reply, "25", path=path)
			await self._invalidate(path)

	async def create_symbolic_link(self, path: str, destination: str) -> str:
		link = self._normalize_path(path)
		target = self._normalize_path(destination)
		with operation_context(self._ids.next_id("symlink")):
			async with self.session() as control:
				reply = await control.execute(
					FTPCommand.SITE,
					f"SYMLINK {self.config.server_path(target)} {self.config.server_path(link)}",
				)
				expect_reply(reply, "2", path=link)
			return link

	async def change_directory(self, path: str) -> str:
		path = self._normalize_path(path)
		with operation_context(self._ids.next_id("cwd")):
			async with self.session() as control:
				await control.cwd(self.config.server_path(path))
			return path
