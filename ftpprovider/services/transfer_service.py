"""
RETR/STOR orchestration over a control channel.

Each transfer pipelines ``TYPE`` [+ ``REST``] + the transfer command, then
runs the data pump and the status reader concurrently; the first failure
cancels the other and aborts the data connection.
"""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, List, Optional, Union

from ftpprovider.core.config import UploadStrategy
from ftpprovider.core.exceptions import (
	FTPProviderError,
	ProtocolError,
	TransportCancelledError,
	TransportError,
)
from ftpprovider.core.ftp_control import ControlChannel, ControlReply, FTPCommand
from ftpprovider.core.ftp_data import DataChannel, DataChannelNegotiator
from ftpprovider.core.tasks import run_concurrently
from ftpprovider.models import TransferProgress
from ftpprovider.services.utils.local_io import BytesSource

logger = logging.getLogger(__name__)

MAX_CHUNK_RETRIES = 3
ABORT_REPLY_CODES = (426, 451)

KIB = 1024
MIB = 1024 * KIB

DataCallback = Callable[[bytes], Union[None, Awaitable[None]]]
ProgressCallback = Callable[[TransferProgress], Any]
ControlOpener = Callable[[], Awaitable[ControlChannel]]


def chunk_size_for(total: int) -> int:
	"""Parted-upload chunk size for a file of ``total`` bytes."""
	if total < 256 * KIB:
		return 32 * KIB
	if total < 1 * MIB:
		return 64 * KIB
	if total < 10 * MIB:
		return 128 * KIB
	if total < 32 * MIB:
		return 256 * KIB
	return 512 * KIB


async def _maybe_await(result) -> None:
	if inspect.isawaitable(result):
		await result


async def report_progress(callback: Optional[ProgressCallback], progress: TransferProgress) -> None:
	if not callback:
		return
	await _maybe_await(callback(progress))


class TransferEngine:
	def __init__(self, control: ControlChannel):
		self.control = control
		self.config = control.config

	# -------------------------
	# Shared plumbing
	# -------------------------
	async def open_transfer(
		self,
		command: FTPCommand,
		path: str,
		*,
		offset: int = 0,
		type_code: Optional[str] = "I",
	) -> DataChannel:
		"""Negotiate a data channel and pipeline the transfer preamble.

		Caller holds ``control.exclusive()``. Replies to ``TYPE`` and ``REST``
		are consumed here; the transfer command's reply is left for the
		status reader.
		"""
		channel = await DataChannelNegotiator(self.control).negotiate()
		lines: List[str] = []
		expected: List[str] = []
		if type_code:
			lines.append(FTPCommand.TYPE.line(type_code))
			expected.append("2")
		if offset > 0:
			lines.append(FTPCommand.REST.line(str(offset)))
			expected.append("3")
		lines.append(command.line(path))

		failure: Optional[ProtocolError] = None
		pending = 0
		try:
			await self.control.send(*lines)
			for index, prefix in enumerate(expected):
				reply = await self.control.read_reply()
				if not reply.matches(prefix):
					failure = ProtocolError.from_reply(reply, path=path)
					pending = len(lines) - index - 1
					break
		except BaseException:
			channel.cancel()
			self.control.abort()
			raise
		if failure is None:
			return channel
		channel.cancel()
		await self._resync(pending)
		raise failure

	async def run_transfer(
		self,
		channel: DataChannel,
		pump: Callable[[], Awaitable[Any]],
		*,
		path: str,
		stopped_early: Callable[[], bool] = lambda: False,
	) -> ControlReply:
		"""Run ``pump`` against the final status reply of the transfer command."""
		state = {"final": None}

		async def status() -> ControlReply:
			try:
				reply = await self.control.read_reply(timeout=self.config.resource_timeout)
				while reply.is_preliminary:
					reply = await self.control.read_reply(timeout=self.config.resource_timeout)
			except TransportError:
				self.control.abort()
				raise
			state["final"] = reply
			if reply.is_success:
				return reply
			if stopped_early() and reply.code in ABORT_REPLY_CODES:
				logger.debug("Accepting %s after a bounded read", reply)
				return reply
			raise ProtocolError.from_reply(reply, path=path)

		try:
			_, final = await run_concurrently(pump(), status())
			return final
		except ProtocolError:
			raise
		except asyncio.CancelledError:
			channel.cancel()
			self.control.abort()
			raise
		except Exception:
			channel.cancel()
			if state["final"] is None:
				await self._resync(1)
			raise
		finally:
			await channel.close()

	async def _resync(self, pending: int) -> None:
		"""Consume the replies still owed for pipelined or interrupted commands."""
		if not self.control.is_open:
			return
		try:
			for _ in range(pending):
				reply = await self.control.read_reply()
				while reply.is_preliminary:
					reply = await self.control.read_reply()
				logger.debug("Discarded reply %s", reply)
		except FTPProviderError as exc:
			logger.debug("Control channel out of sync, aborting: %s", exc)
			self.control.abort()

	# -------------------------
	# Download
	# -------------------------
	async def retrieve(
		self,
		path: str,
		*,
		offset: int = 0,
		length: int = -1,
		expected_size: int = -1,
		on_data: DataCallback,
		on_progress: Optional[ProgressCallback] = None,
	) -> int:
		"""Stream ``path`` from ``offset`` into ``on_data``; ``length`` < 0 reads to EOF."""
		cfg = self.config
		total = length if length >= 0 else (expected_size - offset if expected_size >= 0 else -1)
		received = 0
		early = False

		async with self.control.exclusive():
			channel = await self.open_transfer(FTPCommand.RETR, path, offset=offset)

			async def pump() -> None:
				nonlocal received, early
				transport = await channel.open()
				while True:
					want = cfg.chunk_size
					if length >= 0:
						want = min(want, length - received)
						if want <= 0:
							early = True
							channel.cancel()
							return
					result = await transport.read(1, want, timeout=cfg.request_timeout)
					if result.data:
						received += len(result.data)
						await _maybe_await(on_data(result.data))
						await report_progress(
							on_progress,
							TransferProgress(chunk_bytes=len(result.data), completed_bytes=received, total_bytes=total),
						)
					if result.eof:
						return

			await self.run_transfer(channel, pump, path=path, stopped_early=lambda: early)

		logger.debug("Retrieved %s bytes from %s (offset=%s)", received, path, offset)
		return received

	# -------------------------
	# Upload
	# -------------------------
	async def store(
		self,
		path: str,
		source,
		*,
		offset: int = 0,
		chunk_size: Optional[int] = None,
		total: int = -1,
		completed: int = 0,
		on_progress: Optional[ProgressCallback] = None,
	) -> int:
		"""Send ``source`` (already positioned) to ``path`` starting at ``offset``."""
		cfg = self.config
		chunk_size = chunk_size or cfg.chunk_size
		sent = 0

		async with self.control.exclusive():
			channel = await self.open_transfer(FTPCommand.STOR, path, offset=offset)

			async def pump() -> None:
				nonlocal sent
				transport = await channel.open()
				while True:
					data = await source.read(chunk_size)
					if not data:
						break
					await transport.write(data, timeout=cfg.resource_timeout)
					sent += len(data)
					await report_progress(
						on_progress,
						TransferProgress(chunk_bytes=len(data), completed_bytes=completed + sent, total_bytes=total),
					)
				await transport.close_write(timeout=cfg.resource_timeout)

			await self.run_transfer(channel, pump, path=path)

		logger.debug("Stored %s bytes to %s (offset=%s)", sent, path, offset)
		return sent


class SerialUpload:
	"""One STOR with the whole source, written in fixed-size chunks."""

	def __init__(self, engine: TransferEngine):
		self.engine = engine

	async def upload(self, source, path: str, *, offset: int = 0, on_progress: Optional[ProgressCallback] = None) -> int:
		await source.seek(offset)
		return await self.engine.store(
			path,
			source,
			offset=offset,
			total=source.size,
			completed=offset,
			on_progress=on_progress,
		)


class PartedUpload:
	"""
	One STOR per chunk, resumed with REST, each chunk on a new data channel.

	A chunk that fails with a transport or protocol error is retried
	immediately, up to MAX_CHUNK_RETRIES times. A failure that tore the
	control channel down continues on one obtained from ``reopen``.
	"""

	max_retries = MAX_CHUNK_RETRIES

	def __init__(self, engine: TransferEngine, reopen: Optional[ControlOpener] = None):
		self.engine = engine
		self.reopen = reopen

	async def upload(self, source, path: str, *, offset: int = 0, on_progress: Optional[ProgressCallback] = None) -> int:
		total = source.size
		size = chunk_size_for(total)
		position = offset
		if total == 0 and offset == 0:
			await self._store_with_retry(path, b"", 0)
			return 0
		while position < total:
			await source.seek(position)
			data = await source.read(min(size, total - position))
			if not data:
				break
			await self._store_with_retry(path, data, position)
			position += len(data)
			await report_progress(
				on_progress,
				TransferProgress(chunk_bytes=len(data), completed_bytes=position, total_bytes=total),
			)
		return position - offset

	async def _store_with_retry(self, path: str, data: bytes, offset: int) -> int:
		attempt = 0
		while True:
			try:
				return await self._store_chunk(path, data, offset)
			except TransportCancelledError:
				raise
			except (TransportError, ProtocolError) as exc:
				attempt += 1
				reusable = self.engine.control.is_open
				if attempt > self.max_retries or not (reusable or self.reopen):
					raise
				logger.warning(
					"Chunk at offset %s of %s failed (attempt %s/%s): %s",
					offset, path, attempt, self.max_retries + 1, exc,
				)
				if not reusable:
					self.engine = TransferEngine(await self.reopen())

	async def _store_chunk(self, path: str, data: bytes, offset: int) -> int:
		return await self.engine.store(path, BytesSource(data), offset=offset, chunk_size=max(len(data), 1))


def upload_strategy_for(engine: TransferEngine, reopen: Optional[ControlOpener] = None):
	if engine.config.upload_strategy is UploadStrategy.PARTED:
		return PartedUpload(engine, reopen)
	return SerialUpload(engine)
