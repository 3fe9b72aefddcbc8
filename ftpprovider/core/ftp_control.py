import asyncio
import logging
import re
import ssl
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, List, Optional, Union

from ftpprovider.core.config import SessionConfig
from ftpprovider.core.exceptions import (
	AuthenticationRequiredError,
	ConnectionClosedError,
	FTPProviderError,
	ProtocolError,
)
from ftpprovider.core.transport import StreamTransport

logger = logging.getLogger(__name__)

QUIT_TIMEOUT = 2.0

REPLY_LINE_RE = re.compile(r"^(\d{3})([ -])(.*)$")


class FTPCommand(Enum):
	USER = "USER"
	PASS = "PASS"
	AUTH = "AUTH"
	PBSZ = "PBSZ"
	PROT = "PROT"
	CWD = "CWD"
	TYPE = "TYPE"
	PASV = "PASV"
	EPSV = "EPSV"
	PORT = "PORT"
	EPRT = "EPRT"
	REST = "REST"
	RETR = "RETR"
	STOR = "STOR"
	LIST = "LIST"
	MLSD = "MLSD"
	MLST = "MLST"
	MKD = "MKD"
	RNFR = "RNFR"
	RNTO = "RNTO"
	DELE = "DELE"
	RMD = "RMD"
	SITE = "SITE"
	QUIT = "QUIT"

	def line(self, arg: str = "") -> str:
		return f"{self.value} {arg}" if arg else self.value


class ControlState(Enum):
	DISCONNECTED = "disconnected"
	CONNECTING = "connecting"
	AWAITING_GREETING = "awaiting_greeting"
	TLS_NEGOTIATING = "tls_negotiating"
	AUTHENTICATING = "authenticating"
	READY = "ready"
	BUSY = "busy"
	CLOSED = "closed"


@dataclass(frozen=True)
class ReplyLine:
	code: int
	text: str
	is_final: bool


def parse_reply_line(line: str) -> Optional[ReplyLine]:
	"""Parse ``DDD-text`` (continuation) or ``DDD text`` (terminal).

	Returns None for lines that carry no reply code, which only occur inside
	a multi-line reply.
	"""
	match = REPLY_LINE_RE.match(line)
	if match:
		return ReplyLine(int(match.group(1)), match.group(3), match.group(2) == " ")
	if len(line) == 3 and line.isdigit():
		return ReplyLine(int(line), "", True)
	return None


@dataclass
class ControlReply:
	code: int
	lines: List[str] = field(default_factory=list)

	@property
	def message(self) -> str:
		return "\n".join(self.lines)

	@property
	def last_line(self) -> str:
		return self.lines[-1] if self.lines else ""

	def matches(self, *prefixes: str) -> bool:
		text = str(self.code)
		return any(text.startswith(prefix) for prefix in prefixes)

	@property
	def is_preliminary(self) -> bool:
		return 100 <= self.code < 200

	@property
	def is_success(self) -> bool:
		return 200 <= self.code < 300

	@property
	def is_intermediate(self) -> bool:
		return 300 <= self.code < 400

	@property
	def is_error(self) -> bool:
		return self.code >= 400

	def __str__(self) -> str:
		return f"{self.code} {self.last_line}".rstrip()


def expect_reply(reply: ControlReply, *prefixes: str, path: Optional[str] = None) -> ControlReply:
	"""Return ``reply`` when its code starts with one of ``prefixes``, else raise."""
	if not reply.matches(*prefixes):
		raise ProtocolError.from_reply(reply, path=path)
	return reply


def _mask(line: str) -> str:
	if line.upper().startswith("PASS "):
		return "PASS ****"
	return line


TransportFactory = Callable[..., Awaitable[StreamTransport]]
StateCallback = Callable[[ControlState, ControlState], None]


class ControlChannel:
	"""
	Command/reply state machine over one control connection.

	One command is in flight at a time; multi-step sequences hold the channel
	through ``exclusive()`` and issue commands with ``lock=False``.
	"""

	def __init__(
		self,
		config: SessionConfig,
		*,
		transport_factory: Optional[TransportFactory] = None,
		on_state_change: Optional[StateCallback] = None,
	):
		self.config = config
		self.transport_factory: TransportFactory = transport_factory or StreamTransport.open
		self.on_state_change = on_state_change

		self._op_lock = asyncio.Lock()
		self._transport: Optional[StreamTransport] = None
		self._ssl_context: Optional[ssl.SSLContext] = None
		self._data_protected = False
		self._state = ControlState.DISCONNECTED

	# -------------------------
	# State
	# -------------------------
	@property
	def state(self) -> ControlState:
		return self._state

	def _set_state(self, state: ControlState) -> None:
		previous = self._state
		if previous is state:
			return
		self._state = state
		callback = self.on_state_change
		if not callback:
			return
		try:
			callback(previous, state)
		except Exception:
			logger.debug("state change callback failed", exc_info=True)

	@property
	def is_open(self) -> bool:
		return self._state not in (ControlState.DISCONNECTED, ControlState.CLOSED)

	@property
	def transport(self) -> Optional[StreamTransport]:
		return self._transport

	@property
	def secure(self) -> bool:
		return bool(self._transport and self._transport.is_secure)

	@property
	def data_protected(self) -> bool:
		return self._data_protected

	@property
	def ssl_context(self) -> Optional[ssl.SSLContext]:
		return self._ssl_context

	@property
	def ssl_session(self) -> Optional[ssl.SSLSession]:
		return self._transport.ssl_session if self._transport else None

	@property
	def peer_host(self) -> str:
		"""Address the control connection actually reached."""
		peer = self._transport.peer_address if self._transport else None
		return peer[0] if peer else self.config.host

	def _require_open(self) -> None:
		if not self.is_open or self._transport is None:
			raise ConnectionClosedError("Control channel is not connected")

	# -------------------------
	# Connection lifecycle
	# -------------------------
	async def connect(self) -> "ControlChannel":
		"""Open the control connection, negotiate TLS and log in."""
		cfg = self.config
		self._set_state(ControlState.CONNECTING)
		if cfg.implicit_tls or cfg.explicit_tls:
			self._ssl_context = cfg.tls.create_context()
		try:
			self._transport = await self.transport_factory(
				cfg.host,
				cfg.effective_port,
				backend=cfg.transport_backend,
				ssl_context=self._ssl_context if cfg.implicit_tls else None,
				server_hostname=cfg.host,
				timeout=cfg.request_timeout,
			)
			self._set_state(ControlState.AWAITING_GREETING)
			greeting = await self.read_reply()
			expect_reply(greeting, "22")

			if cfg.explicit_tls and not self._transport.is_secure:
				self._set_state(ControlState.TLS_NEGOTIATING)
				reply = await self.execute(FTPCommand.AUTH, "TLS", lock=False)
				expect_reply(reply, "23")
				await self._transport.start_tls(self._ssl_context, timeout=cfg.request_timeout)

			if self._transport.is_secure:
				await self._negotiate_protection()

			self._set_state(ControlState.AUTHENTICATING)
			await self._login()
		except BaseException:
			self.abort()
			raise

		self._set_state(ControlState.READY)
		logger.debug("Control channel ready on %s:%s (secure=%s)", cfg.host, cfg.effective_port, self.secure)
		return self

	async def _negotiate_protection(self) -> None:
		reply = await self.execute(FTPCommand.PBSZ, "0", lock=False)
		if not reply.is_success:
			logger.debug("PBSZ 0 answered %s", reply)
		level = "P" if self.config.secured_data_connection else "C"
		reply = await self.execute(FTPCommand.PROT, level, lock=False)
		if level == "P" and reply.is_success:
			self._data_protected = True
		elif level == "P":
			logger.warning("Server refused PROT P (%s); data connections stay unencrypted", reply)

	async def _login(self) -> None:
		credentials = self.config.credentials
		reply = await self.execute(FTPCommand.USER, credentials.user, lock=False)
		if reply.matches("33"):
			reply = await self.execute(FTPCommand.PASS, credentials.password.get_secret_value(), lock=False)
		if not reply.matches("23"):
			raise AuthenticationRequiredError.from_reply(reply)
		logger.debug("Authenticated as %s", credentials.user)

	async def close(self, timeout: float = QUIT_TIMEOUT) -> None:
		"""Send a best-effort QUIT and close the connection."""
		transport = self._transport
		if self._state is ControlState.CLOSED or transport is None:
			self._set_state(ControlState.CLOSED)
			return
		if self._state is ControlState.READY and not self._op_lock.locked():
			try:
				await self.send(FTPCommand.QUIT.value, timeout=timeout)
				await self.read_reply(timeout=timeout)
			except FTPProviderError as exc:
				logger.debug("QUIT failed: %s", exc)
		self._set_state(ControlState.CLOSED)
		await transport.close()

	def abort(self) -> None:
		"""Tear the connection down immediately."""
		if self._transport is not None:
			self._transport.cancel()
		self._set_state(ControlState.CLOSED)

	# -------------------------
	# Commands and replies
	# -------------------------
	@asynccontextmanager
	async def exclusive(self) -> AsyncIterator["ControlChannel"]:
		"""Hold the channel for a multi-step operation."""
		async with self._op_lock:
			self._require_open()
			if self._state is ControlState.READY:
				self._set_state(ControlState.BUSY)
			try:
				yield self
			finally:
				if self._state is ControlState.BUSY:
					self._set_state(ControlState.READY)

	async def execute(
		self,
		command: Union[FTPCommand, str],
		arg: str = "",
		timeout: Optional[float] = None,
		*,
		lock: bool = True,
	) -> ControlReply:
		"""Send one command and return its complete reply."""
		if lock:
			async with self.exclusive():
				return await self.execute(command, arg, timeout, lock=False)

		line = command.line(arg) if isinstance(command, FTPCommand) else command
		await self.send(line, timeout=timeout)
		return await self.read_reply(timeout)

	async def send(self, *commands: str, timeout: Optional[float] = None) -> None:
		"""Write one or more commands as a single pipelined block."""
		self._require_open()
		for command in commands:
			logger.debug("SENDING: %s", _mask(command))
		payload = "".join(f"{command}\r\n" for command in commands)
		await self._transport.write(
			payload.encode(self.config.encoding),
			timeout=self.config.request_timeout if timeout is None else timeout,
		)

	async def read_reply(self, timeout: Optional[float] = None) -> ControlReply:
		"""Read lines until the terminal line carrying the initial code."""
		self._require_open()
		if timeout is None:
			timeout = self.config.request_timeout
		first: Optional[ReplyLine] = None
		lines: List[str] = []
		while True:
			raw = await self._transport.readline(timeout=timeout)
			if not raw:
				self._set_state(ControlState.CLOSED)
				raise ConnectionClosedError("Control connection closed by server")
			text = raw.decode(self.config.encoding, errors="replace").rstrip("\r\n")
			parsed = parse_reply_line(text)
			if first is None:
				if parsed is None:
					logger.debug("Ignoring stray control line: %s", text)
					continue
				first = parsed
				lines.append(parsed.text)
				if parsed.is_final:
					break
				continue
			if parsed is not None and parsed.code == first.code:
				lines.append(parsed.text)
				if parsed.is_final:
					break
			else:
				lines.append(text)

		reply = ControlReply(first.code, lines)
		logger.debug("RESPONSE: %s", reply)
		if reply.code == 421:
			self.abort()
			raise ConnectionClosedError(f"Server closed connection: {reply}", extra={"code": reply.code})
		return reply

	async def cwd(self, path: str) -> ControlReply:
		reply = await self.execute(FTPCommand.CWD, path)
		return expect_reply(reply, "25", path=path)


__all__ = [
	"ControlChannel",
	"ControlReply",
	"ControlState",
	"FTPCommand",
	"ReplyLine",
	"expect_reply",
	"parse_reply_line",
]
