import logging
import re
from typing import Optional, Tuple

from ftpprovider.core.config import DEFAULT_FTPS_PORT, TransferMode
from ftpprovider.core.exceptions import ProtocolError
from ftpprovider.core.ftp_control import ControlChannel, FTPCommand, expect_reply
from ftpprovider.core.transport import StreamTransport, TransportListener

logger = logging.getLogger(__name__)

PASV_RE = re.compile(r"(\d+),(\d+),(\d+),(\d+),(\d+),(\d+)")
EPSV_RE = re.compile(r"\(([!-~])([^)]*?)\1([^)]*?)\1(\d+)\1\)")


def parse_pasv_address(text: str, control_host: str) -> Tuple[str, int]:
	"""Extract host and port from a 227 reply.

	Placeholder hosts (``0.x.x.x``) and impossible octets are replaced by
	the control connection's host.
	"""
	tokens = text.split()
	match = PASV_RE.search(tokens[-1]) if tokens else None
	if match is None:
		match = PASV_RE.search(text)
	if match is None:
		raise ProtocolError(227, f"Malformed PASV reply: {text}")
	numbers = [int(group) for group in match.groups()]
	octets, (p1, p2) = numbers[:4], numbers[4:]
	if p1 > 255 or p2 > 255:
		raise ProtocolError(227, f"Invalid PASV port in reply: {text}")
	port = p1 * 256 + p2
	if octets[0] == 0 or any(octet > 255 for octet in octets):
		return control_host, port
	return ".".join(str(octet) for octet in octets), port


def parse_epsv_address(text: str, control_host: str) -> Tuple[str, int]:
	"""Extract host and port from a 229 reply ``(|||port|)``."""
	match = EPSV_RE.search(text)
	if match is None:
		raise ProtocolError(229, f"Malformed EPSV reply: {text}")
	host = match.group(3).strip() or control_host
	port = int(match.group(4))
	if not 0 < port < 65536:
		raise ProtocolError(229, f"Invalid EPSV port in reply: {text}")
	return host, port


def format_port_argument(host: str, port: int) -> str:
	"""``h1,h2,h3,h4,p1,p2`` for the PORT command."""
	return ",".join(host.split(".") + [str(port >> 8), str(port & 0xFF)])


class DataChannel:
	"""
	Short-lived data connection for one transfer or listing.

	Passive channels are connected at negotiation time; active channels
	accept the server's connection in ``open``. TLS always starts in
	``open``, which must run after the transfer command has been sent.
	"""

	def __init__(
		self,
		control: ControlChannel,
		*,
		transport: Optional[StreamTransport] = None,
		listener: Optional[TransportListener] = None,
		protect: bool = False,
	):
		self._control = control
		self._transport = transport
		self._listener = listener
		self._protect = protect

	@property
	def transport(self) -> Optional[StreamTransport]:
		return self._transport

	async def open(self) -> StreamTransport:
		cfg = self._control.config
		if self._transport is None:
			self._transport = await self._listener.accept(timeout=cfg.request_timeout)
		if self._protect and not self._transport.is_secure:
			self._transport.server_hostname = cfg.host
			await self._transport.start_tls(
				self._control.ssl_context,
				session=self._control.ssl_session,
				timeout=cfg.request_timeout,
			)
		return self._transport

	async def close(self) -> None:
		if self._listener is not None:
			self._listener.close()
		if self._transport is not None:
			await self._transport.close()

	def cancel(self) -> None:
		if self._listener is not None:
			self._listener.close()
		if self._transport is not None:
			self._transport.cancel()


class DataChannelNegotiator:
	"""Sets up a data channel with PASV, EPSV or PORT/EPRT.

	Every method issues commands with ``lock=False``; callers hold the
	control channel through ``exclusive()``.
	"""

	def __init__(self, control: ControlChannel, mode: Optional[TransferMode] = None):
		self.control = control
		self.mode = mode or control.config.transfer_mode

	def select_mode(self) -> TransferMode:
		if self.mode is not TransferMode.DEFAULT:
			return self.mode
		if self.control.secure or self.control.config.effective_port == DEFAULT_FTPS_PORT:
			return TransferMode.EXTENDED_PASSIVE
		return TransferMode.PASSIVE

	async def negotiate(self) -> DataChannel:
		mode = self.select_mode()
		if mode is TransferMode.ACTIVE:
			return await self.active()
		if mode is TransferMode.EXTENDED_PASSIVE:
			return await self.extended_passive()
		return await self.passive()

	async def passive(self) -> DataChannel:
		reply = await self.control.execute(FTPCommand.PASV, lock=False)
		expect_reply(reply, "2")
		host, port = parse_pasv_address(reply.last_line, self.control.peer_host)
		return await self._connect(host, port)

	async def extended_passive(self) -> DataChannel:
		reply = await self.control.execute(FTPCommand.EPSV, lock=False)
		if reply.matches("50"):
			logger.debug("EPSV refused with %s, falling back to PASV", reply.code)
			return await self.passive()
		expect_reply(reply, "2")
		host, port = parse_epsv_address(reply.message, self.control.peer_host)
		return await self._connect(host, port)

	async def _connect(self, host: str, port: int) -> DataChannel:
		cfg = self.control.config
		logger.debug("Opening data connection to %s:%s", host, port)
		transport = await self.control.transport_factory(
			host,
			port,
			backend=cfg.transport_backend,
			ssl_context=None,
			server_hostname=cfg.host,
			timeout=cfg.request_timeout,
		)
		return DataChannel(self.control, transport=transport, protect=self.control.data_protected)

	async def active(self) -> DataChannel:
		cfg = self.control.config
		local_host = self.control.transport.local_address[0]
		listener = TransportListener.open(local_host, cfg.transport_backend)
		try:
			port = await listener.wait_bound(cfg.request_timeout)
			if ":" in local_host:
				reply = await self.control.execute(FTPCommand.EPRT, f"|2|{local_host}|{port}|", lock=False)
			else:
				reply = await self.control.execute(FTPCommand.PORT, format_port_argument(local_host, port), lock=False)
			expect_reply(reply, "2")
		except BaseException:
			listener.close()
			raise
		logger.debug("Listening for data connection on %s:%s", local_host, port)
		return DataChannel(self.control, listener=listener, protect=self.control.data_protected)


__all__ = [
	"DataChannel",
	"DataChannelNegotiator",
	"format_port_argument",
	"parse_epsv_address",
	"parse_pasv_address",
]
