"""Bidirectional byte stream with timeout-bounded I/O and in-place TLS.

``StreamTransport`` owns the read buffer, timeouts and cancellation. The
socket work is delegated to one of two backends chosen at construction:

* ``streams``  - asyncio ``StreamReader``/``StreamWriter`` (TLS via ``start_tls``)
* ``buffered`` - non-blocking socket driven through the loop's ``sock_*``
  primitives, with TLS records pumped manually through ``ssl.MemoryBIO``.
  This is the only backend that can leave TLS again.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
import socket
import ssl
from typing import Awaitable, NamedTuple, Optional

from ftpprovider.core.config import SessionResumingContext, TransportBackend
from ftpprovider.core.exceptions import (
    FTPProviderError,
    TransportCancelledError,
    TransportError,
    TransportTimeoutError,
    UnsupportedFeatureError,
)

logger = logging.getLogger(__name__)

RECV_SIZE = 64 * 1024
MAX_LINE = 64 * 1024


class ReadResult(NamedTuple):
    data: bytes
    eof: bool


def _set_tcp_nodelay(sock: Optional[socket.socket]) -> None:
    if sock is None:
        return
    try:
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
    except (OSError, AttributeError):
        pass


class _StreamsBackend:
    """asyncio streams."""

    def __init__(self) -> None:
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None

    async def open(self, host: str, port: int, ssl_context: Optional[ssl.SSLContext], server_hostname: Optional[str]) -> None:
        self._reader, self._writer = await asyncio.open_connection(
            host,
            port,
            ssl=ssl_context,
            server_hostname=server_hostname if ssl_context is not None else None,
        )
        _set_tcp_nodelay(self._writer.get_extra_info("socket"))

    async def adopt(self, sock: socket.socket) -> None:
        self._reader, self._writer = await asyncio.open_connection(sock=sock)

    async def recv(self, max_bytes: int) -> bytes:
        return await self._reader.read(max_bytes)

    async def send(self, data: bytes) -> None:
        self._writer.write(data)
        await self._writer.drain()

    async def write_eof(self) -> None:
        await self._writer.drain()
        if self._writer.can_write_eof():
            self._writer.write_eof()
        else:
            # TLS transports cannot half-close; closing sends close_notify.
            self._writer.close()

    def shutdown_read(self) -> None:
        pass

    async def start_tls(
        self,
        ssl_context: ssl.SSLContext,
        server_hostname: Optional[str],
        session: Optional[ssl.SSLSession],
        timeout: Optional[float],
    ) -> None:
        staged = isinstance(ssl_context, SessionResumingContext) and session is not None
        if staged:
            ssl_context.resume_session = session
        try:
            await self._writer.start_tls(
                ssl_context,
                server_hostname=server_hostname,
                ssl_handshake_timeout=timeout,
            )
        finally:
            if staged:
                ssl_context.resume_session = None

    async def stop_tls(self) -> None:
        raise UnsupportedFeatureError(
            "TLS downgrade",
            "The streams backend cannot leave TLS; use the buffered backend",
        )

    @property
    def ssl_object(self) -> Optional[ssl.SSLObject]:
        if self._writer is None:
            return None
        return self._writer.get_extra_info("ssl_object")

    def sockname(self):
        return self._writer.get_extra_info("sockname") if self._writer else None

    def peername(self):
        return self._writer.get_extra_info("peername") if self._writer else None

    def abort(self) -> None:
        if self._writer is not None:
            self._writer.transport.abort()

    async def close(self) -> None:
        writer = self._writer
        if writer is None:
            return
        try:
            writer.close()
            await asyncio.wait_for(writer.wait_closed(), timeout=0.5)
        except (asyncio.TimeoutError, OSError):
            writer.transport.abort()


class _BufferedSocketBackend:
    """Manually buffered non-blocking socket."""

    def __init__(self) -> None:
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._sock: Optional[socket.socket] = None
        self._sslobj: Optional[ssl.SSLObject] = None
        self._incoming: Optional[ssl.MemoryBIO] = None
        self._outgoing: Optional[ssl.MemoryBIO] = None

    async def open(self, host: str, port: int, ssl_context: Optional[ssl.SSLContext], server_hostname: Optional[str]) -> None:
        self._loop = asyncio.get_running_loop()
        infos = await self._loop.getaddrinfo(host, port, type=socket.SOCK_STREAM)
        last_error: Optional[OSError] = None
        for family, sock_type, proto, _, address in infos:
            sock = socket.socket(family, sock_type, proto)
            sock.setblocking(False)
            try:
                await self._loop.sock_connect(sock, address)
            except OSError as exc:
                sock.close()
                last_error = exc
                continue
            except BaseException:
                sock.close()
                raise
            self._sock = sock
            break
        if self._sock is None:
            raise last_error or OSError(f"No address found for {host}:{port}")
        _set_tcp_nodelay(self._sock)
        if ssl_context is not None:
            await self.start_tls(ssl_context, server_hostname, None, None)

    async def adopt(self, sock: socket.socket) -> None:
        self._loop = asyncio.get_running_loop()
        sock.setblocking(False)
        self._sock = sock

    async def _flush(self) -> None:
        if self._outgoing is None:
            return
        pending = self._outgoing.read()
        if pending:
            await self._loop.sock_sendall(self._sock, pending)

    async def _pull(self) -> bool:
        chunk = await self._loop.sock_recv(self._sock, RECV_SIZE)
        if not chunk:
            self._incoming.write_eof()
            return False
        self._incoming.write(chunk)
        return True

    async def recv(self, max_bytes: int) -> bytes:
        if self._sslobj is None:
            return await self._loop.sock_recv(self._sock, max_bytes)
        while True:
            try:
                data = self._sslobj.read(max_bytes)
            except ssl.SSLWantReadError:
                await self._flush()
                if not await self._pull():
                    return b""
                continue
            except (ssl.SSLZeroReturnError, ssl.SSLEOFError):
                return b""
            await self._flush()
            return data

    async def send(self, data: bytes) -> None:
        if self._sslobj is None:
            await self._loop.sock_sendall(self._sock, data)
            return
        view = memoryview(data)
        while view:
            try:
                written = self._sslobj.write(view)
            except ssl.SSLWantReadError:
                await self._flush()
                if not await self._pull():
                    raise ConnectionResetError("Connection closed during TLS write")
                continue
            view = view[written:]
        await self._flush()

    async def write_eof(self) -> None:
        if self._sslobj is not None:
            try:
                self._sslobj.unwrap()
            except ssl.SSLWantReadError:
                # close_notify is queued; the peer's answer is not awaited.
                pass
            await self._flush()
        self._sock.shutdown(socket.SHUT_WR)

    def shutdown_read(self) -> None:
        if self._sock is not None:
            with contextlib.suppress(OSError):
                self._sock.shutdown(socket.SHUT_RD)

    async def start_tls(
        self,
        ssl_context: ssl.SSLContext,
        server_hostname: Optional[str],
        session: Optional[ssl.SSLSession],
        timeout: Optional[float],
    ) -> None:
        self._incoming = ssl.MemoryBIO()
        self._outgoing = ssl.MemoryBIO()
        sslobj = ssl_context.wrap_bio(
            self._incoming,
            self._outgoing,
            server_side=False,
            server_hostname=server_hostname,
            session=session,
        )
        while True:
            try:
                sslobj.do_handshake()
                break
            except ssl.SSLWantReadError:
                await self._flush()
                if not await self._pull():
                    raise ConnectionResetError("Connection closed during TLS handshake")
        await self._flush()
        self._sslobj = sslobj

    async def stop_tls(self) -> None:
        if self._sslobj is None:
            return
        while True:
            try:
                self._sslobj.unwrap()
                break
            except ssl.SSLWantReadError:
                await self._flush()
                if not await self._pull():
                    break
        await self._flush()
        self._sslobj = None
        self._incoming = None
        self._outgoing = None

    @property
    def ssl_object(self) -> Optional[ssl.SSLObject]:
        return self._sslobj

    def sockname(self):
        return self._sock.getsockname() if self._sock else None

    def peername(self):
        return self._sock.getpeername() if self._sock else None

    def abort(self) -> None:
        sock = self._sock
        if sock is None or sock.fileno() < 0:
            return
        if self._loop is not None:
            with contextlib.suppress(NotImplementedError, ValueError, OSError):
                self._loop.remove_reader(sock.fileno())
                self._loop.remove_writer(sock.fileno())
        sock.close()

    async def close(self) -> None:
        sock = self._sock
        if sock is None or sock.fileno() < 0:
            return
        if self._sslobj is not None:
            # close_notify is queued even when unwrap wants the peer's reply.
            with contextlib.suppress(ssl.SSLError):
                self._sslobj.unwrap()
            with contextlib.suppress(OSError):
                await self._flush()
        self.abort()


_BACKENDS = {
    TransportBackend.STREAMS: _StreamsBackend,
    TransportBackend.BUFFERED: _BufferedSocketBackend,
}


class StreamTransport:
    """Byte stream to host:port with timeout-bounded reads and writes."""

    def __init__(self, backend: TransportBackend = TransportBackend.STREAMS) -> None:
        self.backend = TransportBackend(backend)
        self._backend = _BACKENDS[self.backend]()
        self._buffer = bytearray()
        self._eof = False
        self._read_closed = False
        self._write_closed = False
        self._closed = False
        self._cancelled = asyncio.Event()
        self._ssl_context: Optional[ssl.SSLContext] = None
        self.host: Optional[str] = None
        self.port: Optional[int] = None
        self.server_hostname: Optional[str] = None
        self.bytes_sent = 0
        self.bytes_received = 0

    # -------------------------
    # Construction
    # -------------------------
    @classmethod
    async def open(
        cls,
        host: str,
        port: int,
        *,
        backend: TransportBackend = TransportBackend.STREAMS,
        ssl_context: Optional[ssl.SSLContext] = None,
        server_hostname: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> "StreamTransport":
        transport = cls(backend)
        await transport.connect(host, port, ssl_context=ssl_context, server_hostname=server_hostname, timeout=timeout)
        return transport

    async def connect(
        self,
        host: str,
        port: int,
        *,
        ssl_context: Optional[ssl.SSLContext] = None,
        server_hostname: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.server_hostname = server_hostname or host
        try:
            await self._guarded(
                self._backend.open(host, port, ssl_context, self.server_hostname),
                timeout,
                f"Connect to {host}:{port}",
            )
        except TransportError:
            self._backend.abort()
            raise
        self._ssl_context = ssl_context
        logger.debug("Connected to %s:%s via %s backend (tls=%s)", host, port, self.backend.value, self.is_secure)

    async def adopt(self, sock: socket.socket, peer) -> None:
        """Take over an already connected socket (active-mode accept)."""

        await self._backend.adopt(sock)
        self.host = peer[0] if peer else None
        self.port = peer[1] if peer else None
        self.server_hostname = self.host

    # -------------------------
    # State
    # -------------------------
    @property
    def is_secure(self) -> bool:
        return self._backend.ssl_object is not None

    @property
    def ssl_session(self) -> Optional[ssl.SSLSession]:
        obj = self._backend.ssl_object
        return obj.session if obj is not None else None

    @property
    def session_reused(self) -> bool:
        obj = self._backend.ssl_object
        return bool(obj is not None and obj.session_reused)

    @property
    def local_address(self):
        return self._backend.sockname()

    @property
    def peer_address(self):
        return self._backend.peername()

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def at_eof(self) -> bool:
        return self._eof and not self._buffer

    # -------------------------
    # Reading
    # -------------------------
    async def _fill(self, timeout: Optional[float]) -> None:
        chunk = await self._guarded(self._backend.recv(RECV_SIZE), timeout, "Read")
        if not chunk:
            self._eof = True
            return
        self._buffer.extend(chunk)
        self.bytes_received += len(chunk)

    async def read(self, min_bytes: int = 1, max_bytes: int = RECV_SIZE, timeout: Optional[float] = None) -> ReadResult:
        """Wait for ``min_bytes`` (or EOF, or timeout) and return up to ``max_bytes``."""

        if self._read_closed:
            return ReadResult(b"", True)
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        wanted = max(min_bytes, 1)
        while len(self._buffer) < wanted and not self._eof:
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                break
            try:
                await self._fill(remaining)
            except TransportTimeoutError:
                break
        if not self._buffer and not self._eof:
            raise TransportTimeoutError("Read", timeout)
        data = bytes(self._buffer[:max_bytes])
        del self._buffer[:max_bytes]
        return ReadResult(data, self.at_eof)

    async def readline(self, timeout: Optional[float] = None, limit: int = MAX_LINE) -> bytes:
        """Return one line including its terminator, or b"" at end of stream."""

        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while True:
            index = self._buffer.find(b"\n")
            if index >= 0:
                line = bytes(self._buffer[:index + 1])
                del self._buffer[:index + 1]
                return line
            if self._eof or self._read_closed:
                line = bytes(self._buffer)
                self._buffer.clear()
                return line
            if len(self._buffer) > limit:
                raise TransportError(f"Line exceeds {limit} bytes")
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                raise TransportTimeoutError("Read line", timeout)
            await self._fill(remaining)

    # -------------------------
    # Writing
    # -------------------------
    async def write(self, data: bytes, timeout: Optional[float] = None) -> None:
        """Send ``data`` and flush it to the kernel within ``timeout``."""

        if self._write_closed:
            raise TransportError("Write side is closed")
        if not data:
            return
        await self._guarded(self._backend.send(bytes(data)), timeout, "Write")
        self.bytes_sent += len(data)

    async def close_write(self, timeout: Optional[float] = None) -> None:
        if self._write_closed or self._closed:
            return
        await self._guarded(self._backend.write_eof(), timeout, "Close write")
        self._write_closed = True

    async def close_read(self) -> None:
        if self._read_closed:
            return
        self._read_closed = True
        self._buffer.clear()
        self._backend.shutdown_read()

    # -------------------------
    # TLS
    # -------------------------
    async def start_tls(
        self,
        ssl_context: Optional[ssl.SSLContext] = None,
        *,
        session: Optional[ssl.SSLSession] = None,
        timeout: Optional[float] = None,
    ) -> None:
        """Upgrade to TLS in place, optionally resuming ``session``."""

        ctx = ssl_context or self._ssl_context
        if ctx is None:
            raise ValueError("An SSL context is required to start TLS")
        if self.is_secure:
            return
        if self._buffer:
            raise TransportError("Unread plaintext buffered before TLS upgrade")
        await self._guarded(
            self._backend.start_tls(ctx, self.server_hostname, session, timeout),
            timeout,
            "TLS handshake",
        )
        self._ssl_context = ctx
        logger.debug("TLS established with %s:%s (session reused=%s)", self.host, self.port, self.session_reused)

    async def stop_tls(self, timeout: Optional[float] = None) -> None:
        if not self.is_secure:
            return
        await self._guarded(self._backend.stop_tls(), timeout, "TLS shutdown")

    # -------------------------
    # Teardown
    # -------------------------
    def cancel(self) -> None:
        """Abort immediately; pending and later operations raise TransportCancelledError."""

        if self._cancelled.is_set():
            return
        self._cancelled.set()
        self._backend.abort()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._cancelled.is_set():
            return
        await self._backend.close()

    async def _guarded(self, coro: Awaitable, timeout: Optional[float], operation: str):
        if self._cancelled.is_set():
            coro.close()
            raise TransportCancelledError(f"{operation} cancelled")
        task = asyncio.ensure_future(coro)
        waiter = asyncio.ensure_future(self._cancelled.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if self._cancelled.is_set():
            if task.done():
                if not task.cancelled():
                    task.exception()
            else:
                task.cancel()
                await asyncio.wait({task})
            raise TransportCancelledError(f"{operation} cancelled")

        if task not in done:
            task.cancel()
            await asyncio.wait({task})
            raise TransportTimeoutError(operation, timeout)

        try:
            return task.result()
        except FTPProviderError:
            raise
        except (OSError, EOFError) as exc:
            raise TransportError(
                f"{operation} failed: {exc}",
                extra={"host": self.host, "port": self.port},
            ) from exc


class TransportListener:
    """Listening endpoint that yields one inbound transport (active mode)."""

    def __init__(self, sock: socket.socket, backend: TransportBackend) -> None:
        self._sock = sock
        self._backend = backend

    @classmethod
    def open(cls, host: str, backend: TransportBackend = TransportBackend.STREAMS) -> "TransportListener":
        family = socket.AF_INET6 if ":" in host else socket.AF_INET
        sock = socket.socket(family, socket.SOCK_STREAM)
        try:
            sock.setblocking(False)
            sock.bind((host, 0))
            sock.listen(1)
        except OSError as exc:
            sock.close()
            raise TransportError(f"Failed to listen on {host}: {exc}") from exc
        return cls(sock, backend)

    @property
    def port(self) -> int:
        if self._sock.fileno() < 0:
            return 0
        return self._sock.getsockname()[1]

    async def wait_bound(self, timeout: float, interval: float = 0.1) -> int:
        """Poll until the listener reports a bound port."""

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while self.port < 1:
            if loop.time() >= deadline:
                raise TransportTimeoutError("Listener bind", timeout)
            await asyncio.sleep(interval)
        return self.port

    async def accept(self, timeout: Optional[float] = None) -> StreamTransport:
        loop = asyncio.get_running_loop()
        try:
            conn, peer = await asyncio.wait_for(loop.sock_accept(self._sock), timeout)
        except asyncio.TimeoutError as exc:
            raise TransportTimeoutError("Accept data connection", timeout) from exc
        except OSError as exc:
            raise TransportError(f"Accept failed: {exc}") from exc
        finally:
            self.close()
        transport = StreamTransport(self._backend)
        await transport.adopt(conn, peer)
        return transport

    def close(self) -> None:
        if self._sock.fileno() >= 0:
            self._sock.close()
