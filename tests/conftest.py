"""Pytest configuration and shared fixtures for the FTP provider tests."""

from collections import deque
from datetime import datetime, timezone
from typing import Deque, Dict, List, Optional, Union

import pytest

from ftpprovider.core.config import SessionConfig
from ftpprovider.core.transport import ReadResult

# Test constants
TEST_HOST = "ftp.example.com"
TEST_USER = "testuser"
TEST_PASS = "testpass"
FIXED_NOW = datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)

Script = Dict[str, Union[str, List[str]]]


class ScriptedTransport:
    """
    Stands in for StreamTransport on a control connection.

    Replies are looked up by full command line first, then by verb; a list
    of replies is consumed in order and its last item repeats.
    """

    def __init__(self, script: Optional[Script] = None, greeting: str = "220 Service ready"):
        self.script: Script = dict(script or {})
        self.sent: List[str] = []
        self.lines: Deque[bytes] = deque()
        self.is_secure = False
        self.ssl_session = None
        self.tls_started = 0
        self.cancelled = False
        self.closed = False
        self.peer_address = ("127.0.0.1", 21)
        self.local_address = ("127.0.0.1", 50000)
        self._queue(greeting)

    def _queue(self, reply: str) -> None:
        for line in reply.split("\n"):
            self.lines.append((line + "\r\n").encode())

    def _reply_for(self, line: str) -> str:
        verb = line.split(" ", 1)[0].upper()
        entry = self.script.get(line, self.script.get(verb))
        if entry is None:
            return "502 Command not implemented."
        if isinstance(entry, list):
            return entry.pop(0) if len(entry) > 1 else entry[0]
        return entry

    async def write(self, data: bytes, timeout: Optional[float] = None) -> None:
        for line in data.decode().split("\r\n"):
            if not line:
                continue
            self.sent.append(line)
            self._queue(self._reply_for(line))

    async def readline(self, timeout: Optional[float] = None) -> bytes:
        if not self.lines:
            return b""
        return self.lines.popleft()

    async def start_tls(self, ssl_context=None, *, session=None, timeout=None) -> None:
        self.is_secure = True
        self.tls_started += 1

    def cancel(self) -> None:
        self.cancelled = True

    async def close(self) -> None:
        self.closed = True


class FakeDataTransport:
    """Data connection replaying prepared chunks and recording writes."""

    is_secure = False

    def __init__(self, chunks=(), fail_read=None):
        self.chunks = list(chunks)
        self.fail_read = fail_read
        self.written = []
        self.write_closed = False
        self.cancelled = False
        self.closed = False

    async def read(self, min_bytes=1, max_bytes=64 * 1024, timeout=None):
        if self.fail_read is not None:
            raise self.fail_read
        if not self.chunks:
            return ReadResult(b"", True)
        data = self.chunks.pop(0)
        if len(data) > max_bytes:
            self.chunks.insert(0, data[max_bytes:])
            data = data[:max_bytes]
        return ReadResult(data, not self.chunks)

    async def write(self, data, timeout=None):
        self.written.append(data)

    async def close_write(self, timeout=None):
        self.write_closed = True

    def cancel(self):
        self.cancelled = True

    async def close(self):
        self.closed = True


class TransportQueue:
    """Transport factory handing out prepared transports in order."""

    def __init__(self, *transports):
        self.transports = list(transports)
        self.calls: List[dict] = []

    async def __call__(self, host, port, **kwargs):
        self.calls.append({"host": host, "port": port, **kwargs})
        return self.transports.pop(0)


@pytest.fixture
def session_config() -> SessionConfig:
    """Plain FTP session config with test credentials."""
    return SessionConfig.from_url(f"ftp://{TEST_USER}:{TEST_PASS}@{TEST_HOST}/")


@pytest.fixture
def fixed_now():
    """Clock used for yearless listing dates."""
    return lambda: FIXED_NOW
