"""Directory listing over MLSD/LIST and the concurrent subtree walk."""
from __future__ import annotations

import asyncio
import inspect
import logging
from contextlib import AbstractAsyncContextManager
from enum import Enum
from typing import Any, Callable, List, Optional

from ftpprovider.core.exceptions import ProtocolError
from ftpprovider.core.ftp_control import ControlChannel, FTPCommand
from ftpprovider.core.tasks import FanOut
from ftpprovider.models import FileEntry
from ftpprovider.services.parsers.listing_parser import ListingParser
from ftpprovider.services.transfer_service import TransferEngine

logger = logging.getLogger(__name__)

FoundItems = Callable[[List[FileEntry]], Any]
SessionOpener = Callable[[], AbstractAsyncContextManager]


class Capability(str, Enum):
    UNKNOWN = "unknown"
    SUPPORTED = "supported"
    UNSUPPORTED = "unsupported"


class CapabilityLatch:
    """Tri-state capability flag that can only move towards ``UNSUPPORTED``."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._state = Capability.UNKNOWN

    @property
    def state(self) -> Capability:
        return self._state

    @property
    def usable(self) -> bool:
        return self._state is not Capability.UNSUPPORTED

    def confirm(self) -> None:
        if self._state is Capability.UNKNOWN:
            self._state = Capability.SUPPORTED

    def revoke(self) -> None:
        if self._state is not Capability.UNSUPPORTED:
            logger.info("%s not supported by server, falling back", self.name)
        self._state = Capability.UNSUPPORTED


def is_unsupported_reply(exc: ProtocolError) -> bool:
    """50x: command not recognised or not implemented."""

    return exc.code is not None and 500 <= exc.code < 510


class DirectoryLister:
    """Lists one directory on a control channel, preferring MLSD."""

    def __init__(self, parser: ListingParser, machine_listing: CapabilityLatch) -> None:
        self.parser = parser
        self.machine_listing = machine_listing

    async def list(self, control: ControlChannel, path: str) -> List[FileEntry]:
        server_path = control.config.server_path(path)
        if self.machine_listing.usable:
            try:
                text = await self._fetch(control, FTPCommand.MLSD, server_path)
            except ProtocolError as exc:
                if not is_unsupported_reply(exc):
                    raise
                self.machine_listing.revoke()
            else:
                self.machine_listing.confirm()
                return self.parser.parse_listing(text, path, machine=True)
        text = await self._fetch(control, FTPCommand.LIST, server_path)
        return self.parser.parse_listing(text, path, machine=False)

    async def _fetch(self, control: ControlChannel, command: FTPCommand, server_path: str) -> str:
        engine = TransferEngine(control)
        parts: List[bytes] = []
        async with control.exclusive():
            channel = await engine.open_transfer(command, server_path, type_code="A")

            async def pump() -> None:
                transport = await channel.open()
                while True:
                    result = await transport.read(1, control.config.chunk_size, timeout=control.config.request_timeout)
                    if result.data:
                        parts.append(result.data)
                    if result.eof:
                        return

            await engine.run_transfer(channel, pump, path=server_path)
        return b"".join(parts).decode(control.config.encoding, errors="replace")


class RecursiveLister:
    """Walks a subtree, one control/data channel pair per directory branch."""

    def __init__(self, open_session: SessionOpener, lister: DirectoryLister, max_connections: int = 4) -> None:
        self._open_session = open_session
        self._lister = lister
        self._slots = asyncio.Semaphore(max(1, max_connections))

    async def walk(self, path: str, found_items: Optional[FoundItems] = None) -> List[FileEntry]:
        collected: List[FileEntry] = []
        fan_out = FanOut(name=f"walk {path}", logger=logger)

        async def visit(directory: str) -> None:
            async with self._slots:
                async with self._open_session() as control:
                    entries = await self._lister.list(control, directory)
            collected.extend(entries)
            if found_items:
                result = found_items(entries)
                if inspect.isawaitable(result):
                    await result
            for entry in entries:
                if entry.is_directory:
                    fan_out.spawn(visit(entry.path))

        fan_out.spawn(visit(path))
        await fan_out.wait()
        return collected
