"""Unit tests for directory listing and the subtree walk."""

import asyncio
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock

import pytest

from ftpprovider.core.config import SessionConfig
from ftpprovider.core.exceptions import ProtocolError
from ftpprovider.core.ftp_control import FTPCommand
from ftpprovider.models import FileEntry, FileKind
from ftpprovider.services.listing_service import (
    Capability,
    CapabilityLatch,
    DirectoryLister,
    RecursiveLister,
    is_unsupported_reply,
)
from ftpprovider.services.parsers.listing_parser import ListingParser

UNIX_LISTING = (
    "drwxr-xr-x 2 u g 4096 Feb 01 09:00 sub\r\n"
    "-rw-r--r-- 1 u g 12 Feb 01 09:00 a.txt\r\n"
)
MACHINE_LISTING = "type=cdir; /docs\r\ntype=dir; sub\r\ntype=file;size=12; a.txt\r\n"


class TestCapabilityLatch:
    def test_starts_unknown_and_usable(self):
        latch = CapabilityLatch("MLSD")

        assert latch.state is Capability.UNKNOWN
        assert latch.usable is True

    def test_confirm(self):
        latch = CapabilityLatch("MLSD")
        latch.confirm()

        assert latch.state is Capability.SUPPORTED

    def test_revoke_is_final(self):
        latch = CapabilityLatch("MLSD")
        latch.confirm()
        latch.revoke()
        latch.confirm()

        assert latch.state is Capability.UNSUPPORTED
        assert latch.usable is False

    @pytest.mark.parametrize(("code", "expected"), [(500, True), (502, True), (504, True), (550, False), (None, False)])
    def test_unsupported_reply(self, code, expected):
        assert is_unsupported_reply(ProtocolError(code, "reply")) is expected


class TestDirectoryLister:
    """Tests for MLSD preference and the LIST fallback."""

    def _lister(self, fetch_results):
        lister = DirectoryLister(ListingParser(), CapabilityLatch("MLSD"))
        lister._fetch = AsyncMock(side_effect=fetch_results)
        return lister

    def _control(self):
        control = MagicMock()
        control.config = SessionConfig(host="h", base_path="/home")
        return control

    def test_machine_listing_used_when_supported(self):
        lister = self._lister([MACHINE_LISTING])

        entries = asyncio.run(lister.list(self._control(), "/docs"))

        assert [entry.path for entry in entries] == ["/docs/sub", "/docs/a.txt"]
        assert lister.machine_listing.state is Capability.SUPPORTED
        assert lister._fetch.await_args.args[1:] == (FTPCommand.MLSD, "/home/docs")

    def test_falls_back_to_list_once(self):
        lister = self._lister([ProtocolError(500, "MLSD not understood"), UNIX_LISTING, UNIX_LISTING])
        control = self._control()

        first = asyncio.run(lister.list(control, "/docs"))
        asyncio.run(lister.list(control, "/docs"))

        commands = [call.args[1] for call in lister._fetch.await_args_list]
        assert commands == [FTPCommand.MLSD, FTPCommand.LIST, FTPCommand.LIST]
        assert [entry.kind for entry in first] == [FileKind.DIRECTORY, FileKind.REGULAR]
        assert lister.machine_listing.usable is False

    def test_missing_directory_is_not_a_fallback(self):
        lister = self._lister([ProtocolError(550, "No such directory")])

        with pytest.raises(ProtocolError) as exc_info:
            asyncio.run(lister.list(self._control(), "/missing"))

        assert exc_info.value.code == 550
        assert lister.machine_listing.usable is True
        assert lister._fetch.await_count == 1


class TreeLister:
    """Serves a fixed directory tree and tracks concurrent sessions."""

    def __init__(self, tree, delay=0.005, fail_on=None):
        self.tree = tree
        self.delay = delay
        self.fail_on = fail_on
        self.active = 0
        self.peak = 0
        self.listed = []

    async def list(self, control, path):
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await asyncio.sleep(self.delay)
            if path == self.fail_on:
                raise ProtocolError(550, "Permission denied", path=path)
            self.listed.append(path)
            return [
                FileEntry(name=name, path=ListingParser.join(path, name), kind=kind)
                for name, kind in self.tree.get(path, [])
            ]
        finally:
            self.active -= 1


def open_session_factory(opened):
    @asynccontextmanager
    async def open_session():
        opened.append(1)
        yield MagicMock()

    return open_session


TREE = {
    "/": [("a", FileKind.DIRECTORY), ("b", FileKind.DIRECTORY), ("root.txt", FileKind.REGULAR)],
    "/a": [("a1", FileKind.DIRECTORY), ("a.txt", FileKind.REGULAR), ("link", FileKind.SYMLINK)],
    "/a/a1": [("deep.txt", FileKind.REGULAR)],
    "/b": [("b1", FileKind.DIRECTORY), ("b2", FileKind.DIRECTORY)],
    "/b/b1": [],
    "/b/b2": [("x", FileKind.REGULAR), ("y", FileKind.REGULAR)],
}


class TestRecursiveLister:
    """Tests for the concurrent subtree walk."""

    def test_walks_every_directory(self):
        opened = []
        tree_lister = TreeLister(TREE)
        walker = RecursiveLister(open_session_factory(opened), tree_lister, max_connections=4)

        entries = asyncio.run(walker.walk("/"))

        assert len(entries) == 11
        assert sorted(tree_lister.listed) == sorted(TREE)
        assert len(opened) == len(TREE)

    def test_symlinks_are_not_followed(self):
        tree_lister = TreeLister(TREE)
        walker = RecursiveLister(open_session_factory([]), tree_lister)

        asyncio.run(walker.walk("/"))

        assert "/a/link" not in tree_lister.listed

    def test_concurrency_is_bounded(self):
        tree_lister = TreeLister(TREE, delay=0.02)
        walker = RecursiveLister(open_session_factory([]), tree_lister, max_connections=2)

        asyncio.run(walker.walk("/"))

        assert tree_lister.peak <= 2

    def test_found_items_called_per_directory(self):
        batches = []

        async def found(items):
            batches.append(len(items))

        walker = RecursiveLister(open_session_factory([]), TreeLister(TREE))

        asyncio.run(walker.walk("/", found))

        assert sorted(batches) == sorted(len(children) for children in TREE.values())

    def test_branch_failure_propagates(self):
        walker = RecursiveLister(open_session_factory([]), TreeLister(TREE, fail_on="/b"))

        with pytest.raises(ProtocolError) as exc_info:
            asyncio.run(walker.walk("/"))

        assert exc_info.value.path == "/b"
