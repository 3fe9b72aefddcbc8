"""Unit tests for RETR/STOR orchestration and upload strategies."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from ftpprovider.core.config import SessionConfig, UploadStrategy
from ftpprovider.core.exceptions import (
    ProtocolError,
    TransportCancelledError,
    TransportError,
    TransportTimeoutError,
)
from ftpprovider.core.ftp_control import ControlChannel, ControlState
from ftpprovider.services.transfer_service import (
    PartedUpload,
    SerialUpload,
    TransferEngine,
    chunk_size_for,
    upload_strategy_for,
)
from ftpprovider.services.utils.local_io import BytesSource
from tests.conftest import FakeDataTransport, ScriptedTransport, TransportQueue

KIB = 1024


def engine_for(script, data, **config_overrides):
    control_transport = ScriptedTransport({
        "USER": "331 Password required",
        "PASS": "230 Logged in",
        "PASV": "227 Entering Passive Mode (127,0,0,1,4,1)",
        "TYPE": "200 Type set",
        **script,
    })
    channel = ControlChannel(
        SessionConfig(host="ftp.example.com", **config_overrides),
        transport_factory=TransportQueue(control_transport, data),
    )
    return TransferEngine(channel), control_transport


def run_with_connect(engine, coro_factory):
    async def scenario():
        await engine.control.connect()
        return await coro_factory()

    return asyncio.run(scenario())


class TestChunkSize:
    @pytest.mark.parametrize(
        ("total", "expected"),
        [
            (0, 32 * KIB),
            (256 * KIB - 1, 32 * KIB),
            (256 * KIB, 64 * KIB),
            (5 * 1024 * KIB, 128 * KIB),
            (20 * 1024 * KIB, 256 * KIB),
            (100 * 1024 * KIB, 512 * KIB),
        ],
    )
    def test_chunk_size_table(self, total, expected):
        assert chunk_size_for(total) == expected


class TestRetrieve:
    """Tests for downloads over a scripted control channel."""

    def test_whole_file(self):
        data = FakeDataTransport([b"hello ", b"world"])
        engine, control = engine_for({"RETR": "150 Opening\n226 Transfer complete"}, data)
        received = []

        count = run_with_connect(engine, lambda: engine.retrieve("/greeting.txt", on_data=received.append))

        assert count == 11
        assert b"".join(received) == b"hello world"
        assert control.sent[-3:] == ["PASV", "TYPE I", "RETR /greeting.txt"]
        assert data.closed is True
        assert engine.control.state is ControlState.READY

    def test_offset_sends_rest(self):
        data = FakeDataTransport([b"world"])
        engine, control = engine_for(
            {"REST": "350 Restarting at 6", "RETR": "150 Opening\n226 Transfer complete"},
            data,
        )

        run_with_connect(engine, lambda: engine.retrieve("/greeting.txt", offset=6, on_data=lambda chunk: None))

        assert control.sent[-3:] == ["TYPE I", "REST 6", "RETR /greeting.txt"]

    def test_bounded_length_accepts_abort_reply(self):
        data = FakeDataTransport([b"hello", b"world"])
        engine, control = engine_for({"RETR": "150 Opening\n426 Transfer aborted"}, data)
        received = []

        count = run_with_connect(engine, lambda: engine.retrieve("/greeting.txt", length=3, on_data=received.append))

        assert count == 3
        assert received == [b"hel"]
        assert data.cancelled is True

    def test_progress_reports(self):
        data = FakeDataTransport([b"ab", b"cd"])
        engine, _ = engine_for({"RETR": "150 Opening\n226 Transfer complete"}, data)
        progress = []

        run_with_connect(
            engine,
            lambda: engine.retrieve("/f", expected_size=4, on_data=lambda chunk: None, on_progress=progress.append),
        )

        assert [item.completed_bytes for item in progress] == [2, 4]
        assert progress[-1].fraction == 1.0

    def test_missing_file(self):
        data = FakeDataTransport()
        engine, control = engine_for({"RETR": "550 No such file"}, data)

        with pytest.raises(ProtocolError) as exc_info:
            run_with_connect(engine, lambda: engine.retrieve("/missing", on_data=lambda chunk: None))

        assert exc_info.value.code == 550
        assert exc_info.value.path == "/missing"
        assert data.closed is True
        assert not control.lines

    def test_refused_rest_resyncs_control_channel(self):
        data = FakeDataTransport()
        engine, control = engine_for(
            {"REST": "502 REST not implemented", "RETR": "550 Not restarting"},
            data,
        )

        with pytest.raises(ProtocolError) as exc_info:
            run_with_connect(engine, lambda: engine.retrieve("/f", offset=10, on_data=lambda chunk: None))

        assert exc_info.value.code == 502
        assert data.cancelled is True
        assert not control.lines
        assert engine.control.state is ControlState.READY

    def test_data_failure_cancels_channel(self):
        data = FakeDataTransport(fail_read=TransportError("connection reset"))
        engine, control = engine_for({"RETR": "150 Opening\n226 Transfer complete"}, data)

        with pytest.raises(TransportError):
            run_with_connect(engine, lambda: engine.retrieve("/f", on_data=lambda chunk: None))

        assert data.cancelled is True
        assert not control.lines


class TestStore:
    """Tests for uploads over a scripted control channel."""

    def test_chunks_written_then_half_closed(self):
        data = FakeDataTransport()
        engine, control = engine_for({"STOR": "150 Ok to send\n226 Transfer complete"}, data)
        progress = []

        sent = run_with_connect(
            engine,
            lambda: engine.store("/up.bin", BytesSource(b"abcdef"), chunk_size=4, total=6, on_progress=progress.append),
        )

        assert sent == 6
        assert data.written == [b"abcd", b"ef"]
        assert data.write_closed is True
        assert control.sent[-1] == "STOR /up.bin"
        assert [item.completed_bytes for item in progress] == [4, 6]

    def test_rejected_store(self):
        data = FakeDataTransport()
        engine, _ = engine_for({"STOR": "553 Permission denied"}, data)

        with pytest.raises(ProtocolError) as exc_info:
            run_with_connect(engine, lambda: engine.store("/ro/up.bin", BytesSource(b"x")))

        assert exc_info.value.code == 553


class TestSerialUpload:
    def test_seeks_and_stores_remaining_bytes(self):
        engine = MagicMock()
        engine.store = AsyncMock(return_value=4)
        source = BytesSource(b"abcdefgh")

        sent = asyncio.run(SerialUpload(engine).upload(source, "/f", offset=4))

        assert sent == 4
        args, kwargs = engine.store.call_args
        assert args == ("/f", source)
        assert kwargs["offset"] == 4
        assert kwargs["total"] == 8
        assert kwargs["completed"] == 4


class TestPartedUpload:
    """Tests for chunked uploads with per-chunk retries."""

    def _upload(self, side_effect=None):
        upload = PartedUpload(MagicMock())
        upload._store_chunk = AsyncMock(side_effect=side_effect, return_value=0)
        return upload

    def test_transient_failures_are_retried(self):
        upload = self._upload([TransportError("reset"), ProtocolError(451, "Local error"), 10])

        sent = asyncio.run(upload.upload(BytesSource(b"x" * 10), "/f"))

        assert sent == 10
        assert upload._store_chunk.await_count == 3

    def test_gives_up_after_retries(self):
        upload = self._upload(TransportError("reset"))

        with pytest.raises(TransportError):
            asyncio.run(upload.upload(BytesSource(b"x" * 10), "/f"))

        assert upload._store_chunk.await_count == PartedUpload.max_retries + 1

    def test_cancellation_is_not_retried(self):
        upload = self._upload(TransportCancelledError("cancelled"))

        with pytest.raises(TransportCancelledError):
            asyncio.run(upload.upload(BytesSource(b"x" * 10), "/f"))

        assert upload._store_chunk.await_count == 1

    def test_chunk_offsets(self):
        upload = self._upload()
        payload = bytes(300 * KIB)

        sent = asyncio.run(upload.upload(BytesSource(payload), "/big"))

        offsets = [call.args[2] for call in upload._store_chunk.await_args_list]
        sizes = [len(call.args[1]) for call in upload._store_chunk.await_args_list]
        assert sent == len(payload)
        assert offsets == [0, 64 * KIB, 128 * KIB, 192 * KIB, 256 * KIB]
        assert sizes == [64 * KIB] * 4 + [44 * KIB]

    def test_resume_from_offset(self):
        upload = self._upload()
        progress = []

        sent = asyncio.run(upload.upload(BytesSource(bytes(200)), "/f", offset=100, on_progress=progress.append))

        assert sent == 100
        upload._store_chunk.assert_awaited_once()
        assert upload._store_chunk.await_args.args[2] == 100
        assert progress[-1].completed_bytes == 200

    def test_empty_file_stores_one_empty_chunk(self):
        upload = self._upload()

        sent = asyncio.run(upload.upload(BytesSource(b""), "/empty"))

        assert sent == 0
        upload._store_chunk.assert_awaited_once_with("/empty", b"", 0)


class TestStrategySelection:
    @pytest.mark.parametrize(
        ("strategy", "expected"),
        [(UploadStrategy.SERIAL, SerialUpload), (UploadStrategy.PARTED, PartedUpload)],
    )
    def test_strategy_for_config(self, strategy, expected):
        engine = MagicMock()
        engine.config.upload_strategy = strategy

        assert isinstance(upload_strategy_for(engine), expected)


class StallingControlTransport(ScriptedTransport):
    """Control connection whose first ``226`` reply never arrives."""

    def __init__(self, script):
        super().__init__(script)
        self.stalled = False

    async def readline(self, timeout=None):
        if not self.stalled and self.lines and self.lines[0].startswith(b"226"):
            self.stalled = True
            raise TransportTimeoutError("Read line", timeout)
        return await super().readline(timeout)


class TestPartedUploadReconnect:
    """Chunk retries after the control channel was torn down."""

    SCRIPT = {"STOR": "150 Ok to send\n226 Transfer complete"}

    def _first_engine(self):
        first_data = FakeDataTransport()
        stalling = StallingControlTransport({
            "USER": "331 Password required",
            "PASS": "230 Logged in",
            "PASV": "227 Entering Passive Mode (127,0,0,1,4,1)",
            "TYPE": "200 Type set",
            **self.SCRIPT,
        })
        channel = ControlChannel(
            SessionConfig(host="ftp.example.com"),
            transport_factory=TransportQueue(stalling, first_data),
        )
        return TransferEngine(channel), stalling

    def test_timeout_retried_on_new_control_channel(self):
        engine, stalling = self._first_engine()
        second_data = FakeDataTransport()
        fresh, fresh_control = engine_for(self.SCRIPT, second_data)
        reopened = []

        async def reopen():
            reopened.append(fresh.control)
            return await fresh.control.connect()

        sent = run_with_connect(engine, lambda: PartedUpload(engine, reopen).upload(BytesSource(b"x" * 10), "/f"))

        assert sent == 10
        assert reopened == [fresh.control]
        assert stalling.cancelled is True
        assert fresh_control.sent[-1] == "STOR /f"
        assert second_data.written == [b"x" * 10]

    def test_timeout_without_reopen_reports_the_timeout(self):
        engine, stalling = self._first_engine()

        with pytest.raises(TransportTimeoutError):
            run_with_connect(engine, lambda: PartedUpload(engine).upload(BytesSource(b"x" * 10), "/f"))

        assert stalling.sent.count("STOR /f") == 1
