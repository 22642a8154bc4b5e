"""Tests for the session relay using in-memory socket fakes and a pty-backed terminal."""

from __future__ import annotations

import asyncio
import io
import json
import os
import pty
import signal
import termios
import threading

import pytest
import websockets
from websockets.exceptions import ConnectionClosed
from websockets.frames import Close

from catty.pty import protocol
from catty.pty.outcome import Disconnected, ProcessExited, ReplacedByPeer, UserInterrupted
from catty.pty.paste import PASTE_END, PASTE_START
from catty.pty.shell import ConnectOptions, RelayTimings, SessionRelay, connect_to_session
from catty.pty.syncback import SyncBackWriter
from catty.pty.terminal import Terminal
from catty.pty.upload import plan_paste


class FakeSocket:
    def __init__(self) -> None:
        self.sent: list[bytes | dict] = []
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.closed = False
        self.terminated = False

    def push(self, item) -> None:
        self.incoming.put_nowait(item)

    async def send_control(self, message) -> None:
        self.sent.append(json.loads(protocol.encode(message)))

    async def send_input(self, data: bytes) -> None:
        self.sent.append(data)

    async def receive(self):
        item = await self.incoming.get()
        if isinstance(item, BaseException):
            raise item
        return item

    async def close(self) -> None:
        self.closed = True

    def terminate(self) -> None:
        self.terminated = True

    def controls(self, type_: str) -> list[dict]:
        return [m for m in self.sent if isinstance(m, dict) and m["type"] == type_]


class FakeTerminal:
    def __init__(self) -> None:
        self.input_fd, self._write_fd = os.pipe()
        self.is_raw = False
        self.raw_entered = 0
        self.paste = False
        self.size = (100, 30)
        self.resize_callbacks: list = []

    def enter_raw_mode(self) -> None:
        self.is_raw = True
        self.raw_entered += 1

    def enable_bracketed_paste(self) -> None:
        self.paste = True

    def disable_bracketed_paste(self) -> None:
        self.paste = False

    def restore(self) -> None:
        self.is_raw = False
        self.paste = False

    def get_size(self) -> tuple[int, int]:
        return self.size

    def on_resize(self, callback) -> None:
        self.resize_callbacks.append(callback)

    def off_resize(self, callback) -> None:
        if callback in self.resize_callbacks:
            self.resize_callbacks.remove(callback)

    def type(self, data: bytes) -> None:
        os.write(self._write_fd, data)

    def close(self) -> None:
        os.close(self.input_fd)
        os.close(self._write_fd)


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


async def wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


RESIZE = {"type": "resize", "cols": 100, "rows": 30}
EXIT_0 = '{"type":"exit","code":0}'


@pytest.fixture
def terminal():
    term = FakeTerminal()
    yield term
    term.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def stdout() -> io.BytesIO:
    return io.BytesIO()


@pytest.fixture
def stderr() -> io.StringIO:
    return io.StringIO()


@pytest.fixture
def make_relay(terminal, clock, stdout, stderr, tmp_path):
    def factory(sock=None, *, connect=None, sync_back=False, label="brave-tiger-1234", **timings):
        if connect is None:

            async def connect(url, token, headers):
                return sock

        timings.setdefault("health_interval", 0.01)
        return SessionRelay(
            ConnectOptions(
                connect_url="wss://brave-tiger.catty.run/connect",
                connect_token="ct_test_token",
                headers={"fly-force-instance-id": "m_abc123"},
                sync_back=sync_back,
                label=label,
            ),
            terminal=terminal,
            writer=SyncBackWriter(str(tmp_path)),
            connect=connect,
            stdout=stdout,
            stderr=stderr,
            clock=clock,
            timings=RelayTimings(**timings),
            install_signal_handlers=False,
        )

    return factory


async def start(relay: SessionRelay, sock: FakeSocket, sent: int = 1) -> asyncio.Task:
    task = asyncio.ensure_future(relay.run())
    await wait_until(lambda: len(sock.sent) >= sent)
    return task


class TestSessionOpen:
    @pytest.mark.asyncio
    async def test_connects_with_token_and_routing_headers(self, make_relay) -> None:
        sock = FakeSocket()
        calls = []

        async def connect(url, token, headers):
            calls.append((url, token, headers))
            return sock

        task = await start(make_relay(connect=connect), sock)
        sock.push(EXIT_0)
        await task

        assert calls == [
            (
                "wss://brave-tiger.catty.run/connect",
                "ct_test_token",
                {"fly-force-instance-id": "m_abc123"},
            )
        ]

    @pytest.mark.asyncio
    async def test_resize_is_first_message_and_terminal_is_raw(self, make_relay, terminal) -> None:
        sock = FakeSocket()
        task = await start(make_relay(sock), sock)

        assert sock.sent[0] == RESIZE
        assert terminal.is_raw
        assert terminal.paste

        sock.push(EXIT_0)
        await task

    @pytest.mark.asyncio
    async def test_sync_back_is_requested_after_resize(self, make_relay) -> None:
        sock = FakeSocket()
        task = await start(make_relay(sock, sync_back=True), sock, sent=2)

        assert sock.sent[:2] == [RESIZE, {"type": "sync_back", "enabled": True}]

        sock.push(EXIT_0)
        await task

    @pytest.mark.asyncio
    async def test_sync_back_not_requested_by_default(self, make_relay) -> None:
        sock = FakeSocket()
        task = await start(make_relay(sock), sock)
        sock.push(EXIT_0)
        await task
        assert sock.controls("sync_back") == []


class TestInbound:
    @pytest.mark.asyncio
    async def test_ping_is_answered_with_pong(self, make_relay) -> None:
        sock = FakeSocket()
        task = await start(make_relay(sock), sock)

        sock.push('{"type":"ping"}')
        await wait_until(lambda: sock.controls("pong"))

        sock.push(EXIT_0)
        await task

    @pytest.mark.asyncio
    async def test_exit_ends_session_and_restores_terminal(
        self, make_relay, terminal, stderr
    ) -> None:
        sock = FakeSocket()
        task = await start(make_relay(sock), sock)

        sock.push('{"type":"exit","code":3}')
        outcome = await task

        assert outcome == ProcessExited(3)
        assert not terminal.is_raw
        assert not terminal.paste
        assert terminal.resize_callbacks == []
        assert sock.closed
        assert "Process exited with code 3" in stderr.getvalue()

    @pytest.mark.asyncio
    async def test_binary_frames_go_to_stdout(self, make_relay, stdout) -> None:
        sock = FakeSocket()
        task = await start(make_relay(sock), sock)

        sock.push(b"hello ")
        sock.push(b"\x1b[32mworld\x1b[0m")
        sock.push(EXIT_0)
        await task

        assert stdout.getvalue() == b"hello \x1b[32mworld\x1b[0m"

    @pytest.mark.asyncio
    async def test_error_message_is_shown_and_session_continues(
        self, make_relay, stderr
    ) -> None:
        sock = FakeSocket()
        relay = make_relay(sock)
        task = await start(relay, sock)

        sock.push('{"type":"error","message":"agent crashed"}')
        await wait_until(lambda: "Error: agent crashed" in stderr.getvalue())
        assert not task.done()

        sock.push(EXIT_0)
        assert await task == ProcessExited(0)

    @pytest.mark.asyncio
    async def test_malformed_and_unknown_frames_are_ignored(self, make_relay) -> None:
        sock = FakeSocket()
        task = await start(make_relay(sock), sock)

        sock.push("not json")
        sock.push('{"type":"telemetry","cpu":1}')
        sock.push('{"type":"exit"}')
        sock.push('{"type":"ping"}')
        await wait_until(lambda: sock.controls("pong"))
        assert not task.done()

        sock.push(EXIT_0)
        assert await task == ProcessExited(0)

    @pytest.mark.asyncio
    async def test_file_change_is_written_locally(self, make_relay, tmp_path) -> None:
        sock = FakeSocket()
        task = await start(make_relay(sock, sync_back=True), sock, sent=2)

        sock.push(
            protocol.encode(
                protocol.FileChange(
                    action="write", path="/workspace/src/main.py", content="cHJpbnQoMSkK"
                )
            )
        )
        target = tmp_path / "src" / "main.py"
        await wait_until(target.exists)
        assert target.read_bytes() == b"print(1)\n"

        sock.push(EXIT_0)
        await task

    @pytest.mark.asyncio
    async def test_policy_violation_close_means_replaced(self, make_relay, stderr) -> None:
        sock = FakeSocket()
        task = await start(make_relay(sock), sock)

        sock.push(ConnectionClosed(Close(1008, "replaced"), None))

        assert await task == ReplacedByPeer()
        assert "Connection replaced by another client" in stderr.getvalue()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("rcvd", "reason"),
        [
            (Close(1011, "server restart"), "server restart"),
            (Close(1001, ""), "code 1001"),
            (None, "connection closed"),
        ],
    )
    async def test_other_close_is_disconnected(self, make_relay, stderr, rcvd, reason) -> None:
        sock = FakeSocket()
        task = await start(make_relay(sock), sock)

        sock.push(ConnectionClosed(rcvd, None))

        assert await task == Disconnected(reason)
        assert f"Connection lost: {reason}" in stderr.getvalue()

    @pytest.mark.asyncio
    async def test_transport_error_is_disconnected(self, make_relay) -> None:
        sock = FakeSocket()
        task = await start(make_relay(sock), sock)

        sock.push(ConnectionResetError("reset by peer"))

        assert await task == Disconnected("reset by peer")

    @pytest.mark.asyncio
    async def test_bug_in_relay_task_is_raised_and_terminal_restored(
        self, make_relay, terminal
    ) -> None:
        sock = FakeSocket()
        task = await start(make_relay(sock), sock)

        sock.push(RuntimeError("bug"))

        with pytest.raises(RuntimeError, match="bug"):
            await task
        assert not terminal.is_raw
        assert sock.closed


class TestOutcomeOnce:
    @pytest.mark.asyncio
    async def test_later_events_do_not_change_the_outcome(self, make_relay, stderr) -> None:
        sock = FakeSocket()
        relay = make_relay(sock)
        task = await start(relay, sock)

        sock.push(EXIT_0)
        sock.push(ConnectionClosed(Close(1011, "late"), None))
        assert await task == ProcessExited(0)

        relay.interrupt()
        relay.feed_input(b"ignored")
        assert relay.closed
        assert "Connection lost" not in stderr.getvalue()
        assert "interrupted" not in stderr.getvalue()
        assert stderr.getvalue().count("Process exited") == 1


class TestHealth:
    @pytest.mark.asyncio
    async def test_silence_past_read_timeout_terminates(self, make_relay, clock, stderr) -> None:
        sock = FakeSocket()
        task = await start(make_relay(sock, read_timeout=75), sock)

        clock.now += 100

        assert await task == Disconnected("Connection timed out (no data received)")
        assert sock.terminated
        assert not sock.closed
        assert "no data for 100s" in stderr.getvalue()

    @pytest.mark.asyncio
    async def test_incoming_data_resets_the_timer(self, make_relay, clock) -> None:
        sock = FakeSocket()
        task = await start(make_relay(sock, read_timeout=75), sock)

        clock.now += 60
        sock.push(b"tick")
        await asyncio.sleep(0.05)
        clock.now += 60
        await asyncio.sleep(0.05)
        assert not task.done()

        sock.push(EXIT_0)
        assert await task == ProcessExited(0)


class TestSyncBackAck:
    @pytest.mark.asyncio
    async def test_missing_ack_shows_warning(self, make_relay, stderr) -> None:
        sock = FakeSocket()
        task = await start(make_relay(sock, sync_back=True, ack_grace=0.05), sock, sent=2)

        await wait_until(lambda: "Sync-back not acknowledged" in stderr.getvalue())
        assert not task.done()

        sock.push(EXIT_0)
        await task

    @pytest.mark.asyncio
    async def test_ack_cancels_warning(self, make_relay, stderr) -> None:
        sock = FakeSocket()
        task = await start(make_relay(sock, sync_back=True, ack_grace=0.3), sock, sent=2)

        sock.push('{"type":"sync_back_ack","enabled":true,"workspace_dir":"/workspace"}')
        await asyncio.sleep(0.5)

        sock.push(EXIT_0)
        await task
        assert "Sync-back not acknowledged" not in stderr.getvalue()


class TestHandshake:
    @pytest.mark.asyncio
    async def test_timeout(self, make_relay, terminal, stderr) -> None:
        async def connect(url, token, headers):
            await asyncio.sleep(10)

        outcome = await make_relay(connect=connect, handshake=0.05).run()

        assert outcome == Disconnected("Connection timeout")
        assert terminal.raw_entered == 0
        assert "Connection timeout: server not responding" in stderr.getvalue()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("error", "reason"),
        [
            (ConnectionRefusedError("connection refused"), "connection refused"),
            (websockets.InvalidHandshake("rejected"), "rejected"),
        ],
    )
    async def test_connect_error(self, make_relay, terminal, stderr, error, reason) -> None:
        async def connect(url, token, headers):
            raise error

        outcome = await make_relay(connect=connect).run()

        assert outcome == Disconnected(reason)
        assert terminal.raw_entered == 0
        assert f"Connection error: {reason}" in stderr.getvalue()

    @pytest.mark.asyncio
    async def test_interrupt_while_connecting(self, make_relay, stderr) -> None:
        async def connect(url, token, headers):
            await asyncio.sleep(10)

        relay = make_relay(connect=connect, handshake=5)
        task = asyncio.ensure_future(relay.run())
        await asyncio.sleep(0.02)
        relay.interrupt()

        assert await task == UserInterrupted()
        assert "Connection timeout" not in stderr.getvalue()


class TestInput:
    @pytest.mark.asyncio
    async def test_keystrokes_from_terminal_are_forwarded(self, make_relay, terminal) -> None:
        sock = FakeSocket()
        task = await start(make_relay(sock), sock)

        terminal.type(b"ls -la\r")
        await wait_until(lambda: b"ls -la\r" in sock.sent)

        sock.push(EXIT_0)
        await task

    @pytest.mark.asyncio
    async def test_double_ctrl_c_within_window_interrupts(
        self, make_relay, clock, stderr
    ) -> None:
        sock = FakeSocket()
        relay = make_relay(sock)
        task = await start(relay, sock)

        relay.feed_input(b"\x03")
        await wait_until(lambda: b"\x03" in sock.sent)
        clock.now += 0.4
        relay.feed_input(b"\x03")

        assert await task == UserInterrupted()
        assert sock.sent.count(b"\x03") == 1
        assert "Session interrupted" in stderr.getvalue()

    @pytest.mark.asyncio
    async def test_slow_ctrl_c_is_forwarded_each_time(self, make_relay, clock) -> None:
        sock = FakeSocket()
        relay = make_relay(sock)
        task = await start(relay, sock)

        relay.feed_input(b"\x03")
        clock.now += 2.0
        relay.feed_input(b"\x03")
        await wait_until(lambda: sock.sent.count(b"\x03") == 2)
        assert not task.done()

        sock.push(EXIT_0)
        await task

    @pytest.mark.asyncio
    async def test_interrupt_with_sync_back_mentions_label(self, make_relay, stderr) -> None:
        sock = FakeSocket()
        relay = make_relay(sock, sync_back=True)
        task = await start(relay, sock, sent=2)

        relay.interrupt(force=True)

        assert await task == UserInterrupted()
        notice = stderr.getvalue()
        assert "Force quit (Ctrl+\\)" in notice
        assert "catty sync brave-tiger-1234" in notice

    @pytest.mark.asyncio
    async def test_resize_is_sent_on_window_change(self, make_relay, terminal) -> None:
        sock = FakeSocket()
        task = await start(make_relay(sock), sock)

        terminal.size = (50, 20)
        for callback in list(terminal.resize_callbacks):
            callback()
        await wait_until(lambda: {"type": "resize", "cols": 50, "rows": 20} in sock.sent)

        sock.push(EXIT_0)
        await task


class TestPaste:
    @pytest.mark.asyncio
    async def test_paste_across_chunks_uploads_file_before_text(
        self, make_relay, tmp_path
    ) -> None:
        image = tmp_path / "diagram.png"
        image.write_bytes(b"\x89PNG\r\n\x1a\n" + b"\x01" * 64)
        raw = str(image).encode()

        sock = FakeSocket()
        relay = make_relay(sock)
        task = await start(relay, sock)

        relay.feed_input(PASTE_START + raw[:5])
        relay.feed_input(raw[5:] + PASTE_END)

        await wait_until(
            lambda: any(isinstance(m, bytes) and m.startswith(b"/workspace/") for m in sock.sent)
        )
        uploads = sock.controls("file_upload")
        assert len(uploads) == 1
        upload = uploads[0]
        assert upload["mime"] == "image/png"
        assert upload["path"].startswith("/workspace/.catty-uploads/diagram-")

        text_index = sock.sent.index(upload["path"].encode())
        assert sock.sent.index(upload) < text_index
        assert raw not in sock.sent

        sock.push(EXIT_0)
        await task

    @pytest.mark.asyncio
    async def test_unsupported_file_paste_is_forwarded_verbatim(
        self, make_relay, tmp_path
    ) -> None:
        binary = tmp_path / "tool.exe"
        binary.write_bytes(b"MZ")

        sock = FakeSocket()
        relay = make_relay(sock)
        task = await start(relay, sock)

        relay.feed_input(PASTE_START + str(binary).encode() + PASTE_END)
        await wait_until(lambda: str(binary).encode() in sock.sent)
        assert sock.controls("file_upload") == []

        sock.push(EXIT_0)
        await task

    @pytest.mark.asyncio
    async def test_plain_text_paste_is_forwarded(self, make_relay) -> None:
        sock = FakeSocket()
        relay = make_relay(sock)
        task = await start(relay, sock)

        relay.feed_input(b"a" + PASTE_START + b"echo hi\nls" + PASTE_END + b"z")
        await wait_until(lambda: b"z" in sock.sent)
        assert sock.sent[-3:] == [b"a", b"echo hi\nls", b"z"]

        sock.push(EXIT_0)
        await task

    @pytest.mark.asyncio
    async def test_paste_is_planned_off_the_event_loop(
        self, make_relay, tmp_path, monkeypatch
    ) -> None:
        image = tmp_path / "shot.png"
        image.write_bytes(b"\x89PNG\r\n\x1a\n" + b"\x02" * 16)
        threads = []

        def recording_plan(text):
            threads.append(threading.current_thread())
            return plan_paste(text)

        monkeypatch.setattr("catty.pty.shell.plan_paste", recording_plan)
        sock = FakeSocket()
        relay = make_relay(sock)
        task = await start(relay, sock)

        relay.feed_input(PASTE_START + str(image).encode() + PASTE_END)
        await wait_until(lambda: sock.controls("file_upload"))
        assert len(threads) == 1
        assert threads[0] is not threading.main_thread()

        sock.push(EXIT_0)
        await task


class TestConnectToSession:
    @pytest.mark.asyncio
    async def test_runs_one_attempt(self, terminal, tmp_path) -> None:
        sock = FakeSocket()
        sock.push('{"type":"exit","code":7}')

        async def connect(url, token, headers):
            return sock

        outcome = await connect_to_session(
            ConnectOptions(connect_url="wss://x/connect", connect_token="t"),
            terminal=terminal,
            writer=SyncBackWriter(str(tmp_path)),
            connect=connect,
            stdout=io.BytesIO(),
            stderr=io.StringIO(),
            install_signal_handlers=False,
        )

        assert outcome == ProcessExited(7)


def _canonical(fd: int) -> bool:
    return bool(termios.tcgetattr(fd)[3] & termios.ICANON)


@pytest.fixture
def tty_terminal():
    master, slave = pty.openpty()
    r, w = os.pipe()
    os.set_blocking(r, False)
    term = Terminal(slave, w)
    yield term
    term.restore()
    for fd in (master, slave, r, w):
        os.close(fd)


@pytest.fixture
def make_tty_relay(tty_terminal, stderr, tmp_path):
    def factory(sock):
        async def connect(url, token, headers):
            return sock

        return SessionRelay(
            ConnectOptions(connect_url="wss://brave-tiger.catty.run/connect", connect_token="t"),
            terminal=tty_terminal,
            writer=SyncBackWriter(str(tmp_path)),
            connect=connect,
            stdout=io.BytesIO(),
            stderr=stderr,
            timings=RelayTimings(health_interval=0.01),
            install_signal_handlers=True,
        )

    return factory


class TestWithTerminal:
    @pytest.mark.asyncio
    async def test_sigint_interrupts_the_session(
        self, make_tty_relay, tty_terminal, stderr
    ) -> None:
        sock = FakeSocket()
        task = await start(make_tty_relay(sock), sock)
        assert tty_terminal.is_raw

        os.kill(os.getpid(), signal.SIGINT)
        outcome = await asyncio.wait_for(task, 2.0)

        assert outcome == UserInterrupted()
        assert "Session interrupted" in stderr.getvalue()
        assert not tty_terminal.is_raw
        assert _canonical(tty_terminal.input_fd)
        assert sock.closed

    @pytest.mark.asyncio
    async def test_signal_handlers_are_restored_after_the_session(
        self, make_tty_relay
    ) -> None:
        sigterm = signal.getsignal(signal.SIGTERM)
        sigtstp = signal.getsignal(signal.SIGTSTP)
        sock = FakeSocket()
        task = await start(make_tty_relay(sock), sock)

        sock.push(EXIT_0)
        assert await task == ProcessExited(0)

        assert signal.getsignal(signal.SIGINT) is signal.default_int_handler
        assert signal.getsignal(signal.SIGTERM) == sigterm
        assert signal.getsignal(signal.SIGTSTP) == sigtstp

    @pytest.mark.asyncio
    async def test_transport_error_restores_terminal(
        self, make_tty_relay, tty_terminal
    ) -> None:
        sock = FakeSocket()
        task = await start(make_tty_relay(sock), sock)

        sock.push(ConnectionResetError("reset by peer"))

        assert await task == Disconnected("reset by peer")
        assert not tty_terminal.is_raw
        assert _canonical(tty_terminal.input_fd)

    @pytest.mark.asyncio
    async def test_bug_in_relay_task_restores_terminal(
        self, make_tty_relay, tty_terminal
    ) -> None:
        sock = FakeSocket()
        task = await start(make_tty_relay(sock), sock)

        sock.push(RuntimeError("bug"))

        with pytest.raises(RuntimeError, match="bug"):
            await task
        assert _canonical(tty_terminal.input_fd)
        assert signal.getsignal(signal.SIGINT) is signal.default_int_handler
