"""Interactive session relay.

This module provides the orchestration for one connection to a remote
session. It handles:

1. Opening the WebSocket with a bounded handshake
2. Taking over the local terminal (raw mode, bracketed paste, resize)
3. Forwarding stdin to the remote side and remote output to stdout
4. Answering heartbeats, reporting exits and applying sync-back changes
5. Detecting half-open connections and user interrupts

Every attempt ends with exactly one :data:`~catty.pty.outcome.ConnectionOutcome`.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
import threading
import time
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import dataclass, field
from typing import IO, Any

import websockets

from ..config import (
    CLIENT_READ_TIMEOUT,
    DOUBLE_INTERRUPT_WINDOW,
    HANDSHAKE_TIMEOUT,
    HEALTH_CHECK_INTERVAL,
    SYNC_BACK_ACK_GRACE,
    WS_POLICY_VIOLATION,
)
from . import protocol
from .client import SessionSocket
from .outcome import (
    ConnectionOutcome,
    Disconnected,
    ProcessExited,
    ReplacedByPeer,
    UserInterrupted,
)
from .paste import Forward, Paste, PasteDemultiplexer
from .syncback import SyncBackWriter
from .terminal import Terminal
from .upload import CHUNK_DELAY, build_upload_messages, plan_paste

logger = logging.getLogger(__name__)

INTERRUPT_BYTE = b"\x03"
READ_SIZE = 4096
CLOSE_TIMEOUT = 2.0

RED = "\x1b[31m"
YELLOW = "\x1b[33m"
RESET = "\x1b[0m"

SocketFactory = Callable[[str, str, dict[str, str]], Awaitable[SessionSocket]]


@dataclass
class ConnectOptions:
    """Where to connect and what to enable for one session attempt."""

    connect_url: str
    connect_token: str
    headers: dict[str, str] = field(default_factory=dict)
    sync_back: bool = False
    label: str | None = None


@dataclass(frozen=True)
class RelayTimings:
    """Timer settings, in seconds."""

    handshake: float = HANDSHAKE_TIMEOUT
    read_timeout: float = CLIENT_READ_TIMEOUT
    health_interval: float = HEALTH_CHECK_INTERVAL
    ack_grace: float = SYNC_BACK_ACK_GRACE
    double_interrupt: float = DOUBLE_INTERRUPT_WINDOW
    close: float = CLOSE_TIMEOUT


class SessionRelay:
    """Relay between the local terminal and one remote session connection.

    Args:
        options: Connection target and features.
        terminal: Terminal controller to drive (default: the process TTY).
        writer: Sync-back writer for ``file_change`` messages (default: cwd).
        connect: Coroutine opening the socket; replaceable for tests.
        stdout: Binary stream remote output is written to.
        stderr: Text stream one-line notices are written to.
        clock: Monotonic clock used for health and double-interrupt checks.
        timings: Timer settings.
        install_signal_handlers: Route SIGINT/SIGQUIT to :meth:`interrupt`.
    """

    def __init__(
        self,
        options: ConnectOptions,
        *,
        terminal: Terminal | None = None,
        writer: SyncBackWriter | None = None,
        connect: SocketFactory | None = None,
        stdout: IO[bytes] | None = None,
        stderr: IO[str] | None = None,
        clock: Callable[[], float] = time.monotonic,
        timings: RelayTimings | None = None,
        install_signal_handlers: bool = True,
    ):
        self._options = options
        self._terminal = terminal or Terminal()
        self._writer = writer or SyncBackWriter()
        self._connect = connect or SessionSocket.connect
        self._stdout = stdout if stdout is not None else sys.stdout.buffer
        self._stderr = stderr if stderr is not None else sys.stderr
        self._clock = clock
        self._timings = timings or RelayTimings()
        self._install_signals = install_signal_handlers

        self._loop: asyncio.AbstractEventLoop | None = None
        self._outcome: asyncio.Future[ConnectionOutcome] | None = None
        self._socket: SessionSocket | None = None
        self._closed = False
        self._terminated = False
        self._demux = PasteDemultiplexer()
        self._outbox: asyncio.Queue[Forward | Paste | protocol.ControlMessage] | None = None
        self._tasks: set[asyncio.Task[Any]] = set()
        self._ack_timer: asyncio.Task[Any] | None = None
        self._reader_fd: int | None = None
        self._signals: list[int] = []
        self._last_data = 0.0
        self._last_interrupt: float | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    async def run(self) -> ConnectionOutcome:
        """Connect, relay until the session ends, and return how it ended.

        The terminal is restored and all timers are cancelled before this
        returns or raises.
        """
        loop = asyncio.get_running_loop()
        self._loop = loop
        self._outcome = loop.create_future()
        self._outbox = asyncio.Queue()
        try:
            self._add_signal_handlers()
            sock = await self._handshake()
            if sock is None:
                return self._outcome.result()
            self._socket = sock
            return await self._relay(sock)
        finally:
            await self._teardown()

    # Connection lifecycle

    async def _handshake(self) -> SessionSocket | None:
        assert self._outcome is not None
        opts = self._options
        connect_task = asyncio.ensure_future(
            self._connect(opts.connect_url, opts.connect_token, dict(opts.headers))
        )
        done, _ = await asyncio.wait(
            {connect_task, self._outcome},
            timeout=self._timings.handshake,
            return_when=asyncio.FIRST_COMPLETED,
        )
        if self._outcome.done() or connect_task not in done:
            connect_task.cancel()
            (result,) = await asyncio.gather(connect_task, return_exceptions=True)
            if not isinstance(result, BaseException):
                # The handshake finished just as we gave up; close it in teardown.
                self._socket = result
            self._finish(
                Disconnected("Connection timeout"),
                "✗ Connection timeout: server not responding",
                RED,
            )
            return None
        try:
            sock = connect_task.result()
        except (OSError, asyncio.TimeoutError, websockets.WebSocketException) as e:
            reason = str(e) or type(e).__name__
            self._finish(Disconnected(reason), f"✗ Connection error: {reason}", RED)
            return None
        logger.debug("connected to %s", opts.connect_url)
        return sock

    async def _relay(self, sock: SessionSocket) -> ConnectionOutcome:
        assert self._outcome is not None and self._loop is not None
        self._last_data = self._clock()

        self._terminal.enter_raw_mode()
        # Raw mode installs fatal-signal handlers; SIGINT must still end the
        # session through the loop, so claim it again.
        self._add_signal_handlers()
        self._terminal.enable_bracketed_paste()

        cols, rows = self._terminal.get_size()
        await self._send_control(protocol.resize(cols, rows))
        if self._options.sync_back:
            logger.debug("requesting sync-back")
            await self._send_control(protocol.sync_back(True))
            self._ack_timer = self._start_task(self._ack_grace())

        self._terminal.on_resize(self._on_resize)
        self._start_reader()
        self._start_task(self._receive_loop())
        self._start_task(self._send_loop())
        self._start_task(self._health_loop())
        return await self._outcome

    async def _teardown(self) -> None:
        self._closed = True
        self._stop_reader()
        self._terminal.off_resize(self._on_resize)

        tasks, self._tasks = list(self._tasks), set()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._demux.reset()

        self._terminal.disable_bracketed_paste()
        # The terminal puts back the handlers it saved (the loop's) first;
        # removing the loop's handlers then leaves the process defaults.
        self._terminal.restore()
        self._remove_signal_handlers()

        sock = self._socket
        if sock is not None and not self._terminated:
            try:
                await asyncio.wait_for(sock.close(), self._timings.close)
            except (OSError, asyncio.TimeoutError, websockets.WebSocketException):
                logger.debug("clean close failed", exc_info=True)
                sock.terminate()

    def _finish(self, outcome: ConnectionOutcome, notice: str | None = None, color: str = "") -> bool:
        """Report the outcome; only the first caller wins."""
        if self._closed or self._outcome is None or self._outcome.done():
            return False
        self._closed = True
        if notice is not None:
            self._notice(notice, color)
        logger.debug("outcome: %r", outcome)
        self._outcome.set_result(outcome)
        return True

    def interrupt(self, *, force: bool = False) -> None:
        """End the session at the user's request; never retried."""
        if self._closed:
            return
        message = "Force quit (Ctrl+\\)" if force else "Session interrupted"
        if self._options.sync_back:
            label = self._options.label or "<label>"
            message += f". Sync paused. Run `catty sync {label}` to pull latest changes."
        self._finish(UserInterrupted(), message, YELLOW)

    # Inbound

    async def _receive_loop(self) -> None:
        assert self._socket is not None
        sock = self._socket
        while not self._closed:
            try:
                frame = await sock.receive()
            except websockets.ConnectionClosed as e:
                self._on_close(e)
                return
            except OSError as e:
                self._finish(Disconnected(str(e)), f"✗ Connection error: {e}", RED)
                return
            self._last_data = self._clock()
            if isinstance(frame, bytes):
                self._stdout.write(frame)
                self._stdout.flush()
            else:
                await self._dispatch(frame)

    async def _dispatch(self, text: str) -> None:
        try:
            msg = protocol.decode(text)
        except protocol.MalformedMessage as e:
            logger.debug("dropping malformed control frame: %s", e)
            return

        if isinstance(msg, protocol.Ping):
            await self._send_control(protocol.pong())
        elif isinstance(msg, protocol.Exit):
            self._finish(ProcessExited(msg.code), f"Process exited with code {msg.code}")
        elif isinstance(msg, protocol.Error):
            self._notice(f"Error: {msg.message}")
        elif isinstance(msg, protocol.SyncBackAck):
            logger.debug("sync-back ack: enabled=%s, dir=%s", msg.enabled, msg.workspace_dir)
            if self._ack_timer is not None:
                self._ack_timer.cancel()
                self._ack_timer = None
        elif isinstance(msg, protocol.FileChange):
            logger.debug("file change: %s %s", msg.action, msg.path)
            self._writer.apply(msg)
        else:
            logger.debug("ignoring %s message", msg.type)

    def _on_close(self, exc: websockets.ConnectionClosed) -> None:
        code = exc.rcvd.code if exc.rcvd is not None else None
        reason = exc.rcvd.reason if exc.rcvd is not None else ""
        if code == WS_POLICY_VIOLATION:
            self._finish(ReplacedByPeer(), "⚠ Connection replaced by another client", YELLOW)
            return
        reason = reason or (f"code {code}" if code is not None else "connection closed")
        self._finish(Disconnected(reason), f"✗ Connection lost: {reason}", RED)

    async def _health_loop(self) -> None:
        assert self._socket is not None
        while not self._closed:
            await asyncio.sleep(self._timings.health_interval)
            silence = self._clock() - self._last_data
            if silence > self._timings.read_timeout:
                logger.debug("client-side timeout: no data for %.1fs", silence)
                self._socket.terminate()
                self._terminated = True
                self._finish(
                    Disconnected("Connection timed out (no data received)"),
                    f"✗ Connection timed out (no data for {round(silence)}s)",
                    RED,
                )
                return

    async def _ack_grace(self) -> None:
        await asyncio.sleep(self._timings.ack_grace)
        self._ack_timer = None
        if not self._closed:
            self._notice("⚠ Sync-back not acknowledged; the remote side may not support it", YELLOW)

    # Outbound

    def feed_input(self, data: bytes) -> None:
        """Handle one chunk of local terminal input."""
        if self._closed or self._outbox is None:
            return
        if INTERRUPT_BYTE in data:
            now = self._clock()
            last = self._last_interrupt
            if last is not None and now - last < self._timings.double_interrupt:
                self.interrupt()
                return
            self._last_interrupt = now
        for segment in self._demux.feed(data):
            self._outbox.put_nowait(segment)

    async def _send_loop(self) -> None:
        assert self._outbox is not None
        while True:
            item = await self._outbox.get()
            if isinstance(item, Forward):
                await self._send_input(item.data)
            elif isinstance(item, Paste):
                await self._handle_paste(item.text)
            else:
                await self._send_control(item)

    async def _handle_paste(self, text: str) -> None:
        if not text:
            return
        # Reading dropped files can take a while; keep it off the loop.
        assert self._loop is not None
        plan = await self._loop.run_in_executor(None, plan_paste, text)
        for upload in plan.uploads:
            messages = build_upload_messages(upload)
            logger.debug("uploading %s as %d message(s)", upload.remote_path, len(messages))
            for i, message in enumerate(messages):
                await self._send_control(message)
                if i < len(messages) - 1:
                    await asyncio.sleep(CHUNK_DELAY)
        await self._send_input(plan.text.encode("utf-8"))

    async def _send_input(self, data: bytes) -> None:
        if self._socket is None or self._closed:
            return
        try:
            await self._socket.send_input(data)
        except (OSError, websockets.ConnectionClosed):
            # The receive loop reports the close.
            logger.debug("send failed", exc_info=True)

    async def _send_control(self, message: protocol.ControlMessage) -> None:
        if self._socket is None or self._closed:
            return
        try:
            await self._socket.send_control(message)
        except (OSError, websockets.ConnectionClosed):
            logger.debug("send of %s failed", message.type, exc_info=True)

    # Local event sources

    def _on_resize(self) -> None:
        # Runs in signal context: hop onto the loop before touching state.
        if self._loop is not None:
            self._loop.call_soon_threadsafe(self._queue_resize)

    def _queue_resize(self) -> None:
        if self._closed or self._outbox is None:
            return
        cols, rows = self._terminal.get_size()
        self._outbox.put_nowait(protocol.resize(cols, rows))

    def _start_reader(self) -> None:
        assert self._loop is not None
        fd = self._terminal.input_fd
        self._loop.add_reader(fd, self._on_stdin_ready)
        self._reader_fd = fd

    def _stop_reader(self) -> None:
        if self._reader_fd is not None and self._loop is not None:
            self._loop.remove_reader(self._reader_fd)
            self._reader_fd = None

    def _on_stdin_ready(self) -> None:
        assert self._reader_fd is not None
        try:
            data = os.read(self._reader_fd, READ_SIZE)
        except OSError:
            data = b""
        if not data:
            logger.debug("stdin closed")
            self._stop_reader()
            return
        self.feed_input(data)

    def _add_signal_handlers(self) -> None:
        if not self._install_signals or threading.current_thread() is not threading.main_thread():
            return
        assert self._loop is not None
        self._loop.add_signal_handler(signal.SIGINT, self.interrupt)
        self._loop.add_signal_handler(signal.SIGQUIT, lambda: self.interrupt(force=True))
        self._signals = [signal.SIGINT, signal.SIGQUIT]

    def _remove_signal_handlers(self) -> None:
        if self._loop is None:
            return
        for sig in self._signals:
            self._loop.remove_signal_handler(sig)
        self._signals = []

    # Helpers

    def _start_task(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        # A bug in a relay task must not hang the session; surface it from run().
        logger.error("relay task failed", exc_info=exc)
        if not self._closed and self._outcome is not None and not self._outcome.done():
            self._closed = True
            self._outcome.set_exception(exc)

    def _notice(self, text: str, color: str = "") -> None:
        line = f"{color}{text}{RESET}" if color else text
        self._stderr.write(f"\r\n{line}\r\n")
        self._stderr.flush()


async def connect_to_session(options: ConnectOptions, **kwargs: Any) -> ConnectionOutcome:
    """Run one session attempt; see :class:`SessionRelay` for keyword arguments."""
    return await SessionRelay(options, **kwargs).run()


__all__ = ["ConnectOptions", "RelayTimings", "SessionRelay", "connect_to_session"]
