"""Local terminal control for interactive sessions.

A :class:`Terminal` owns the controlling TTY while a session runs: raw mode,
bracketed paste, resize notifications and the process-wide hooks that put
the TTY back the way the user's shell expects it, whatever way the process
ends.

Only one instance may hold raw mode at a time. The owner is tracked at class
level so that exit hooks and fatal-signal handlers can find it without any
instance being passed around.
"""

from __future__ import annotations

import atexit
import logging
import os
import signal
import sys
import termios
import threading
import tty
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any, ClassVar

logger = logging.getLogger(__name__)

PASTE_ON = b"\x1b[?2004h"
PASTE_OFF = b"\x1b[?2004l"
CURSOR_SHOW = b"\x1b[?25h"
FULL_RESET = b"\x1bc"

DEFAULT_SIZE = (80, 24)

# Signals that end the process; the terminal is restored before they are re-delivered.
_FATAL_SIGNALS = (signal.SIGINT, signal.SIGTERM, signal.SIGHUP)


class TerminalBusyError(RuntimeError):
    """Raw mode is already held by another Terminal instance."""


class Terminal:
    """Controller for the local interactive terminal.

    Args:
        input_fd: File descriptor keystrokes are read from (default: stdin).
        output_fd: File descriptor escape sequences are written to (default: stdout).
    """

    _owner: ClassVar[Terminal | None] = None
    _hooks_installed: ClassVar[bool] = False

    def __init__(self, input_fd: int | None = None, output_fd: int | None = None):
        self.input_fd = sys.stdin.fileno() if input_fd is None else input_fd
        self.output_fd = sys.stdout.fileno() if output_fd is None else output_fd
        self._saved_attrs: list[Any] | None = None
        self._paste_enabled = False
        self._resize_callbacks: list[Callable[[], None]] = []
        self._previous_winch: Any = None
        self._previous_handlers: dict[int, Any] = {}

    def is_interactive(self) -> bool:
        """Whether the input stream is a TTY."""
        try:
            return os.isatty(self.input_fd)
        except OSError:
            return False

    @property
    def is_raw(self) -> bool:
        return self._saved_attrs is not None

    @property
    def bracketed_paste_enabled(self) -> bool:
        return self._paste_enabled

    def enter_raw_mode(self) -> None:
        """Put the TTY into raw mode.

        No-op if the input is not a TTY or this instance is already raw.

        Raises:
            TerminalBusyError: If another instance currently holds raw mode.
        """
        if not self.is_interactive() or self.is_raw:
            return
        owner = Terminal._owner
        if owner is not None and owner is not self:
            raise TerminalBusyError("terminal raw mode is held by another session")

        self._saved_attrs = termios.tcgetattr(self.input_fd)
        tty.setraw(self.input_fd)
        Terminal._owner = self
        _install_process_hooks()
        self._install_signal_handlers()
        logger.debug("entered raw mode on fd %d", self.input_fd)

    def restore(self) -> None:
        """Leave raw mode and turn paste mode off, showing the cursor.

        Idempotent and safe to call from a signal handler or exit hook.
        """
        attrs = self._saved_attrs
        was_pasting = self._paste_enabled
        self._saved_attrs = None
        self._paste_enabled = False
        if Terminal._owner is self:
            Terminal._owner = None
        if attrs is None and not was_pasting:
            return

        self._restore_signal_handlers()
        if attrs is not None:
            try:
                termios.tcsetattr(self.input_fd, termios.TCSADRAIN, attrs)
            except (termios.error, OSError):
                pass
        self._write(PASTE_OFF + CURSOR_SHOW)

    @contextmanager
    def raw_session(self, *, bracketed_paste: bool = True) -> Iterator[Terminal]:
        """Hold raw mode (and optionally bracketed paste) for the ``with`` block."""
        try:
            self.enter_raw_mode()
            if bracketed_paste:
                self.enable_bracketed_paste()
            yield self
        finally:
            self.disable_bracketed_paste()
            self.restore()

    def get_size(self) -> tuple[int, int]:
        """Return (cols, rows), falling back to 80x24 when unknown."""
        try:
            cols, rows = os.get_terminal_size(self.output_fd)
        except OSError:
            return DEFAULT_SIZE
        return cols or DEFAULT_SIZE[0], rows or DEFAULT_SIZE[1]

    def on_resize(self, callback: Callable[[], None]) -> None:
        """Call ``callback`` on every SIGWINCH."""
        if not self._resize_callbacks and _in_main_thread():
            self._previous_winch = signal.signal(signal.SIGWINCH, self._handle_winch)
        self._resize_callbacks.append(callback)

    def off_resize(self, callback: Callable[[], None]) -> None:
        try:
            self._resize_callbacks.remove(callback)
        except ValueError:
            return
        if not self._resize_callbacks and _in_main_thread():
            previous = self._previous_winch
            signal.signal(signal.SIGWINCH, previous if previous is not None else signal.SIG_DFL)
            self._previous_winch = None

    def enable_bracketed_paste(self) -> None:
        if not self.is_interactive() or self._paste_enabled:
            return
        self._write(PASTE_ON)
        self._paste_enabled = True

    def disable_bracketed_paste(self) -> None:
        if not self._paste_enabled:
            return
        self._paste_enabled = False
        self._write(PASTE_OFF)

    @staticmethod
    def force_reset(input_fd: int | None = None, output_fd: int | None = None) -> None:
        """Reset a broken terminal without relying on any saved state.

        Turns canonical mode, echo and signal keys back on, disables paste
        mode, shows the cursor and issues a full terminal reset.
        """
        in_fd = sys.stdin.fileno() if input_fd is None else input_fd
        out_fd = sys.stdout.fileno() if output_fd is None else output_fd
        if os.isatty(in_fd):
            attrs = termios.tcgetattr(in_fd)
            attrs[0] |= termios.ICRNL | termios.IXON
            attrs[1] |= termios.OPOST | termios.ONLCR
            attrs[3] |= termios.ECHO | termios.ICANON | termios.ISIG | termios.IEXTEN
            termios.tcsetattr(in_fd, termios.TCSANOW, attrs)
        try:
            os.write(out_fd, PASTE_OFF + CURSOR_SHOW + FULL_RESET)
        except OSError:
            pass

    @classmethod
    def restore_active(cls) -> None:
        """Restore whichever instance currently holds raw mode, if any."""
        owner = cls._owner
        if owner is not None:
            owner.restore()

    # Internals

    def _write(self, data: bytes) -> None:
        try:
            os.write(self.output_fd, data)
        except OSError:
            pass

    def _handle_winch(self, signum: int, frame: Any) -> None:
        for callback in list(self._resize_callbacks):
            callback()

    def _install_signal_handlers(self) -> None:
        if not _in_main_thread():
            return
        for sig in _FATAL_SIGNALS:
            self._previous_handlers[sig] = signal.signal(sig, self._handle_fatal_signal)
        self._previous_handlers[signal.SIGTSTP] = signal.signal(
            signal.SIGTSTP, self._handle_suspend
        )

    def _restore_signal_handlers(self) -> None:
        if not _in_main_thread():
            return
        handlers, self._previous_handlers = self._previous_handlers, {}
        for sig, previous in handlers.items():
            signal.signal(sig, previous if previous is not None else signal.SIG_DFL)

    def _handle_fatal_signal(self, signum: int, frame: Any) -> None:
        self.restore()
        signal.signal(signum, signal.SIG_DFL)
        os.kill(os.getpid(), signum)

    def _handle_suspend(self, signum: int, frame: Any) -> None:
        # Give the shell a cooked terminal while stopped, then take raw mode
        # back on SIGCONT so the session never resumes half-raw.
        attrs = self._saved_attrs
        if attrs is None:
            return
        was_pasting = self._paste_enabled
        try:
            termios.tcsetattr(self.input_fd, termios.TCSADRAIN, attrs)
        except (termios.error, OSError):
            pass
        self._write(PASTE_OFF + CURSOR_SHOW)

        signal.signal(signal.SIGTSTP, signal.SIG_DFL)
        os.kill(os.getpid(), signal.SIGTSTP)
        # Execution continues here after SIGCONT.
        signal.signal(signal.SIGTSTP, self._handle_suspend)

        if self._saved_attrs is None:
            return
        try:
            tty.setraw(self.input_fd)
        except (termios.error, OSError):
            logger.debug("could not re-enter raw mode after resume", exc_info=True)
            self.restore()
            return
        if was_pasting:
            self._write(PASTE_ON)
        logger.debug("resumed raw mode after suspend")


def _in_main_thread() -> bool:
    return threading.current_thread() is threading.main_thread()


def _install_process_hooks() -> None:
    """Register exit and crash hooks that restore the terminal (once per process)."""
    if Terminal._hooks_installed:
        return
    Terminal._hooks_installed = True

    atexit.register(Terminal.restore_active)

    previous_excepthook = sys.excepthook

    def excepthook(exc_type, exc, tb):
        Terminal.restore_active()
        previous_excepthook(exc_type, exc, tb)

    sys.excepthook = excepthook


__all__ = ["Terminal", "TerminalBusyError", "PASTE_ON", "PASTE_OFF", "CURSOR_SHOW", "FULL_RESET"]
