"""Automatic reconnection around the session relay."""

from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import Awaitable, Callable
from typing import IO

import httpx

from ..config import MAX_RECONNECT_ATTEMPTS, RECONNECT_DELAY
from ..errors import ReconnectError, SessionUnavailableError
from ..sessions import APIError, AsyncSessionClient, SessionInfo
from .outcome import ConnectionOutcome, Disconnected
from .shell import ConnectOptions, connect_to_session

logger = logging.getLogger(__name__)

GREEN = "\x1b[32m"
YELLOW = "\x1b[33m"
RESET = "\x1b[0m"

Connector = Callable[[ConnectOptions], Awaitable[ConnectionOutcome]]


class ReconnectSupervisor:
    """Run a session, reconnecting after transport failures.

    Only :class:`~catty.pty.outcome.Disconnected` is retried. Process exit,
    user interruption and replacement by another client end the loop.

    Args:
        client: Session API client used to (re-)resolve connection metadata.
        label: Session id or label.
        sync_back: Request sync-back of remote file changes.
        auto_reconnect: Retry on disconnect; when off the first outcome is returned.
        max_attempts: Reconnect attempts allowed after the first connection.
        delay: Seconds to wait before each reconnect.
        connect: Runs one attempt (default: :func:`connect_to_session`).
        sleep: Awaitable sleep, replaceable for tests.
        out: Stream status lines are printed to.
    """

    def __init__(
        self,
        client: AsyncSessionClient,
        label: str,
        *,
        sync_back: bool = True,
        auto_reconnect: bool = True,
        max_attempts: int = MAX_RECONNECT_ATTEMPTS,
        delay: float = RECONNECT_DELAY,
        connect: Connector = connect_to_session,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
        out: IO[str] | None = None,
    ):
        self._client = client
        self._label = label
        self._sync_back = sync_back
        self._auto_reconnect = auto_reconnect
        self._max_attempts = max_attempts
        self._delay = delay
        self._connect = connect
        self._sleep = sleep
        self._out = out
        self.attempts = 0

    async def run(self) -> ConnectionOutcome:
        """Connect until a final outcome is reached.

        Raises:
            SessionUnavailableError: The session stopped or its machine is down.
            ReconnectError: The reconnect ceiling was exceeded.
            APIError: The first lookup failed.
        """
        self.attempts = 0
        while True:
            try:
                session = await self._resolve()
            except (APIError, httpx.HTTPError) as e:
                if self.attempts == 0 or not self._auto_reconnect:
                    raise
                logger.debug("session lookup failed: %s", e)
                await self._next_attempt("⟳ Reconnect failed, retrying", e)
                continue

            if self.attempts > 0:
                self._print(f"{GREEN}✓ Reconnected to {session.label}{RESET}")
            else:
                self._print(f"Connecting to {session.label}...")
                if self._sync_back:
                    self._print("  Sync-back: enabled (remote changes will sync to local)")

            outcome = await self._connect(
                ConnectOptions(
                    connect_url=session.connect_url,
                    connect_token=session.connect_token or "",
                    headers=session.routing_headers(),
                    sync_back=self._sync_back,
                    label=session.label,
                )
            )
            if not isinstance(outcome, Disconnected) or not self._auto_reconnect:
                return outcome
            await self._next_attempt("⟳ Reconnecting")

    async def _resolve(self) -> SessionInfo:
        if self.attempts == 0:
            self._print(f"Looking up session {self._label}...")
        session = await self._client.get_session(self._label, live=True)
        if session.is_stopped:
            raise SessionUnavailableError(f"Session {session.label} is stopped")
        if not session.is_machine_running:
            raise SessionUnavailableError(
                f"Machine is not running (state: {session.machine_state})"
            )
        if not session.connect_token:
            raise SessionUnavailableError(f"Session {session.label} has no connect token")
        return session

    async def _next_attempt(self, message: str, cause: BaseException | None = None) -> None:
        self.attempts += 1
        if self.attempts > self._max_attempts:
            raise ReconnectError(self._label, self._max_attempts) from cause
        self._print(f"{YELLOW}{message} ({self.attempts}/{self._max_attempts})...{RESET}")
        await self._sleep(self._delay)

    def _print(self, line: str) -> None:
        print(line, file=self._out if self._out is not None else sys.stdout, flush=True)


__all__ = ["ReconnectSupervisor"]
