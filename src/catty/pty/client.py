"""WebSocket client for the session transport.

Terminal bytes travel as binary frames in both directions; control
messages travel as JSON text frames (see :mod:`catty.pty.protocol`).
"""

from __future__ import annotations

import websockets
from websockets import ClientConnection, State

from ..config import HANDSHAKE_TIMEOUT
from . import protocol


class SessionSocket:
    """Async WebSocket client for one session connection.

    The constructor takes an already-connected WebSocket (for testability);
    :meth:`connect` opens a new one.

    Example:
        sock = await SessionSocket.connect(url, token, headers)
        async with sock:
            await sock.send_control(protocol.resize(80, 24))
            await sock.send_input(b"ls -la\\r")
            frame = await sock.receive()
    """

    def __init__(self, ws: ClientConnection):
        """Create a SessionSocket wrapping an existing WebSocket connection.

        Args:
            ws: An already-connected WebSocket.
        """
        self._ws = ws

    @classmethod
    async def connect(
        cls,
        url: str,
        token: str,
        headers: dict[str, str] | None = None,
        *,
        open_timeout: float | None = HANDSHAKE_TIMEOUT,
    ) -> SessionSocket:
        """Connect to a session endpoint.

        Args:
            url: WebSocket URL (e.g., wss://host/connect).
            token: Connect token, sent as a bearer credential.
            headers: Extra headers, such as the machine routing header.
            open_timeout: Handshake timeout in seconds.

        Raises:
            websockets.WebSocketException: If the handshake fails.
            TimeoutError: If the handshake does not finish in time.
        """
        ws = await websockets.connect(
            url,
            additional_headers={**(headers or {}), "Authorization": f"Bearer {token}"},
            open_timeout=open_timeout,
            max_size=None,
        )
        return cls(ws)

    async def close(self) -> None:
        """Close the WebSocket connection with a normal closing handshake."""
        await self._ws.close()

    def terminate(self) -> None:
        """Drop the underlying TCP connection without a closing handshake."""
        transport = getattr(self._ws, "transport", None)
        if transport is not None:
            transport.abort()

    async def send_control(self, message: protocol.ControlMessage) -> None:
        """Send one control message as a text frame."""
        await self._ws.send(protocol.encode(message))

    async def send_input(self, data: bytes) -> None:
        """Send raw terminal input as a binary frame."""
        await self._ws.send(data)

    async def receive(self) -> bytes | str:
        """Receive one frame: ``bytes`` for terminal output, ``str`` for control.

        Raises:
            websockets.ConnectionClosed: If the connection is closed.
        """
        return await self._ws.recv()

    async def __aenter__(self) -> SessionSocket:
        """Enter async context (socket is already connected)."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Exit async context - close the connection."""
        await self.close()

    @property
    def is_open(self) -> bool:
        """Check if the WebSocket connection is open."""
        return self._ws.state == State.OPEN


__all__ = ["SessionSocket"]
