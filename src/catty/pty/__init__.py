"""Interactive terminal sessions over the catty session socket.

This package relays a local terminal to a remote process over a WebSocket,
with resize, heartbeat, exit, drag-and-drop upload and sync-back handled
on the same connection.
"""

from __future__ import annotations

from .client import SessionSocket
from .outcome import (
    ConnectionOutcome,
    Disconnected,
    ProcessExited,
    ReplacedByPeer,
    UserInterrupted,
)
from .protocol import ControlMessage, MalformedMessage, MessageType, decode, encode
from .reconnect import ReconnectSupervisor
from .shell import ConnectOptions, RelayTimings, SessionRelay, connect_to_session
from .syncback import SyncBackWriter
from .terminal import Terminal, TerminalBusyError

__all__ = [
    # Client
    "SessionSocket",
    # Protocol
    "ControlMessage",
    "MalformedMessage",
    "MessageType",
    "decode",
    "encode",
    # Session
    "ConnectOptions",
    "RelayTimings",
    "SessionRelay",
    "connect_to_session",
    "ReconnectSupervisor",
    "SyncBackWriter",
    "Terminal",
    "TerminalBusyError",
    # Outcomes
    "ConnectionOutcome",
    "Disconnected",
    "ProcessExited",
    "ReplacedByPeer",
    "UserInterrupted",
]
