"""How a single connection attempt ended."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ProcessExited:
    """The remote process exited; final."""

    code: int


@dataclass(frozen=True)
class UserInterrupted:
    """The user asked to leave (Ctrl+C twice, SIGINT or Ctrl+\\); final."""


@dataclass(frozen=True)
class ReplacedByPeer:
    """Another client took over the session; final."""


@dataclass(frozen=True)
class Disconnected:
    """The transport failed; the only outcome that may be retried."""

    reason: str


ConnectionOutcome = ProcessExited | UserInterrupted | ReplacedByPeer | Disconnected


__all__ = [
    "ProcessExited",
    "UserInterrupted",
    "ReplacedByPeer",
    "Disconnected",
    "ConnectionOutcome",
]
