"""Error types raised to the caller of the catty client."""

from __future__ import annotations


class CattyError(Exception):
    """Base class for catty client errors."""


class SessionUnavailableError(CattyError):
    """The remote session is stopped or its machine is not running."""


class ReconnectError(CattyError):
    """Automatic reconnection gave up after the configured number of attempts."""

    def __init__(self, label: str, attempts: int):
        super().__init__(
            f"Failed to reconnect after {attempts} attempts. "
            f"Run 'catty connect {label}' to try again manually."
        )
        self.label = label
        self.attempts = attempts


__all__ = ["CattyError", "SessionUnavailableError", "ReconnectError"]
