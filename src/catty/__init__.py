"""catty - client for interactive remote terminal sessions."""

from .errors import CattyError, ReconnectError, SessionUnavailableError
from .sessions import APIError, AsyncSessionClient, SessionInfo

__version__ = "0.1.0"

__all__ = [
    "AsyncSessionClient",
    "SessionInfo",
    "APIError",
    "CattyError",
    "ReconnectError",
    "SessionUnavailableError",
]
