"""Shared HTTP infrastructure for the catty session API."""

from .config import HTTPConfig, require_token
from .transport import (
    AsyncTransport,
    BaseTransport,
    BytesBody,
    JSONBody,
    RequestBody,
)

__all__ = [
    "HTTPConfig",
    "require_token",
    "BaseTransport",
    "AsyncTransport",
    "JSONBody",
    "BytesBody",
    "RequestBody",
]
