from ._core import APIError, AsyncSessionClient, build_upload_url
from .models import SessionInfo

__all__ = [
    "AsyncSessionClient",
    "APIError",
    "SessionInfo",
    "build_upload_url",
]
