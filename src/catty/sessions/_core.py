"""Session lookup and workspace upload against the catty API."""

from __future__ import annotations

import os
import sys
from collections.abc import Mapping
from typing import Any
from urllib.parse import quote

import httpx
from pydantic import ValidationError

from .._http import AsyncTransport, BytesBody, HTTPConfig, JSONBody
from ..config import API_TIMEOUT, ROUTING_HEADER, get_api_addr
from .models import APIErrorResponse, SessionInfo

VERSION = "0.1.0"
USER_AGENT = (
    f"catty/{VERSION} (Python/{sys.version.split()[0]}; {os.uname().sysname}/{os.uname().machine})"
)

MAX_UPLOAD_SIZE = 100 * 1024 * 1024


class APIError(Exception):
    """Error from the session API."""

    def __init__(
        self,
        response: httpx.Response,
        message: str,
        *,
        error_code: str = "",
        upgrade_url: str | None = None,
    ):
        super().__init__(message)
        self.response = response
        self.status_code = response.status_code
        self.error_code = error_code
        self.upgrade_url = upgrade_url

    def is_quota_exceeded(self) -> bool:
        return self.status_code == 402 and self.error_code == "quota_exceeded"


def _parse_error(response: httpx.Response) -> APIError:
    """Build an APIError from an error response."""
    message = f"HTTP {response.status_code}"
    try:
        body = APIErrorResponse.model_validate(response.json())
    except (ValueError, ValidationError):
        body = None

    if body is not None and body.error:
        message = f"{message}: {body.error}"
        return APIError(response, message, error_code=body.code, upgrade_url=body.upgrade_url)

    text = response.text
    if text:
        snippet = text if len(text) <= 500 else text[:500] + "..."
        message = f"{message}: {snippet}"
    return APIError(response, message)


def build_upload_url(connect_url: str) -> str:
    """Derive the workspace upload URL from a session connect URL.

    ``wss://host/connect`` becomes ``https://host/upload``.
    """
    return (
        connect_url.replace("wss://", "https://", 1)
        .replace("ws://", "http://", 1)
        .replace("/connect", "/upload")
    )


class AsyncSessionClient:
    """Async client for the session lookup and workspace upload calls."""

    def __init__(
        self,
        *,
        host: str | None = None,
        token: str | None = None,
        timeout: float = API_TIMEOUT,
    ):
        self._host = get_api_addr(host).rstrip("/")
        config = HTTPConfig(base_url=self._host, timeout=timeout, token=token)
        self._transport = AsyncTransport(config)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        headers: Mapping[str, str] | None = None,
        query: Mapping[str, Any] | None = None,
        json_body: Any | None = None,
        body: BytesBody | None = None,
        bearer: str | None = None,
    ) -> httpx.Response:
        """Make an API request, raising APIError on non-2xx responses."""
        req_headers = {"user-agent": USER_AGENT}
        if headers:
            req_headers.update(headers)
        params = {k: v for k, v in (query or {}).items() if v is not None}

        resp = await self._transport.send(
            method,
            path,
            headers=req_headers,
            params=params,
            body=JSONBody(json_body) if json_body is not None else body,
            bearer=bearer,
        )
        if 200 <= resp.status_code < 300:
            return resp
        raise _parse_error(resp)

    async def get_session(self, label: str, *, live: bool = False) -> SessionInfo:
        """Look up a session by id or label.

        With ``live=True`` the API also reports the machine state and issues
        a fresh connect token.
        """
        resp = await self._request(
            "GET",
            f"/v1/sessions/{quote(label, safe='')}",
            query={"live": "true"} if live else None,
        )
        return SessionInfo.model_validate(resp.json())

    async def upload_workspace(self, session: SessionInfo, archive: bytes) -> None:
        """POST a zipped workspace snapshot to the session's machine."""
        if len(archive) > MAX_UPLOAD_SIZE:
            raise ValueError(
                f"Workspace too large ({len(archive)} bytes, max {MAX_UPLOAD_SIZE})"
            )
        if not session.connect_token:
            raise ValueError(f"Session {session.label} has no connect token")
        await self._request(
            "POST",
            build_upload_url(session.connect_url),
            headers={ROUTING_HEADER: session.machine_id},
            body=BytesBody(archive, content_type="application/zip"),
            bearer=session.connect_token,
        )

    async def aclose(self) -> None:
        """Close the client."""
        await self._transport.aclose()

    async def __aenter__(self) -> AsyncSessionClient:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()


__all__ = [
    "AsyncSessionClient",
    "APIError",
    "USER_AGENT",
    "MAX_UPLOAD_SIZE",
    "build_upload_url",
]
