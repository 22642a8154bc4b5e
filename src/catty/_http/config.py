"""HTTP configuration for the catty session API."""

from __future__ import annotations

from dataclasses import dataclass, field

from ..config import API_TIMEOUT, DEFAULT_API_ADDR, get_access_token


@dataclass
class HTTPConfig:
    """Configuration for HTTP requests to the session API."""

    base_url: str = DEFAULT_API_ADDR
    timeout: float = API_TIMEOUT
    token: str | None = None
    default_headers: dict[str, str] = field(default_factory=dict)

    def get_headers(self, bearer: str) -> dict[str, str]:
        """Build request headers with authorization."""
        headers = {
            "authorization": f"Bearer {bearer}",
            "accept": "application/json",
            "content-type": "application/json",
            **self.default_headers,
        }
        return headers


def require_token(token: str | None) -> str:
    """Resolve token from argument, environment or stored credentials."""
    resolved = token or get_access_token()
    if not resolved:
        raise RuntimeError("Not logged in. Please run 'catty login' first or set CATTY_TOKEN.")
    return resolved


__all__ = ["HTTPConfig", "require_token"]
