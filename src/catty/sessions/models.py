from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from ..config import ROUTING_HEADER


class SessionInfo(BaseModel):
    """Session metadata from the API, as returned by a session lookup."""

    model_config = ConfigDict(extra="ignore")

    session_id: str
    label: str
    machine_id: str
    connect_url: str
    connect_token: str | None = None
    region: str = ""
    status: str = ""
    created_at: str = ""
    machine_state: str | None = None
    headers: dict[str, str] = Field(default_factory=dict)

    @property
    def is_stopped(self) -> bool:
        return self.status == "stopped"

    @property
    def is_machine_running(self) -> bool:
        # Lookups without live=true carry no machine_state.
        return self.machine_state is None or self.machine_state == "started"

    def routing_headers(self) -> dict[str, str]:
        """Headers that pin the transport to this session's machine."""
        return {ROUTING_HEADER: self.machine_id, **self.headers}


class APIErrorResponse(BaseModel):
    """Error body returned by the session API."""

    error: str = ""
    code: str = ""
    upgrade_url: str | None = None
