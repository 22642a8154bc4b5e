"""Shared fixtures for all tests."""

from collections.abc import Generator

import pytest

from catty.pty.terminal import Terminal


@pytest.fixture
def mock_env_clear(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    """Clear all catty-related environment variables for testing.

    This ensures tests don't accidentally use real credentials from the environment.
    """
    env_vars_to_clear = [
        "CATTY_TOKEN",
        "CATTY_API_ADDR",
        "CATTY_DEBUG",
    ]
    for var in env_vars_to_clear:
        monkeypatch.delenv(var, raising=False)
    yield


@pytest.fixture
def mock_token() -> str:
    """Mock catty API token for testing."""
    return "test_token_123456789"


@pytest.fixture
def mock_session_response() -> dict:
    """Mock response for a live session lookup."""
    return {
        "session_id": "sess_test123",
        "label": "brave-tiger-1234",
        "machine_id": "m_abc123",
        "connect_url": "wss://brave-tiger.catty.run/connect",
        "connect_token": "ct_test_token",
        "region": "iad",
        "status": "running",
        "created_at": "2024-01-15T10:30:00Z",
        "machine_state": "started",
    }


@pytest.fixture(autouse=True)
def release_terminal() -> Generator[None, None, None]:
    """Never leak raw-mode ownership from one test into the next."""
    yield
    Terminal.restore_active()
    Terminal._owner = None
