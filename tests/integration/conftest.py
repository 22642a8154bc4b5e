"""Fixtures for integration tests using respx mocking."""

import pytest


@pytest.fixture
def mock_api_error_response() -> dict:
    """Mock error body for a quota failure."""
    return {
        "error": "Monthly session quota exceeded",
        "code": "quota_exceeded",
        "upgrade_url": "https://catty.dev/upgrade",
    }
