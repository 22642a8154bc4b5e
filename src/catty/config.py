"""Configuration constants and environment lookups."""

from __future__ import annotations

import json
import os

DEFAULT_API_ADDR = "https://api.catty.dev"
CREDENTIALS_DIR = ".catty"
CREDENTIALS_FILE = "credentials.json"
DEBUG_LOG_FILE = ".catty-debug.log"

# Timeouts (seconds)
API_TIMEOUT = 120.0  # machine creation can be slow
HANDSHAKE_TIMEOUT = 30.0
WS_READ_TIMEOUT = 60.0  # server side, must be > its 25s ping interval
CLIENT_READ_TIMEOUT = WS_READ_TIMEOUT + 15.0
HEALTH_CHECK_INTERVAL = 5.0
SYNC_BACK_ACK_GRACE = 5.0
DOUBLE_INTERRUPT_WINDOW = 1.0

# WebSocket close codes
WS_POLICY_VIOLATION = 1008  # connection replaced by a newer client

# Reconnect policy
MAX_RECONNECT_ATTEMPTS = 5
RECONNECT_DELAY = 2.0

# Remote workspace layout
REMOTE_WORKSPACE = "/workspace"
REMOTE_UPLOAD_DIR = "/workspace/.catty-uploads"

ROUTING_HEADER = "fly-force-instance-id"


def get_api_addr(override: str | None = None) -> str:
    """Resolve the API address from an explicit value, CATTY_API_ADDR or the default."""
    if override:
        return override
    return os.getenv("CATTY_API_ADDR") or DEFAULT_API_ADDR


def get_credentials_path() -> str:
    return os.path.join(os.path.expanduser("~"), CREDENTIALS_DIR, CREDENTIALS_FILE)


def get_debug_log_path() -> str:
    return os.path.join(os.path.expanduser("~"), DEBUG_LOG_FILE)


def is_debug_enabled() -> bool:
    return os.getenv("CATTY_DEBUG", "") == "1"


def get_access_token() -> str | None:
    """Return the access token from CATTY_TOKEN or the stored credentials file."""
    env_token = os.getenv("CATTY_TOKEN")
    if env_token:
        return env_token
    token_path = get_credentials_path()
    if not os.path.exists(token_path):
        return None
    try:
        with open(token_path, "r", encoding="utf-8") as f:
            data = json.load(f)
        token = data.get("access_token")
        if isinstance(token, str) and token:
            return token
        return None
    except (OSError, ValueError, AttributeError):
        return None
