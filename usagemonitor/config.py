from __future__ import annotations

import os

SERVICE_NAME = os.getenv("USAGE_MONITOR_SERVICE_NAME") or "Claude Code-credentials"
OAUTH_RECORD_KEY = "claudeAiOauth"

OAUTH_TOKEN_URL = os.getenv("USAGE_MONITOR_TOKEN_URL") or "https://console.anthropic.com/v1/oauth/token"
API_BASE = (os.getenv("USAGE_MONITOR_API_BASE") or "https://api.anthropic.com").rstrip("/")
USAGE_URL = f"{API_BASE}/api/oauth/usage"
PROFILE_URL = f"{API_BASE}/api/oauth/profile"
OAUTH_BETA_HEADER = "oauth-2025-04-20"

CREDENTIALS_FILE = os.getenv("USAGE_MONITOR_CREDENTIALS_FILE") or os.path.expanduser("~/.claude/.credentials.json")
# "keychain" or "file"; unset picks by platform
STORE_BACKEND = (os.getenv("USAGE_MONITOR_STORE") or "").strip().lower() or None


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value > 0 else default


POLL_INTERVAL_SECONDS = _env_float("USAGE_MONITOR_POLL_INTERVAL", 60.0)
HTTP_TIMEOUT_SECONDS = _env_float("USAGE_MONITOR_HTTP_TIMEOUT", 30.0)
