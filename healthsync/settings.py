from __future__ import annotations

import os
from datetime import tzinfo
from zoneinfo import ZoneInfo


def get_env(name: str, default: str | None = None) -> str:
    v = os.getenv(name, default)
    if v is None:
        raise RuntimeError(f"Missing required env var: {name}")
    return v


def _local_tz() -> tzinfo | None:
    name = os.getenv("TIMEZONE")
    if name:
        return ZoneInfo(name)
    # None means the host zone, resolved per timestamp so each date gets its own DST offset.
    return None


DB_PATH = get_env("DB_PATH", os.path.join(os.path.dirname(__file__), "..", "health.db"))
HOST = get_env("HOST", "0.0.0.0")
PORT = int(get_env("PORT", "3001"))
LOCAL_TZ = _local_tz()

# "first" keeps the first-seen value for a duplicate key, "max" keeps the larger one.
DUPLICATE_POLICY = get_env("DUPLICATE_POLICY", "first").strip().lower()

DEFAULT_QUERY_LIMIT = int(get_env("DEFAULT_QUERY_LIMIT", "100"))
DEFAULT_QUERY_DAYS = int(get_env("DEFAULT_QUERY_DAYS", "30"))
LOG_LEVEL = get_env("LOG_LEVEL", "INFO").upper()
