"""Configuration constants for the familyhub web service."""
from __future__ import annotations

import os
from pathlib import Path
from typing import Optional, Tuple

from dotenv import load_dotenv

from ..models import SYNC_PATH

load_dotenv()


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return max(int(raw), 1)
    except ValueError:
        return default


SQLITE_FILE_NAME = os.environ.get("FAMILYHUB_SQLITE", "familyhub.db")
HEARTBEAT_SECONDS = _env_float("FAMILYHUB_HEARTBEAT_SECONDS", 30.0)
SEND_TIMEOUT_SECONDS = _env_float("FAMILYHUB_SEND_TIMEOUT_SECONDS", 10.0)
WS_PING_INTERVAL = _env_float("FAMILYHUB_WS_PING_SECONDS", 20.0)
WS_PING_TIMEOUT = _env_float("FAMILYHUB_WS_PING_TIMEOUT_SECONDS", 20.0)
HOST = os.environ.get("FAMILYHUB_HOST", "127.0.0.1")
PORT = _env_int("FAMILYHUB_PORT", 3000)
DEFAULT_SHOPPING_DAYS = _env_int("FAMILYHUB_SHOPPING_DAYS", 7)
_LOG_PATH = os.environ.get("FAMILYHUB_LOG_PATH", "")
LOG_PATH: Optional[Path] = Path(_LOG_PATH) if _LOG_PATH else None
APP_MODE = os.environ.get("NODE_ENV", os.environ.get("FAMILYHUB_MODE", "production"))
FRONTEND_URL = os.environ.get("FRONTEND_URL", "http://localhost:4200")
CORS_ORIGINS: Tuple[str, ...] = tuple(
    origin.strip() for origin in FRONTEND_URL.split(",") if origin.strip()
)
SYNC_CLIENT_HEADER = "X-Sync-Client"
CALENDAR_ASSIGNMENT_ACTION = "event-assignment-updated"
DEFAULT_PROFILE_AVATAR = "🧒"
DEFAULT_PRIZE_ICON = "🎁"
DEFAULT_PRIZE_COST = 10

__all__ = [
    "SQLITE_FILE_NAME",
    "HEARTBEAT_SECONDS",
    "SEND_TIMEOUT_SECONDS",
    "WS_PING_INTERVAL",
    "WS_PING_TIMEOUT",
    "HOST",
    "PORT",
    "DEFAULT_SHOPPING_DAYS",
    "LOG_PATH",
    "APP_MODE",
    "FRONTEND_URL",
    "CORS_ORIGINS",
    "SYNC_PATH",
    "SYNC_CLIENT_HEADER",
    "CALENDAR_ASSIGNMENT_ACTION",
    "DEFAULT_PROFILE_AVATAR",
    "DEFAULT_PRIZE_ICON",
    "DEFAULT_PRIZE_COST",
]
