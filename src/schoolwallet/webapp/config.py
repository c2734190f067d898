"""Configuration constants for the SchoolWallet web console."""
from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

DEFAULT_API_BASE_URL = "https://nodes-staging.up.railway.app"
API_BASE_URL = os.environ.get("SCHOOLWALLET_API_BASE_URL", DEFAULT_API_BASE_URL).rstrip("/")
HTTP_TIMEOUT_SECONDS = float(os.environ.get("SCHOOLWALLET_HTTP_TIMEOUT", "50"))
SESSION_SECRET = os.environ.get("SESSION_SECRET", "change-this-session-secret")
SQLITE_FILE_NAME = os.environ.get("SCHOOLWALLET_SQLITE", "schoolwallet.db")
SESSION_CHECK_MINUTES = float(os.environ.get("SCHOOLWALLET_SESSION_CHECK_MINUTES", "10"))
CAMERA_BACKEND = os.environ.get("SCHOOLWALLET_CAMERA", "none").strip().lower()
SCAN_FRAME_BUDGET = int(os.environ.get("SCHOOLWALLET_SCAN_FRAME_BUDGET", "300"))
DEFAULT_CURRENCY = os.environ.get("SCHOOLWALLET_CURRENCY", "NGN")

_log_path = os.environ.get("SCHOOLWALLET_EVENT_LOG", "").strip()
EVENT_LOG_PATH: Optional[Path] = Path(_log_path) if _log_path else None

__all__ = [
    "API_BASE_URL",
    "CAMERA_BACKEND",
    "DEFAULT_API_BASE_URL",
    "DEFAULT_CURRENCY",
    "EVENT_LOG_PATH",
    "HTTP_TIMEOUT_SECONDS",
    "SCAN_FRAME_BUDGET",
    "SESSION_CHECK_MINUTES",
    "SESSION_SECRET",
    "SQLITE_FILE_NAME",
]
