"""Runtime configuration from the environment (.env is loaded first)."""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

ROOT = Path(__file__).parent.parent
load_dotenv(ROOT / ".env")

DEFAULT_DATA_DIR = ROOT / "data"


def data_dir() -> Path:
    return Path(os.getenv("DATA_DIR", str(DEFAULT_DATA_DIR)))


def host() -> str:
    return os.getenv("HOST", "0.0.0.0")


def port() -> int:
    return int(os.getenv("PORT", "13013"))


def log_level() -> str:
    return os.getenv("LOG_LEVEL", "info").lower()


def turn_deadline() -> float | None:
    """Seconds allowed per model call; 0 disables the deadline."""
    seconds = float(os.getenv("TURN_DEADLINE_SECONDS", "120"))
    return seconds if seconds > 0 else None
