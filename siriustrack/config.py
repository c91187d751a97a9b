"""
SiriusTrack — Centralized configuration.

Loads all settings from .env and validates them.
This module is the foundation for every other module in the project.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, ValidationError, field_validator

# Load .env from project root (one level up from siriustrack/config.py)
_ENV_PATH = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_ENV_PATH)


class Settings(BaseModel):
    """Application settings loaded from environment variables."""

    # SQLite
    DATABASE_PATH: str = "data/siriustrack.db"
    DB_TIMEOUT_SECONDS: float = 5.0   # 0 → no timeout around store calls

    # Calendar day boundaries are computed in this zone
    TIMEZONE: str = "Asia/Tokyo"

    # Engines
    EVALUATION_WINDOW_DAYS: int = 30
    CARRYOVER_LOOKBACK_DAYS: int = 7

    LOG_LEVEL: str = "INFO"

    @field_validator("EVALUATION_WINDOW_DAYS", "CARRYOVER_LOOKBACK_DAYS", mode="before")
    @classmethod
    def parse_days(cls, v: str | int) -> int:
        days = int(v)
        if days < 1:
            raise ValueError("must be at least 1 day")
        return days

    @field_validator("DB_TIMEOUT_SECONDS", mode="before")
    @classmethod
    def parse_timeout(cls, v: str | float) -> float:
        seconds = float(v)
        if seconds < 0:
            raise ValueError("must not be negative")
        return seconds

    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def parse_log_level(cls, v: str) -> str:
        return str(v).strip().upper() or "INFO"


def _load_settings() -> Settings:
    """Load settings from environment, exiting on invalid values."""
    try:
        return Settings(
            DATABASE_PATH=os.getenv("DATABASE_PATH", "data/siriustrack.db"),
            DB_TIMEOUT_SECONDS=os.getenv("DB_TIMEOUT_SECONDS", "5"),
            TIMEZONE=os.getenv("TIMEZONE", "Asia/Tokyo"),
            EVALUATION_WINDOW_DAYS=os.getenv("EVALUATION_WINDOW_DAYS", "30"),
            CARRYOVER_LOOKBACK_DAYS=os.getenv("CARRYOVER_LOOKBACK_DAYS", "7"),
            LOG_LEVEL=os.getenv("LOG_LEVEL", "INFO"),
        )
    except ValidationError as exc:
        print(f"ERROR: invalid configuration in .env:\n{exc}", file=sys.stderr)
        sys.exit(1)


# Singleton — imported by all other modules as:
#   from siriustrack.config import settings
settings = _load_settings()
