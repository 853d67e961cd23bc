"""
ForgeFlow — Centralized configuration.

Loads all settings from .env and validates required keys.
Every service constructed at process start reads its defaults from here.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, field_validator

# Load .env from project root (one level up from forgeflow/config.py)
_ENV_PATH = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_ENV_PATH)


class Settings(BaseModel):
    """Application settings loaded from environment variables."""

    # Telegram (presentation + notification delivery)
    TELEGRAM_BOT_TOKEN: str

    # Security: the first id is the player who owns the profile
    ALLOWED_USER_IDS: list[int] = []

    # SQLite
    DATABASE_PATH: str = "data/forgeflow.db"

    # Reminder calendar triggers are built in this zone
    TIMEZONE: str = "UTC"

    LOG_LEVEL: str = "INFO"

    # Leveling
    XP_PER_MINUTE: int = 2
    BOSS_MULTIPLIER: int = 2

    # Focus block length suggested by /go
    DEFAULT_FOCUS_MINUTES: int = 25

    @field_validator("ALLOWED_USER_IDS", mode="before")
    @classmethod
    def parse_user_ids(cls, v: str | list[int]) -> list[int]:
        if isinstance(v, list):
            return v
        if isinstance(v, str) and v.strip():
            return [int(uid.strip()) for uid in v.split(",") if uid.strip()]
        return []

    @field_validator("XP_PER_MINUTE", "BOSS_MULTIPLIER", "DEFAULT_FOCUS_MINUTES", mode="before")
    @classmethod
    def parse_positive_int(cls, v: str | int) -> int:
        value = int(v)
        if value < 1:
            raise ValueError(f"must be a positive integer, got {value}")
        return value

    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        return str(v).strip().upper() or "INFO"


def _load_settings() -> Settings:
    """Load settings from environment, validating required keys."""
    token = os.getenv("TELEGRAM_BOT_TOKEN", "")

    if not token or token.startswith("your-"):
        print("ERROR: TELEGRAM_BOT_TOKEN is missing or not set in .env", file=sys.stderr)
        sys.exit(1)

    return Settings(
        TELEGRAM_BOT_TOKEN=token,
        ALLOWED_USER_IDS=os.getenv("ALLOWED_USER_IDS", ""),
        DATABASE_PATH=os.getenv("DATABASE_PATH", "data/forgeflow.db"),
        TIMEZONE=os.getenv("TIMEZONE", "UTC"),
        LOG_LEVEL=os.getenv("LOG_LEVEL", "INFO"),
        XP_PER_MINUTE=os.getenv("XP_PER_MINUTE", "2"),
        BOSS_MULTIPLIER=os.getenv("BOSS_MULTIPLIER", "2"),
        DEFAULT_FOCUS_MINUTES=os.getenv("DEFAULT_FOCUS_MINUTES", "25"),
    )


# Singleton, imported by other modules as:
#   from forgeflow.config import settings
settings = _load_settings()
