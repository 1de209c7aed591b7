"""
Centralized configuration management for the flashdeck application.
"""
from datetime import timedelta
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .constants import (
    DEFAULT_NEW_CARDS_PER_SESSION,
    DEFAULT_QUALITY_MAP,
    RELEARN_DELAY,
)
from .scheduler import SM2SchedulerConfig

# --- Path Configuration ---


def get_default_data_dir() -> Path:
    """Returns the default directory holding the deck store and its backups."""
    return Path.home() / ".local" / "share" / "flashdeck"


def get_default_db_path() -> Path:
    """Returns the default path for the deck store database file."""
    return get_default_data_dir() / "decks.db"


class Settings(BaseSettings):
    """
    Defines application settings, loaded from environment variables or .env files.

    Every field can be overridden with a FLASHDECK_-prefixed variable, e.g.
    FLASHDECK_DB_PATH or FLASHDECK_HARD_QUALITY.
    """

    model_config = SettingsConfigDict(
        env_prefix="FLASHDECK_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # --- Core Paths ---
    db_path: Path = Field(default_factory=get_default_db_path)

    # Where `export backup` writes when no path is given. None means the
    # user's Documents folder (or home directory if there is none).
    backup_dir: Optional[Path] = None

    # --- Study Configuration ---
    new_cards_per_session: int = Field(
        default=DEFAULT_NEW_CARDS_PER_SESSION, ge=0
    )

    # Quality score used for the ease update on a "Hard" answer.
    # 3 follows the published SM-2 table; lower values penalise Hard more.
    hard_quality: int = Field(default=DEFAULT_QUALITY_MAP["Hard"], ge=0, le=5)

    relearn_delay_minutes: int = Field(
        default=int(RELEARN_DELAY.total_seconds() // 60), ge=1
    )

    # --- Testing Configuration ---
    # When True, disables safety checks that prevent data loss during tests.
    # Should NEVER be enabled in production. Can be set via FLASHDECK_TESTING_MODE.
    testing_mode: bool = False

    def scheduler_config(self) -> SM2SchedulerConfig:
        """Build the scheduler configuration from these settings."""
        quality_map = dict(DEFAULT_QUALITY_MAP)
        quality_map["Hard"] = self.hard_quality
        return SM2SchedulerConfig(
            quality_map=quality_map,
            relearn_delay=timedelta(minutes=self.relearn_delay_minutes),
        )


# Create a singleton instance of the settings
settings = Settings()
