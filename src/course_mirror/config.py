"""Centralized application configuration via environment variables."""

from enum import StrEnum
from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36"
)


class Environment(StrEnum):
    DEVELOPMENT = "development"
    PRODUCTION = "production"
    TESTING = "testing"


class VideoQuality(StrEnum):
    """Preferred rendition when a master playlist offers several."""

    HIGHEST = "highest"
    LOWEST = "lowest"
    P1080 = "1080p"
    P720 = "720p"
    P480 = "480p"


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Every field can be overridden with a ``COURSE_MIRROR_`` prefixed
    variable, e.g. ``COURSE_MIRROR_DOWNLOAD_CONCURRENCY=4``.
    """

    model_config = SettingsConfigDict(
        env_prefix="COURSE_MIRROR_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # --- App ---
    environment: Environment = Environment.DEVELOPMENT
    log_level: str = "INFO"

    # --- Storage ---
    output_dir: Path = Path("~/Downloads/course-mirror")
    state_dir: Path = Path("~/.course-mirror/cache")

    # --- Sync ---
    video_quality: VideoQuality = VideoQuality.HIGHEST
    extract_concurrency: int = Field(default=2, ge=1, le=5)
    download_concurrency: int = Field(default=2, ge=1, le=5)
    # Attempts inside one Download phase before a task counts as failed.
    task_retry_attempts: int = Field(default=3, ge=0, le=10)
    # Auto-retry rounds run after the Download phase.
    max_retries: int = Field(default=3, ge=0, le=10)

    # --- Network / external tools ---
    http_timeout: float = Field(default=30.0, gt=0)
    remux_timeout: float = Field(default=3600.0, gt=0)
    remux_binary: str = "ffmpeg"
    user_agent: str = DEFAULT_USER_AGENT

    @field_validator("output_dir", "state_dir")
    @classmethod
    def _expand_home(cls, value: Path) -> Path:
        return value.expanduser()


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Cached settings singleton.

    Usage::

        from course_mirror.config import get_settings
        settings = get_settings()
    """
    return Settings()
