"""Configuration settings for sermonsync."""

from functools import lru_cache
from pathlib import Path
from urllib.parse import urlparse

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_LOCAL_HOSTS = frozenset({"localhost", "127.0.0.1", "::1"})


def _default_home() -> Path:
    return Path.home() / ".sermonsync"


class Settings(BaseSettings):
    """Settings loaded from SERMONSYNC_* environment variables or .env."""

    model_config = SettingsConfigDict(
        env_prefix="SERMONSYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Cloud backend
    api_base_url: str = "https://tabletnotes.io"
    supabase_url: str | None = None
    supabase_publishable_key: str | None = None
    storage_bucket: str = "sermon-audio"

    # Local storage
    db_path: Path = _default_home() / "sermons.db"
    audio_dir: Path = _default_home() / "audio"

    # Timeouts (seconds)
    request_timeout: float = 60.0
    health_timeout: float = 3.0

    # Background sync
    sync_interval_seconds: float = 300.0
    background_window_seconds: float = 30.0
    network_poll_interval: float = 5.0
    metered_network: bool = False

    # Summary retry queue
    max_summary_retries: int = 3
    stuck_job_timeout_minutes: int = 10
    pending_job_max_age_days: int = 7
    queue_pacing_seconds: float = 2.0

    # Summary generation
    openai_api_key: str | None = None
    summary_model: str = "gpt-4o-mini"

    @field_validator("api_base_url")
    @classmethod
    def _require_https(cls, value: str) -> str:
        parsed = urlparse(value)
        if parsed.scheme == "https" and parsed.netloc:
            return value.rstrip("/")
        if parsed.scheme == "http" and parsed.hostname in _LOCAL_HOSTS:
            return value.rstrip("/")
        raise ValueError("api_base_url must use https (http is allowed for localhost only)")

    @field_validator("max_summary_retries")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("max_summary_retries must be >= 0")
        return value


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
