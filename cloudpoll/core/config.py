"""Poller configuration settings."""

from typing import Optional

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load environment variables from .env file
load_dotenv()


class PollerSettings(BaseSettings):
    """Polling engine configuration (environment prefix CPOLL_)."""

    model_config = SettingsConfigDict(
        env_prefix="CPOLL_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Project configuration
    configs: str = Field(
        default="configs",
        description="Directory holding one sub-directory per polling project",
    )

    # Feed timing
    box_listen_window_seconds: float = Field(
        default=30.0,
        description="How long an event stream poll listens for pushed events",
    )
    dropbox_longpoll_timeout_seconds: int = Field(
        default=60,
        description="Timeout requested from the cursor long-poll endpoint (30-480)",
        ge=30,
        le=480,
    )
    request_timeout_seconds: float = Field(
        default=30.0,
        description="Timeout for ordinary provider API calls",
    )

    # Retry policy for fetches
    max_fetch_attempts: int = Field(default=3, ge=1, description="Attempts per feed call before the cycle fails")
    retry_backoff_seconds: float = Field(default=2.0, description="Base delay for exponential retry backoff")

    # Scheduling
    max_concurrent_accounts: int = Field(default=4, ge=1, description="Accounts polled in parallel")
    poll_interval_seconds: float = Field(default=60.0, description="Pause between polling rounds")

    # Normalization
    max_path_depth: int = Field(default=64, ge=1, description="Maximum ancestor hops when rebuilding a path")

    # Index notifications
    solr_url: Optional[str] = Field(default=None, description="Solr core URL; notifications disabled when empty")


_settings_cache: Optional[PollerSettings] = None


def get_settings() -> PollerSettings:
    """Get cached poller settings."""
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = PollerSettings()
    return _settings_cache
