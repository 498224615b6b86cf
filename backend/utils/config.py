"""
PathNotify Configuration Module.

Centralizes all configuration settings using Pydantic Settings.
Requires Python 3.11+.
"""

from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load .env file into os.environ at module import time
# This ensures nested BaseSettings classes can read the values
_env_file = Path(__file__).parent.parent / ".env"
if _env_file.exists():
    load_dotenv(_env_file)
else:
    # Try current working directory
    load_dotenv()


class WatcherSettings(BaseSettings):
    """Watch engine configuration settings."""

    model_config = SettingsConfigDict(env_prefix="NOTIFY_")

    max_retries: int = Field(
        default=5, ge=0, le=100, description="Watch re-establishment attempts per path"
    )
    retry_delay_ms: int = Field(default=100, ge=0, description="Delay before the first retry")
    retry_backoff: float = Field(default=2.0, ge=1.0, description="Retry delay multiplier")
    poll_interval_ms: int = Field(
        default=0, ge=0, description="Periodic verification sweep interval, 0 disables"
    )
    existence_check_concurrency: int = Field(default=16, ge=1, le=256)
    use_polling: bool = Field(default=False, description="Use watchdog's polling observer")
    polling_observer_timeout: float = Field(default=1.0, gt=0.0)

    @property
    def retry_delay(self) -> float:
        """Initial retry delay in seconds."""
        return self.retry_delay_ms / 1000.0

    @property
    def poll_interval(self) -> float:
        """Verification sweep interval in seconds."""
        return self.poll_interval_ms / 1000.0


class LoggingSettings(BaseSettings):
    """Logging configuration settings."""

    model_config = SettingsConfigDict(env_prefix="LOG_")

    level: str = Field(default="INFO")
    format: str = Field(default="console")  # "json" or "console"

    @field_validator("format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        """Only the two supported renderers are accepted."""
        v = v.lower()
        if v not in ("json", "console"):
            raise ValueError(f"unsupported log format: {v}")
        return v


class Settings(BaseSettings):
    """Main application settings aggregating all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application metadata
    app_name: str = Field(default="PathNotify")
    app_version: str = Field(default="0.1.0")
    environment: str = Field(default="development")

    # Sub-settings
    watcher: WatcherSettings = Field(default_factory=WatcherSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Get cached application settings.

    Returns singleton instance of Settings. Pass explicit settings
    to the engine to override them in tests.
    """
    return Settings()
