"""
Application settings using Pydantic Settings.

Loads configuration from environment variables and .env file.
"""

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False
    )

    # Gemini API
    gemini_api_key: str

    # Bluesky credentials
    bluesky_identifier: str
    bluesky_password: str
    bluesky_host: str = "https://bsky.social"
    bot_handle: str

    # PostgreSQL database
    database_url: str

    # Loop intervals
    ingestor_interval_seconds: int = 60
    worker_interval_seconds: int = 5
    reply_sender_interval_seconds: int = 10
    stale_check_interval_seconds: int = 300

    # Job handling
    max_retries: int = 3
    stale_timeout_minutes: int = 10
    reply_batch_size: int = 10
    reply_delay_seconds: float = 5.0
    notification_page_size: int = 10
    shutdown_grace_seconds: float = 120.0

    # Quota day boundary
    quota_timezone: str = "America/Los_Angeles"

    # Health server
    host: str = "0.0.0.0"
    port: int = 8080

    @field_validator("max_retries")
    @classmethod
    def _positive_retries(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("max_retries must be greater than zero")
        return value


# Global settings instance
settings = Settings()
