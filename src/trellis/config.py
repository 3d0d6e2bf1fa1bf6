"""
Configuration management for Trellis.
Supports .env files and environment variables.
"""

from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Database
    database_url: str = "sqlite:///trellis.db"
    database_echo: bool = False

    # Claude API (for insights and network suggestions)
    anthropic_api_key: Optional[str] = None
    claude_model: str = "claude-sonnet-4-5"
    insights_max_tokens: int = 2048
    insights_temperature: float = 0.5

    # Resend (transactional and automation email)
    resend_api_key: Optional[str] = None
    resend_api_base: str = "https://api.resend.com"
    resend_from_email: str = "notifications@trellis.app"
    resend_webhook_secret: Optional[str] = None

    # Polar (billing)
    polar_access_token: Optional[str] = None
    polar_api_base: str = "https://api.polar.sh/v1"
    polar_webhook_secret: Optional[str] = None

    # Scheduled jobs
    cron_secret: Optional[str] = None
    automation_batch_size: int = 100
    exchange_expiry_days: int = 30
    insight_ttl_days: int = 7

    # Application settings
    app_name: str = "Trellis"
    app_url: str = "http://localhost:8000"
    debug: bool = False
    log_level: str = "INFO"
    http_timeout_seconds: float = 15.0

    def get_db_path(self) -> Path:
        """Extract the database file path from the URL."""
        if self.database_url.startswith("sqlite:///"):
            return Path(self.database_url.replace("sqlite:///", ""))
        return Path("trellis.db")


# Global settings instance
settings = Settings()


def get_settings() -> Settings:
    """Get the global settings instance."""
    return settings
