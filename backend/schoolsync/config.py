"""Application configuration management."""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        if self.debug and self.log_level.upper() != "TRACE":
            self.log_level = "DEBUG"

    # Database
    database_url: str

    # Security
    encryption_key: str

    # CORS
    cors_origins: str = "http://localhost:5173"

    # Application
    debug: bool = False
    log_level: str = "INFO"
    api_v1_str: str = "/api/v1"

    # Recurring sync scheduler
    enable_scheduler: bool = True
    cron_timezone: str = "Asia/Kolkata"
    schedule_reload_minutes: int = 5

    # Run ledger
    error_message_max_length: int = 4000
    error_summary_limit: int = 5

    # Connectors
    managebac_default_base_url: str = "https://api.managebac.com"
    http_timeout_seconds: float = 30.0
    http_retry_attempts: int = 3

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins from comma-separated string."""
        return [origin.strip() for origin in self.cors_origins.split(",")]


# Global settings instance
settings = Settings()
