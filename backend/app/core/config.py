# app/core/config.py
"""
Application configuration using Pydantic Settings
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List
import json
from pydantic import field_validator


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables
    """

    # Application
    APP_NAME: str = "Processo Sync"
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: str

    # JWT Authentication
    JWT_SECRET_KEY: str
    JWT_ALGORITHM: str = "HS256"

    # CORS
    CORS_ORIGINS: str = '["http://localhost:3000"]'

    # Judit provider
    JUDIT_API_KEY: str = ""
    JUDIT_BASE_URL: str = "https://requests.prod.judit.io"
    JUDIT_TIMEOUT_SECONDS: float = 30.0
    JUDIT_MAX_RETRIES: int = 3
    JUDIT_BACKOFF_MS: int = 500
    JUDIT_POLL_INTERVAL_SECONDS: float = 3.0
    JUDIT_POLL_MAX_ATTEMPTS: int = 20
    JUDIT_RESPONSES_PAGE_SIZE: int = 100
    JUDIT_ALLOW_LEGACY_CREDENTIAL_FALLBACK: bool = True

    @field_validator("JUDIT_MAX_RETRIES", mode="before")
    @classmethod
    def clamp_max_retries(cls, v):
        try:
            value = int(v)
        except (TypeError, ValueError):
            return 3
        return min(max(value, 1), 10)

    @field_validator("JUDIT_BACKOFF_MS", mode="before")
    @classmethod
    def clamp_backoff_ms(cls, v):
        try:
            value = int(v)
        except (TypeError, ValueError):
            return 500
        return min(max(value, 100), 60000)

    @field_validator("JUDIT_BASE_URL", "JUDIT_API_KEY", mode="before")
    @classmethod
    def strip_judit_strings(cls, v):
        if isinstance(v, str):
            return v.strip()
        return v

    # Sync lifecycle
    SYNC_ALLOW_STATUS_REGRESSION: bool = False

    # Scheduled (cron) sync
    SCHEDULED_SYNC_ENABLED: bool = False
    SCHEDULED_SYNC_INTERVAL_MINUTES: int = 60
    SCHEDULED_SYNC_BATCH_SIZE: int = 20
    SCHEDULED_SYNC_STALE_HOURS: int = 24
    SYNC_WORKER_TOKEN: str = ""

    # Manual trigger replay window
    IDEMPOTENCY_TTL_HOURS: int = 24

    # Pydantic v2 configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins from string to list"""
        try:
            if isinstance(self.CORS_ORIGINS, str):
                return json.loads(self.CORS_ORIGINS)
            return self.CORS_ORIGINS
        except json.JSONDecodeError:
            return [item.strip() for item in self.CORS_ORIGINS.split(",") if item.strip()]


# Create settings instance
settings = Settings()
