"""Application settings and environment configuration loading."""

from __future__ import annotations

from pathlib import Path
from typing import Self

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

BACKEND_ROOT = Path(__file__).resolve().parents[2]
DEFAULT_ENV_FILE = BACKEND_ROOT / ".env"


class Settings(BaseSettings):
    """Typed runtime configuration sourced from environment variables."""

    model_config = SettingsConfigDict(
        # Load `backend/.env` regardless of current working directory.
        env_file=[DEFAULT_ENV_FILE, ".env"],
        env_file_encoding="utf-8",
        extra="ignore",
    )

    environment: str = "dev"

    # Storage/query service (PostgREST-compatible) and blob storage.
    storage_url: str = "http://localhost:54321"
    storage_api_key: str = ""
    storage_schema: str = "public"
    attachments_bucket: str = "task-attachments"

    # Optimistic mutations
    mutation_timeout_seconds: float = Field(default=10.0, gt=0)

    # Realtime resynchronization
    resync_max_attempts: int = Field(default=3, ge=1)
    resync_backoff_seconds: float = Field(default=1.0, ge=0)
    resync_backoff_max_seconds: float = Field(default=30.0, ge=0)

    # Projection limits
    activity_feed_limit: int = Field(default=20, ge=1)
    recent_movements_limit: int = Field(default=3, ge=0)
    recent_activity_limit: int = Field(default=5, ge=0)

    # HTTP surface
    cors_origins: str = ""
    stream_ping_seconds: int = Field(default=15, ge=1)
    request_log_slow_ms: int = Field(default=1000, ge=0)
    request_log_include_health: bool = True

    # Logging
    log_level: str = "INFO"
    log_format: str = "text"
    log_use_utc: bool = False

    @model_validator(mode="after")
    def _defaults(self) -> Self:
        self.storage_url = self.storage_url.rstrip("/")
        self.log_format = self.log_format.strip().lower()
        if self.log_format not in {"text", "json"}:
            raise ValueError("LOG_FORMAT must be 'text' or 'json'.")
        # A capped backoff below the base delay would never grow.
        if self.resync_backoff_max_seconds < self.resync_backoff_seconds:
            self.resync_backoff_max_seconds = self.resync_backoff_seconds
        return self

    @property
    def cors_origin_list(self) -> list[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]


settings = Settings()
