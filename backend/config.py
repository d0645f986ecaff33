"""Sync server configuration loaded from environment variables."""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Sync server settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Core
    debug: bool = False
    expose_docs: bool = False

    # Database
    database_url: str = "sqlite+aiosqlite:///data/db/addonsync.db"

    # Server
    host: str = "0.0.0.0"
    port: int = Field(default=1610, ge=1, le=65535)

    # CORS
    cors_origins: list[str] = Field(default_factory=list)

    # Snapshot store
    max_sync_payload_bytes: int = Field(default=100 * 1024 * 1024, ge=1024)

    # Autopilot
    autopilot_interval_seconds: float = Field(default=60.0, gt=0)
    probe_timeout_seconds: float = Field(default=10.0, gt=0)
