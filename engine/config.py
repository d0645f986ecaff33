"""Engine configuration loaded from environment variables."""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineSettings(BaseSettings):
    """Reconciliation engine settings."""

    model_config = SettingsConfigDict(
        env_prefix="ADDONSYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    debug: bool = False

    # Remote endpoints
    sync_server_url: str = "http://localhost:1610"
    addon_api_url: str = "https://api.strem.io"

    # Local durable storage
    storage_url: str = "sqlite+aiosqlite:///data/engine.db"

    # HTTP
    http_timeout_seconds: float = Field(default=30.0, gt=0)
    probe_timeout_seconds: float = Field(default=10.0, gt=0)

    # Sync scheduling
    push_debounce_seconds: float = Field(default=1.5, ge=0)
    anti_wipe_push_delay_seconds: float = Field(default=1.5, ge=0)
    local_newer_push_delay_seconds: float = Field(default=2.0, ge=0)

    # Account store
    pending_removal_grace_seconds: float = Field(default=5.0, ge=0)
    manifest_cache_ttl_seconds: int = Field(default=1800, ge=1)

    # Failover
    failover_interval_seconds: float = Field(default=60.0, gt=0)
    failover_history_limit: int = Field(default=200, ge=1)

    # Library health checks
    health_batch_size: int = Field(default=5, ge=1)
    health_cooldown_seconds: int = Field(default=180, ge=0)

    # Key derivation
    pbkdf2_iterations: int = Field(default=600_000, ge=1)
