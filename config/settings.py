"""
Central configuration using Pydantic BaseSettings.

Validates all env vars at startup (fail-fast). Every tunable of the
telemetry pipeline (Redis, store, batch writer, flap detector, HTTP server)
lives in one of the nested groups below.

Usage:
    from config.settings import get_settings

    settings = get_settings()
    print(settings.batch_writer.max_batch_size)

Lazy initialization: get_settings() creates the singleton on first call.
Tests can reset via get_settings.cache_clear().
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings


def _is_testing() -> bool:
    """Check if running in test mode."""
    return os.getenv("TESTING", "").lower() in ("true", "1")


# =============================================================================
# Nested Settings Groups
# =============================================================================


class RedisSettings(BaseSettings):
    """Redis connection and reconnection configuration."""

    model_config = {"env_prefix": "", "extra": "ignore"}

    redis_url: str = "redis://localhost:6379/0"
    redis_password: Optional[SecretStr] = None
    redis_socket_timeout: float = 5.0

    # Reconnect backoff: delay = min(attempt * base, max), stop after N attempts
    redis_max_reconnect_attempts: int = 10
    redis_reconnect_base_delay: float = 1.0
    redis_reconnect_max_delay: float = 30.0

    # Pub/sub listener backoff (jittered)
    pubsub_reconnect_base: float = 1.0
    pubsub_reconnect_max: float = 30.0


class DatabaseSettings(BaseSettings):
    """Durable store configuration."""

    model_config = {"env_prefix": "", "extra": "ignore"}

    database_url: Optional[str] = None  # PostgreSQL URL (optional)
    database_path: Optional[Path] = None
    database_pool_size: int = 5

    @property
    def sqlite_path(self) -> Path:
        """SQLite file used when DATABASE_URL is not a PostgreSQL URL."""
        if self.database_path is not None:
            return self.database_path
        return Path(__file__).parent.parent / "data" / "telemetry.db"


class BatchWriterSettings(BaseSettings):
    """Write-back batching configuration."""

    model_config = {"env_prefix": "BATCH_", "extra": "ignore"}

    interval_seconds: float = 30.0
    max_batch_size: int = 100
    continuation_delay: float = 0.1

    @field_validator("max_batch_size")
    @classmethod
    def _positive_batch(cls, v: int) -> int:
        if v < 1:
            raise ValueError("BATCH_MAX_BATCH_SIZE must be >= 1")
        return v


class FlappingSettings(BaseSettings):
    """Flap detection thresholds."""

    model_config = {"env_prefix": "FLAPPING_", "extra": "ignore"}

    window_minutes: float = 10
    change_threshold: int = 5
    min_speed_change_mbps: int = 10
    history_size: int = 100
    alert_cooldown_seconds: float = 300


class RetentionSettings(BaseSettings):
    """Raw telemetry retention (rows older than this are pruned)."""

    model_config = {"env_prefix": "RETENTION_", "extra": "ignore"}

    enabled: bool = True
    raw_days: int = 30
    check_interval_seconds: float = 3600


class ServerSettings(BaseSettings):
    """HTTP / Socket.IO server configuration."""

    model_config = {"env_prefix": "", "extra": "ignore"}

    host: str = "0.0.0.0"
    port: int = 3001
    cors_origins: str = "*"
    socketio_ping_timeout: int = 60
    socketio_ping_interval: int = 25
    shutdown_timeout: int = 30


# =============================================================================
# Root Settings
# =============================================================================


class AppSettings(BaseSettings):
    """Root application settings composing all sub-settings."""

    model_config = {"env_prefix": "", "extra": "ignore", "env_file": ".env", "env_file_encoding": "utf-8"}

    app_version: str = "3.0.0"

    # Device directory (YAML or JSON)
    devices_file: Path = Path(__file__).parent / "devices.yaml"

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"
    log_file: str = ""

    # Nested groups (initialized separately to support env_prefix)
    redis: RedisSettings = None  # type: ignore[assignment]
    database: DatabaseSettings = None  # type: ignore[assignment]
    batch_writer: BatchWriterSettings = None  # type: ignore[assignment]
    flapping: FlappingSettings = None  # type: ignore[assignment]
    retention: RetentionSettings = None  # type: ignore[assignment]
    server: ServerSettings = None  # type: ignore[assignment]

    @model_validator(mode="before")
    @classmethod
    def _init_nested(cls, values):
        """Initialize nested settings from environment."""
        if values.get("redis") is None:
            values["redis"] = RedisSettings()
        if values.get("database") is None:
            values["database"] = DatabaseSettings()
        if values.get("batch_writer") is None:
            values["batch_writer"] = BatchWriterSettings()
        if values.get("flapping") is None:
            values["flapping"] = FlappingSettings()
        if values.get("retention") is None:
            values["retention"] = RetentionSettings()
        if values.get("server") is None:
            values["server"] = ServerSettings()
        return values

    @model_validator(mode="after")
    def _validate_log_format(self):
        """Reject unknown log formats outside of tests."""
        if _is_testing():
            return self

        if self.log_format not in ("json", "text"):
            raise ValueError(f"LOG_FORMAT must be 'json' or 'text', got {self.log_format!r}")

        return self


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    """
    Get the application settings singleton.

    Lazy-initialized on first call. Validates all env vars (fail-fast).
    Tests can reset via: get_settings.cache_clear()
    """
    return AppSettings()
