"""Tests for central configuration settings."""

import os
from unittest.mock import patch

import pytest

from config.settings import (
    AppSettings,
    BatchWriterSettings,
    FlappingSettings,
    RedisSettings,
    get_settings,
)


class TestBatchWriterSettings:
    def test_defaults_applied(self):
        settings = BatchWriterSettings()
        assert settings.interval_seconds == 30.0
        assert settings.max_batch_size == 100
        assert settings.continuation_delay == 0.1

    def test_env_override(self):
        with patch.dict(os.environ, {
            "BATCH_INTERVAL_SECONDS": "5",
            "BATCH_MAX_BATCH_SIZE": "250",
        }, clear=False):
            settings = BatchWriterSettings()
            assert settings.interval_seconds == 5.0
            assert settings.max_batch_size == 250

    def test_zero_batch_size_rejected(self):
        with patch.dict(os.environ, {"BATCH_MAX_BATCH_SIZE": "0"}, clear=False):
            with pytest.raises(ValueError, match="BATCH_MAX_BATCH_SIZE"):
                BatchWriterSettings()


class TestFlappingSettings:
    def test_defaults(self):
        settings = FlappingSettings()
        assert settings.window_minutes == 10
        assert settings.change_threshold == 5
        assert settings.min_speed_change_mbps == 10
        assert settings.history_size == 100
        assert settings.alert_cooldown_seconds == 300

    def test_env_override(self):
        with patch.dict(os.environ, {"FLAPPING_CHANGE_THRESHOLD": "3"}, clear=False):
            assert FlappingSettings().change_threshold == 3


class TestRedisSettings:
    def test_password_not_in_repr(self):
        with patch.dict(os.environ, {"REDIS_PASSWORD": "super-secret"}, clear=False):
            settings = RedisSettings()
            assert "super-secret" not in repr(settings)
            assert settings.redis_password.get_secret_value() == "super-secret"

    def test_reconnect_defaults(self):
        settings = RedisSettings()
        assert settings.redis_max_reconnect_attempts == 10
        assert settings.redis_reconnect_base_delay == 1.0
        assert settings.redis_reconnect_max_delay == 30.0


class TestAppSettings:
    def test_nested_groups_initialized(self):
        settings = AppSettings()
        assert settings.redis is not None
        assert settings.database is not None
        assert settings.batch_writer.max_batch_size >= 1
        assert settings.server.port == 3001

    def test_sqlite_path_default(self):
        env = os.environ.copy()
        env.pop("DATABASE_PATH", None)
        with patch.dict(os.environ, env, clear=True):
            settings = AppSettings()
            assert settings.database.sqlite_path.name == "telemetry.db"

    def test_invalid_log_format_rejected_outside_tests(self):
        env = os.environ.copy()
        env.pop("TESTING", None)
        env["LOG_FORMAT"] = "xml"
        with patch.dict(os.environ, env, clear=True):
            with pytest.raises(ValueError, match="LOG_FORMAT"):
                AppSettings()

    def test_invalid_log_format_tolerated_in_tests(self):
        with patch.dict(os.environ, {"TESTING": "true", "LOG_FORMAT": "xml"}, clear=False):
            assert AppSettings().log_format == "xml"


class TestGetSettings:
    def test_singleton(self):
        assert get_settings() is get_settings()

    def test_cache_clear_rebuilds(self):
        first = get_settings()
        get_settings.cache_clear()
        assert get_settings() is not first
