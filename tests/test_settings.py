"""Tests for environment-driven settings."""

import pytest
from pydantic import ValidationError

from config.settings import LoggingSettings, RBACSettings, RedisSettings, get_settings


class TestRBACSettings:
    """RBAC_* environment variables."""

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("RBAC_DATABASE_URL", raising=False)
        settings = RBACSettings(_env_file=None)

        assert settings.resolve_timeout_seconds == 5.0
        assert settings.cache_enabled is True
        assert settings.cache_max_entries == 0
        assert settings.broadcast_enabled is False
        assert settings.invalidation_channel == "rbac:invalidate"

    def test_from_environment(self, monkeypatch):
        monkeypatch.setenv("RBAC_RESOLVE_TIMEOUT_SECONDS", "0.5")
        monkeypatch.setenv("RBAC_CACHE_ENABLED", "false")
        monkeypatch.setenv("RBAC_BROADCAST_ENABLED", "true")

        settings = get_settings().rbac

        assert settings.resolve_timeout_seconds == 0.5
        assert settings.cache_enabled is False
        assert settings.broadcast_enabled is True

    def test_timeout_must_be_positive(self):
        with pytest.raises(ValidationError):
            RBACSettings(resolve_timeout_seconds=0)

    def test_max_entries_not_negative(self):
        with pytest.raises(ValidationError):
            RBACSettings(cache_max_entries=-1)


class TestRedisSettings:
    def test_url(self):
        assert RedisSettings(host="cache", port=6380, db=2).url == "redis://cache:6380/2"

    def test_url_with_password_and_ssl(self):
        settings = RedisSettings(host="cache", password="secret", ssl=True)

        assert settings.url == "rediss://:secret@cache:6379/0"


class TestLoggingSettings:
    def test_level_normalized(self):
        assert LoggingSettings(level="debug").level == "DEBUG"

    def test_unknown_level_rejected(self):
        with pytest.raises(ValidationError):
            LoggingSettings(level="chatty")


class TestAppSettings:
    def test_cached(self):
        assert get_settings() is get_settings()

    def test_is_production(self, monkeypatch):
        monkeypatch.setenv("APP_ENVIRONMENT", "production")

        assert get_settings().is_production is True
