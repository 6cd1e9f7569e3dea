"""Configuration module for the permission engine."""

from .settings import LoggingSettings, RBACSettings, RedisSettings, Settings, get_settings

__all__ = [
    "LoggingSettings",
    "RBACSettings",
    "RedisSettings",
    "Settings",
    "get_settings",
]
