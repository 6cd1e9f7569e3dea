"""Application settings using Pydantic Settings.

Centralized configuration for the permission engine.

Environment variables:
- RBAC_*: resolution timeout, cache sizing, broadcast and storage
- REDIS_*: connection used for cross-process invalidation
- LOG_*: log level and output format
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG", "NOTSET")


class RedisSettings(BaseSettings):
    """Redis configuration for invalidation broadcast."""

    model_config = SettingsConfigDict(
        env_prefix="REDIS_",
        extra="ignore",
    )

    host: str = Field(default="localhost", description="Redis host")
    port: int = Field(default=6379, description="Redis port")
    db: int = Field(default=0, description="Redis database number")
    password: Optional[str] = Field(default=None, description="Redis password")
    ssl: bool = Field(default=False, description="Use SSL for Redis connection")

    socket_timeout: int = Field(default=5, description="Socket timeout in seconds")
    socket_connect_timeout: int = Field(default=5, description="Connection timeout")

    @property
    def url(self) -> str:
        """Get Redis URL."""
        auth = f":{self.password}@" if self.password else ""
        protocol = "rediss" if self.ssl else "redis"
        return f"{protocol}://{auth}{self.host}:{self.port}/{self.db}"


class RBACSettings(BaseSettings):
    """Permission resolution and caching."""

    model_config = SettingsConfigDict(
        env_prefix="RBAC_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    resolve_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        description="Upper bound on one permission resolution; exceeded checks are denied",
    )

    cache_enabled: bool = Field(default=True, description="Memoize resolved permission sets")
    cache_max_entries: int = Field(
        default=0,
        ge=0,
        description="Max cached users (0 = unbounded); oldest stored entries are evicted first",
    )

    broadcast_enabled: bool = Field(
        default=False,
        description="Publish and consume invalidations over Redis pub/sub",
    )
    invalidation_channel: str = Field(default="rbac:invalidate", description="Pub/sub channel name")

    database_url: str = Field(
        default="sqlite+aiosqlite:///./rbac.db",
        description="Async SQLAlchemy URL of the assignment store",
    )
    echo_sql: bool = Field(default=False, description="Log SQL statements")


class LoggingSettings(BaseSettings):
    """Log output configuration."""

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        extra="ignore",
    )

    level: str = Field(default="INFO", description="Root log level")
    json_output: bool = Field(default=False, description="Emit JSON lines instead of readable text")
    file: Optional[str] = Field(default=None, description="Optional log file path")

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        level = v.upper()
        if level not in _LOG_LEVELS:
            raise ValueError(f"Unknown log level: {v}")
        return level


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    name: str = Field(default="RBAC Engine", description="Application name")
    environment: str = Field(default="development", description="Environment name")

    # Nested settings (loaded separately)
    @property
    def rbac(self) -> RBACSettings:
        return RBACSettings()

    @property
    def redis(self) -> RedisSettings:
        return RedisSettings()

    @property
    def logging(self) -> LoggingSettings:
        return LoggingSettings()

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment in ("production", "prod", "staging")


@lru_cache
def get_settings() -> Settings:
    """
    Get cached application settings instance.

    Returns:
        Settings: Cached settings loaded from environment.
    """
    return Settings()
