"""Centralized configuration management using Pydantic Settings.

This module provides typed configuration for all runtime settings,
loaded from environment variables with sensible defaults.

Usage:
    from rendezvous.config import get_settings
    settings = get_settings()
    backend = settings.storage.backend
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _parse_flag(v):
    if isinstance(v, str):
        return v.lower() in ("1", "true", "yes")
    return bool(v)


class PostgresSettings(BaseSettings):
    """PostgreSQL connection configuration."""

    model_config = SettingsConfigDict(
        env_prefix="POSTGRES_",
        extra="ignore",
        populate_by_name=True,
    )

    host: str = Field(default="postgres", description="PostgreSQL host")
    port: int = Field(default=5432, description="PostgreSQL port")
    user: str = Field(default="devuser", description="PostgreSQL user")
    password: str = Field(default="", description="PostgreSQL password")
    database: str = Field(
        default="devdb",
        validation_alias="POSTGRES_DB",
        description="Database name",
    )
    pool_min_size: int = Field(default=2, description="Minimum pool size")
    pool_max_size: int = Field(default=10, description="Maximum pool size")
    pool_timeout: int = Field(default=30, description="Timeout for acquiring connections")
    pool_max_lifetime: int = Field(
        default=1800, description="Maximum connection lifetime in seconds"
    )
    pool_max_idle: int = Field(
        default=300, description="Maximum idle time before closing connection"
    )

    def get_dsn(self) -> str:
        """Generate PostgreSQL DSN connection string."""
        return (
            f"host={self.host} port={self.port} user={self.user} "
            f"password={self.password} dbname={self.database} sslmode=disable"
        )


class RedisSettings(BaseSettings):
    """Redis connection configuration for the decision bus."""

    model_config = SettingsConfigDict(env_prefix="REDIS_", extra="ignore")

    host: str = Field(default="redis", description="Redis host")
    port: int = Field(default=6379, description="Redis port")
    password: str = Field(default="", description="Redis password")
    max_connections: int = Field(default=20, description="Maximum pool connections")
    pool_timeout_sec: float = Field(default=5.0, description="Pool timeout in seconds")
    socket_timeout: float = Field(default=5.0, description="Socket timeout in seconds")


class StorageSettings(BaseSettings):
    """Which store implementation backs events and availability."""

    model_config = SettingsConfigDict(env_prefix="STORAGE_", extra="ignore")

    backend: Literal["memory", "postgres"] = Field(default="memory")


class SweeperSettings(BaseSettings):
    """Periodic sweep configuration."""

    model_config = SettingsConfigDict(env_prefix="SWEEP_", extra="ignore")

    interval_sec: float = Field(default=300.0, description="Seconds between sweeps")
    jitter_sec: float = Field(default=0.0, description="Random extra delay per cycle")

    @field_validator("interval_sec")
    @classmethod
    def validate_interval(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("interval_sec must be positive")
        return v


class FeatureSettings(BaseSettings):
    """Feature flags configuration."""

    model_config = SettingsConfigDict(extra="ignore")

    sweeper: bool = Field(default=True, alias="enable_sweeper")
    decision_bus: bool = Field(default=False, alias="enable_decision_bus")

    @field_validator("*", mode="before")
    @classmethod
    def parse_bool(cls, v):
        return _parse_flag(v)


class DebugSettings(BaseSettings):
    """Debug flags configuration."""

    model_config = SettingsConfigDict(extra="ignore")

    matching: bool = Field(default=False, alias="matching_debug")

    @field_validator("*", mode="before")
    @classmethod
    def parse_bool(cls, v):
        return _parse_flag(v)


class Settings:
    """Main settings combining all configuration sections.

    Not a BaseSettings subclass; each section loads with its own prefix.
    """

    def __init__(self) -> None:
        self.postgres = PostgresSettings()
        self.redis = RedisSettings()
        self.storage = StorageSettings()
        self.sweeper = SweeperSettings()
        self.features = FeatureSettings()
        self.debug = DebugSettings()


@lru_cache
def get_settings() -> Settings:
    """Get cached Settings instance (singleton pattern)."""
    return Settings()


def clear_settings_cache() -> None:
    """Clear cached settings (useful for testing)."""
    get_settings.cache_clear()
