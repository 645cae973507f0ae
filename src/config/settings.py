"""Application settings using Pydantic Settings.

Centralized configuration for the device platform access-control service.

Environment variables:
- APP_*: application identity, environment and logging
- RBAC_*: permission cache behaviour
"""

import logging
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class RBACSettings(BaseSettings):
    """Permission resolution and cache configuration."""

    model_config = SettingsConfigDict(
        env_prefix="RBAC_",
        extra="ignore",
    )

    cache_enabled: bool = Field(default=True, description="Cache resolved permission sets per user")
    cache_ttl_seconds: int = Field(
        default=300,
        ge=1,
        description="Seconds a resolved permission set stays valid (5 minutes)",
    )
    cache_max_entries: int = Field(
        default=1000,
        ge=1,
        description="Entries kept before least-recently-accessed eviction kicks in",
    )
    cache_eviction_ratio: float = Field(
        default=0.2,
        gt=0.0,
        le=1.0,
        description="Share of max entries evicted when the cache overflows",
    )
    cache_cleanup_interval_seconds: int = Field(
        default=120,
        ge=1,
        description="Seconds between background sweeps of expired entries",
    )


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Application info
    name: str = Field(default="Device Platform Access Control", description="Application name")
    version: str = Field(default="1.0.0", description="Application version")
    debug: bool = Field(default=False, description="Debug mode")
    environment: str = Field(default="development", description="Environment name")
    log_level: str = Field(default="INFO", description="Root log level")

    # API settings
    api_host: str = Field(default="127.0.0.1", description="API host")
    api_port: int = Field(default=8000, description="API port")

    # Nested settings (loaded separately)
    @property
    def rbac(self) -> RBACSettings:
        return RBACSettings()

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


@lru_cache
def get_rbac_settings() -> RBACSettings:
    """Get cached RBAC settings instance."""
    return RBACSettings()
