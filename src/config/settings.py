"""Application settings using Pydantic Settings.

Centralized configuration for the authorization core and the entity
lifecycle services.

Environment variables use the ACCESS_ prefix, e.g.:
- ACCESS_SUPER_ADMIN_ROLES='["Super Admin", "System Admin"]'
- ACCESS_PERMISSION_CACHE_TTL_SECONDS=300 (0 disables the cache)
- ACCESS_DEFAULT_PAGE_SIZE=10
"""

import logging
from functools import lru_cache
from typing import List

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class AccessSettings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_prefix="ACCESS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Logging
    log_level: str = Field(default="INFO", description="Root log level")
    log_json: bool = Field(default=False, description="Emit JSON formatted logs")

    # Authorization
    super_admin_roles: List[str] = Field(
        default=["Super Admin", "System Admin"],
        description="Role names that bypass every permission check"
    )
    permission_cache_ttl_seconds: int = Field(
        default=300,
        ge=0,
        description="Seconds a resolved principal stays cached (0 disables caching)"
    )
    permission_cache_size: int = Field(
        default=1000,
        ge=1,
        description="Max principals held in the permission cache"
    )

    # Pagination
    default_page_size: int = Field(default=10, ge=1, description="Default page size for list operations")
    max_page_size: int = Field(default=100, ge=1, description="Upper bound for requested page sizes")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        level = value.strip().upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {value}")
        return level

    @model_validator(mode="after")
    def _check_page_sizes(self) -> "AccessSettings":
        if self.default_page_size > self.max_page_size:
            raise ValueError("default_page_size must not exceed max_page_size")
        return self

    @property
    def cache_enabled(self) -> bool:
        return self.permission_cache_ttl_seconds > 0


@lru_cache
def get_settings() -> AccessSettings:
    """
    Get cached application settings instance.

    Returns:
        AccessSettings: Cached settings loaded from environment.
    """
    return AccessSettings()
