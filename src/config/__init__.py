"""Configuration module for the access core."""

from .database import DatabaseSettings, get_database_settings
from .settings import AccessSettings, get_settings

__all__ = [
    "DatabaseSettings",
    "get_database_settings",
    "AccessSettings",
    "get_settings",
]
