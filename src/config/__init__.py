"""Configuration module for the device platform access-control service."""

from .database import DatabaseSettings, get_database_settings
from .settings import RBACSettings, Settings, get_rbac_settings, get_settings

__all__ = [
    "DatabaseSettings",
    "get_database_settings",
    "RBACSettings",
    "Settings",
    "get_rbac_settings",
    "get_settings",
]
