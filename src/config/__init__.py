"""Configuration module for the lodge security core."""

from .settings import (
    DatabaseSettings,
    RedisSettings,
    SecuritySettings,
    Settings,
    StartupSecurityError,
    get_settings,
    validate_startup_security,
)

__all__ = [
    "DatabaseSettings",
    "RedisSettings",
    "SecuritySettings",
    "Settings",
    "StartupSecurityError",
    "get_settings",
    "validate_startup_security",
]
