# Configuration module for the FamTracker backend
from .settings import (
    ConfigurationError,
    Environment,
    Settings,
    create_settings_for_environment,
    get_settings,
    validate_startup,
)

__all__ = [
    "ConfigurationError",
    "Environment",
    "Settings",
    "create_settings_for_environment",
    "get_settings",
    "validate_startup",
]
