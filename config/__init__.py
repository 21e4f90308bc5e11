# Configuration module for the OwnTracks backend
from .settings import (
    ConfigurationError,
    Environment,
    KeyDerivation,
    Settings,
    get_settings,
    validate_startup,
)

__all__ = [
    "ConfigurationError",
    "Environment",
    "KeyDerivation",
    "Settings",
    "get_settings",
    "validate_startup",
]
