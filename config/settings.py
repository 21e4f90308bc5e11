"""
Configuration management for the OwnTracks backend.

This module provides centralized configuration loading and validation using
Pydantic settings. Values are resolved with the following precedence:

1. Explicit keyword arguments
2. Environment variables (``SERVER_PORT``, ``DB_PATH``, ``ENCRYPTION_KEY`` ...)
3. ``.env`` files (base file, then the environment-specific one)
4. The optional YAML config file (``CONFIG_PATH``, default ``./config.yaml``)
5. Field defaults
"""

import os
from enum import Enum
from pathlib import Path
from typing import Any, Optional, List, Tuple, Type

import yaml
from pydantic import Field, field_validator, model_validator
from pydantic.fields import FieldInfo
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

DEFAULT_CONFIG_PATH = "./config.yaml"

SECRET_FIELDS = ("auth_password", "encryption_key")


class Environment(str, Enum):
    """Supported deployment environments."""
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class KeyDerivation(str, Enum):
    """How the configured passphrase is turned into a 32-byte secretbox key."""
    SHA256 = "sha256"
    PADDED = "padded"


def _detect_environment() -> Environment:
    """
    Detect the current environment from the ENVIRONMENT variable.

    Returns:
        Environment: The detected environment, defaults to DEVELOPMENT if not set.
    """
    env_value = os.environ.get("ENVIRONMENT", "development").lower().strip()
    try:
        return Environment(env_value)
    except ValueError:
        return Environment.DEVELOPMENT


def _get_env_files(environment: Environment) -> Tuple[str, ...]:
    """
    Get the list of .env files to load for the given environment.

    Files are loaded in order, with later files overriding earlier ones.
    """
    return (".env", f".env.{environment.value}")


# Nested YAML sections and the flat field prefix each one maps to.
_YAML_SECTION_PREFIXES = {
    "server": "server_",
    "auth": "auth_",
    "encryption": "encryption_",
    "database": "db_",
    "logging": "log_",
}


def flatten_yaml_config(data: dict[str, Any]) -> dict[str, Any]:
    """
    Flatten the nested YAML layout into Settings field names.

    ``{"server": {"port": 8080}, "database": {"ttl": 60}}`` becomes
    ``{"server_port": 8080, "db_ttl": 60}``. ``logging.pretty`` is mapped to
    ``log_format`` and ``retention.interval_seconds`` to
    ``cleanup_interval_seconds``. Top-level scalar keys are passed through.
    """
    flat: dict[str, Any] = {}
    for key, value in (data or {}).items():
        if key in _YAML_SECTION_PREFIXES and isinstance(value, dict):
            prefix = _YAML_SECTION_PREFIXES[key]
            for sub_key, sub_value in value.items():
                if key == "logging" and sub_key == "pretty":
                    flat["log_format"] = "pretty" if sub_value else "json"
                else:
                    flat[f"{prefix}{sub_key}"] = sub_value
        elif key == "retention" and isinstance(value, dict):
            if "interval_seconds" in value:
                flat["cleanup_interval_seconds"] = value["interval_seconds"]
        elif not isinstance(value, dict):
            flat[key] = value
    return flat


class YamlConfigFileSource(PydanticBaseSettingsSource):
    """
    Settings source reading the optional YAML config file.

    A missing file yields no values; an unreadable or malformed one is a
    configuration error.
    """

    def __init__(self, settings_cls: Type[BaseSettings], config_path: Optional[str] = None):
        super().__init__(settings_cls)
        self.config_path = Path(config_path or os.environ.get("CONFIG_PATH", DEFAULT_CONFIG_PATH))
        self._data = self._load()

    def _load(self) -> dict[str, Any]:
        if not self.config_path.is_file():
            return {}
        try:
            with open(self.config_path, "r", encoding="utf-8") as f:
                raw = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(
                f"Failed to read config file '{self.config_path}'",
                invalid_fields={"config_path": str(e)},
            ) from e
        if not isinstance(raw, dict):
            raise ConfigurationError(
                f"Config file '{self.config_path}' must contain a mapping",
                invalid_fields={"config_path": type(raw).__name__},
            )
        return flatten_yaml_config(raw)

    def get_field_value(self, field: FieldInfo, field_name: str) -> Tuple[Any, str, bool]:
        return self._data.get(field_name), field_name, False

    def __call__(self) -> dict[str, Any]:
        return {
            name: value
            for name, value in self._data.items()
            if name in self.settings_cls.model_fields
        }


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables and config files.

    Environment variable names match the field names (case-insensitive), so
    ``DB_TTL=86400`` sets ``db_ttl``. Setting ``AUTH_USERNAME``/``AUTH_PASSWORD``
    implies ``auth_enabled`` and setting ``ENCRYPTION_KEY`` implies
    ``encryption_enabled`` unless those flags are given explicitly.
    """

    # Environment
    environment: Environment = Field(
        default=Environment.DEVELOPMENT,
        description="Deployment environment (development, staging, production)"
    )

    # Server
    server_host: str = Field(default="0.0.0.0", description="Interface to bind")
    server_port: int = Field(default=3000, ge=1, le=65535, description="Port to bind")
    server_cors: bool = Field(default=True, description="Enable permissive CORS")

    # Basic authentication
    auth_enabled: bool = Field(default=False, description="Require HTTP basic auth")
    auth_username: Optional[str] = Field(default=None, description="Basic auth username")
    auth_password: Optional[str] = Field(
        default=None,
        description="bcrypt hash of the basic auth password"
    )

    # Payload encryption
    encryption_enabled: bool = Field(default=False, description="Decrypt encrypted reports")
    encryption_key: Optional[str] = Field(default=None, description="Shared secret passphrase")
    encryption_key_derivation: KeyDerivation = Field(
        default=KeyDerivation.SHA256,
        description="Passphrase to key derivation: 'sha256' or 'padded' (OwnTracks apps)"
    )

    # Database
    db_path: str = Field(default="./data/owntracks.db", description="SQLite database file")
    db_ttl: int = Field(
        default=2592000,
        description="Record time-to-live in seconds (<= 0 disables eviction)"
    )
    cleanup_interval_seconds: int = Field(
        default=3600,
        description="Seconds between scheduled sweeps (<= 0 disables the schedule)"
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )
    log_format: str = Field(default="json", description="Log output format: 'json' or 'pretty'")

    # Rate limiting
    rate_limit_requests_per_minute: int = Field(
        default=600,
        ge=1,
        le=100000,
        description="Maximum requests per minute per client IP"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            YamlConfigFileSource(settings_cls),
            file_secret_settings,
        )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate that log_level is a valid logging level."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v = v.strip().upper()
        if v not in valid_levels:
            raise ValueError(f"log_level must be one of: {', '.join(sorted(valid_levels))}")
        return v

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Validate that log_format is either 'json' or 'pretty'."""
        v = v.strip().lower()
        if v not in {"json", "pretty"}:
            raise ValueError("log_format must be 'json' or 'pretty'")
        return v

    @field_validator("db_path")
    @classmethod
    def validate_db_path(cls, v: str) -> str:
        """Validate that db_path is not empty."""
        if not v or not v.strip():
            raise ValueError("db_path cannot be empty")
        return v.strip()

    @field_validator("auth_username", "auth_password", "encryption_key")
    @classmethod
    def blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        """Treat blank secrets as unset."""
        if v is not None and not v.strip():
            return None
        return v

    @model_validator(mode="after")
    def validate_feature_requirements(self) -> "Settings":
        """Derive implied feature flags and check that enabled features are configured."""
        if "auth_enabled" not in self.model_fields_set and (self.auth_username or self.auth_password):
            self.auth_enabled = True
        if "encryption_enabled" not in self.model_fields_set and self.encryption_key:
            self.encryption_enabled = True

        if self.auth_enabled:
            if not self.auth_username or not self.auth_password:
                raise ValueError(
                    "auth_username and auth_password are required when auth_enabled is true"
                )
            if not self.auth_password.startswith(("$2a$", "$2b$", "$2y$")):
                raise ValueError("auth_password must be a bcrypt hash")
        if self.encryption_enabled and not self.encryption_key:
            raise ValueError("encryption_key is required when encryption_enabled is true")
        return self

    def redacted(self) -> dict[str, Any]:
        """Settings as a dict with secrets masked, for the startup log line."""
        data = self.model_dump(mode="json")
        for name in SECRET_FIELDS:
            if data.get(name):
                data[name] = "***"
        return data


class ConfigurationError(Exception):
    """Exception raised when configuration validation fails."""

    def __init__(self, message: str, missing_fields: Optional[List[str]] = None,
                 invalid_fields: Optional[dict] = None):
        self.message = message
        self.missing_fields = missing_fields or []
        self.invalid_fields = invalid_fields or {}
        super().__init__(self.format_error_message())

    def format_error_message(self) -> str:
        """Format a descriptive error message listing all issues."""
        parts = [self.message]

        if self.missing_fields:
            parts.append(f"\nMissing required fields: {', '.join(self.missing_fields)}")

        if self.invalid_fields:
            invalid_parts = [f"  - {field}: {error}" for field, error in self.invalid_fields.items()]
            parts.append("\nInvalid field values:\n" + "\n".join(invalid_parts))

        return "".join(parts)


def create_settings_for_environment(environment: Optional[Environment] = None) -> Settings:
    """
    Factory function to create Settings for a specific environment.

    Args:
        environment: Optional environment override. If not provided, detected from
                    ENVIRONMENT variable.

    Returns:
        Settings: Validated settings for the specified environment.

    Raises:
        ConfigurationError: If settings are missing or invalid.
    """
    if environment is None:
        environment = _detect_environment()

    env_files = tuple(f for f in _get_env_files(environment) if Path(f).exists())

    try:
        class EnvironmentSettings(Settings):
            model_config = SettingsConfigDict(
                env_file=env_files or None,
                env_file_encoding="utf-8",
                case_sensitive=False,
                extra="ignore"
            )

        return EnvironmentSettings()
    except ConfigurationError:
        raise
    except Exception as e:
        missing_fields = []
        invalid_fields = {}

        # Extract field-level errors from Pydantic ValidationError
        if hasattr(e, 'errors'):
            for error in e.errors():
                field_name = '.'.join(str(loc) for loc in error.get('loc', [])) or "settings"
                error_type = error.get('type', '')
                error_msg = error.get('msg', str(error))

                if error_type == 'missing':
                    missing_fields.append(field_name)
                else:
                    invalid_fields[field_name] = error_msg

        raise ConfigurationError(
            f"Failed to load configuration for environment '{environment.value}'",
            missing_fields=missing_fields,
            invalid_fields=invalid_fields or {"settings": str(e)}
        ) from e


# Global settings cache
_settings_cache: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get the process settings, loading them on first use.

    Returns:
        Settings: The validated application settings.

    Raises:
        ConfigurationError: If settings are missing or invalid.
    """
    global _settings_cache

    if _settings_cache is None:
        _settings_cache = create_settings_for_environment()

    return _settings_cache


def clear_settings_cache() -> None:
    """
    Clear the settings cache.

    This is primarily useful for testing to allow reloading settings
    with different environment variables.
    """
    global _settings_cache
    _settings_cache = None


def validate_startup(settings: Settings) -> None:
    """
    Validate settings against the host before accepting requests.

    Checks that the database directory exists (creating it if needed) and
    is writable.

    Raises:
        ConfigurationError: If the database location is unusable.
    """
    validation_errors = {}

    db_dir = Path(settings.db_path).expanduser().resolve().parent
    try:
        db_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        validation_errors["db_path"] = f"Cannot create database directory {db_dir}: {e}"
    else:
        if not os.access(db_dir, os.W_OK):
            validation_errors["db_path"] = f"Database directory is not writable: {db_dir}"

    if validation_errors:
        raise ConfigurationError(
            "Configuration validation failed during startup",
            invalid_fields=validation_errors
        )
