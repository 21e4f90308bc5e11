"""
Unit tests for the configuration settings module.

Tests cover:
- Defaults and environment variable loading
- Implied auth/encryption enablement
- Validation failures and ConfigurationError formatting
- The YAML config file source and source precedence
- Startup validation of the database location
"""

import os
import pytest
from unittest.mock import patch

import bcrypt

from config.settings import (
    Settings,
    Environment,
    KeyDerivation,
    ConfigurationError,
    create_settings_for_environment,
    flatten_yaml_config,
    get_settings,
    validate_startup,
    clear_settings_cache,
)


@pytest.fixture(scope="module")
def password_hash() -> str:
    return bcrypt.hashpw(b"s3cret", bcrypt.gensalt(rounds=4)).decode()


class TestSettings:
    """Tests for the Settings class."""

    def test_default_values_are_applied(self):
        """Test that default values are correctly applied."""
        with patch.dict(os.environ, {}, clear=True):
            settings = Settings()

            assert settings.server_host == "0.0.0.0"
            assert settings.server_port == 3000
            assert settings.server_cors is True
            assert settings.auth_enabled is False
            assert settings.encryption_enabled is False
            assert settings.encryption_key_derivation == KeyDerivation.SHA256
            assert settings.db_path == "./data/owntracks.db"
            assert settings.db_ttl == 2592000
            assert settings.cleanup_interval_seconds == 3600
            assert settings.log_level == "INFO"
            assert settings.log_format == "json"
            assert settings.rate_limit_requests_per_minute == 600
            assert settings.environment == Environment.DEVELOPMENT

    def test_environment_variables_are_loaded(self):
        """Test that environment variables override defaults."""
        env_vars = {
            "SERVER_PORT": "8080",
            "DB_PATH": "/var/lib/owntracks/locations.db",
            "DB_TTL": "86400",
            "LOG_LEVEL": "debug",
            "LOG_FORMAT": "PRETTY",
        }
        with patch.dict(os.environ, env_vars, clear=True):
            settings = Settings()

            assert settings.server_port == 8080
            assert settings.db_path == "/var/lib/owntracks/locations.db"
            assert settings.db_ttl == 86400
            assert settings.log_level == "DEBUG"
            assert settings.log_format == "pretty"

    def test_auth_credentials_imply_auth_enabled(self, password_hash):
        """Setting a username and password hash turns authentication on."""
        env_vars = {"AUTH_USERNAME": "alice", "AUTH_PASSWORD": password_hash}
        with patch.dict(os.environ, env_vars, clear=True):
            settings = Settings()

            assert settings.auth_enabled is True
            assert settings.auth_username == "alice"

    def test_explicit_auth_disabled_wins_over_credentials(self, password_hash):
        env_vars = {
            "AUTH_ENABLED": "false",
            "AUTH_USERNAME": "alice",
            "AUTH_PASSWORD": password_hash,
        }
        with patch.dict(os.environ, env_vars, clear=True):
            assert Settings().auth_enabled is False

    def test_auth_enabled_without_credentials_raises_error(self):
        with patch.dict(os.environ, {"AUTH_ENABLED": "true"}, clear=True):
            with pytest.raises(Exception) as exc_info:
                Settings()

            assert "auth_username" in str(exc_info.value)

    def test_plaintext_auth_password_is_rejected(self):
        """The password setting must hold a bcrypt hash, not the password itself."""
        env_vars = {"AUTH_USERNAME": "alice", "AUTH_PASSWORD": "s3cret"}
        with patch.dict(os.environ, env_vars, clear=True):
            with pytest.raises(Exception) as exc_info:
                Settings()

            assert "bcrypt" in str(exc_info.value)

    def test_encryption_key_implies_encryption_enabled(self):
        with patch.dict(os.environ, {"ENCRYPTION_KEY": "passphrase"}, clear=True):
            settings = Settings()

            assert settings.encryption_enabled is True
            assert settings.encryption_key == "passphrase"

    def test_encryption_enabled_without_key_raises_error(self):
        """Encryption without a key is a configuration error, never a pass-through."""
        with patch.dict(os.environ, {"ENCRYPTION_ENABLED": "true"}, clear=True):
            with pytest.raises(Exception) as exc_info:
                Settings()

            assert "encryption_key" in str(exc_info.value)

    def test_blank_encryption_key_is_treated_as_unset(self):
        with patch.dict(os.environ, {"ENCRYPTION_KEY": "   "}, clear=True):
            settings = Settings()

            assert settings.encryption_key is None
            assert settings.encryption_enabled is False

    def test_padded_key_derivation_accepted(self):
        env_vars = {"ENCRYPTION_KEY": "k", "ENCRYPTION_KEY_DERIVATION": "padded"}
        with patch.dict(os.environ, env_vars, clear=True):
            assert Settings().encryption_key_derivation == KeyDerivation.PADDED

    def test_invalid_log_level_raises_error(self):
        """Test that invalid log_level raises validation error."""
        with patch.dict(os.environ, {"LOG_LEVEL": "INVALID_LEVEL"}, clear=True):
            with pytest.raises(Exception) as exc_info:
                Settings()

            assert "log_level" in str(exc_info.value).lower()

    def test_invalid_log_format_raises_error(self):
        with patch.dict(os.environ, {"LOG_FORMAT": "xml"}, clear=True):
            with pytest.raises(Exception) as exc_info:
                Settings()

            assert "log_format" in str(exc_info.value).lower()

    def test_invalid_port_raises_error(self):
        with patch.dict(os.environ, {"SERVER_PORT": "70000"}, clear=True):
            with pytest.raises(Exception):
                Settings()

    def test_redacted_masks_secrets(self, password_hash):
        settings = Settings(
            auth_username="alice",
            auth_password=password_hash,
            encryption_key="passphrase",
        )
        redacted = settings.redacted()

        assert redacted["auth_password"] == "***"
        assert redacted["encryption_key"] == "***"
        assert redacted["auth_username"] == "alice"
        assert redacted["db_ttl"] == 2592000


class TestYamlConfig:
    """Tests for the YAML config file source."""

    def test_flatten_nested_sections(self):
        flat = flatten_yaml_config({
            "server": {"host": "127.0.0.1", "port": 8080, "cors": False},
            "auth": {"enabled": False},
            "encryption": {"key": "k"},
            "database": {"path": "/tmp/x.db", "ttl": 60},
            "logging": {"level": "debug", "pretty": True},
            "retention": {"interval_seconds": 120},
        })

        assert flat == {
            "server_host": "127.0.0.1",
            "server_port": 8080,
            "server_cors": False,
            "auth_enabled": False,
            "encryption_key": "k",
            "db_path": "/tmp/x.db",
            "db_ttl": 60,
            "log_level": "debug",
            "log_format": "pretty",
            "cleanup_interval_seconds": 120,
        }

    def test_yaml_file_supplies_values(self, tmp_path):
        config_file = tmp_path / "config.yaml"
        config_file.write_text(
            "server:\n  port: 8080\n"
            "database:\n  ttl: 60\n"
            "logging:\n  pretty: true\n"
        )
        with patch.dict(os.environ, {"CONFIG_PATH": str(config_file)}, clear=True):
            settings = Settings()

            assert settings.server_port == 8080
            assert settings.db_ttl == 60
            assert settings.log_format == "pretty"

    def test_environment_overrides_yaml(self, tmp_path):
        config_file = tmp_path / "config.yaml"
        config_file.write_text("server:\n  port: 8080\n")
        env_vars = {"CONFIG_PATH": str(config_file), "SERVER_PORT": "9000"}
        with patch.dict(os.environ, env_vars, clear=True):
            assert Settings().server_port == 9000

    def test_init_arguments_override_yaml(self, tmp_path):
        config_file = tmp_path / "config.yaml"
        config_file.write_text("database:\n  ttl: 60\n")
        with patch.dict(os.environ, {"CONFIG_PATH": str(config_file)}, clear=True):
            assert Settings(db_ttl=5).db_ttl == 5

    def test_missing_yaml_file_is_ignored(self, tmp_path):
        env_vars = {"CONFIG_PATH": str(tmp_path / "absent.yaml")}
        with patch.dict(os.environ, env_vars, clear=True):
            assert Settings().server_port == 3000

    def test_yaml_credentials_imply_enablement(self, tmp_path):
        config_file = tmp_path / "config.yaml"
        config_file.write_text("encryption:\n  key: from-yaml\n")
        with patch.dict(os.environ, {"CONFIG_PATH": str(config_file)}, clear=True):
            settings = Settings()

            assert settings.encryption_enabled is True
            assert settings.encryption_key == "from-yaml"

    def test_non_mapping_yaml_raises_configuration_error(self, tmp_path):
        config_file = tmp_path / "config.yaml"
        config_file.write_text("- just\n- a list\n")
        with patch.dict(os.environ, {"CONFIG_PATH": str(config_file)}, clear=True):
            with pytest.raises(ConfigurationError):
                Settings()

    def test_malformed_yaml_raises_configuration_error(self, tmp_path):
        config_file = tmp_path / "config.yaml"
        config_file.write_text("server: [unclosed\n")
        with patch.dict(os.environ, {"CONFIG_PATH": str(config_file)}, clear=True):
            with pytest.raises(ConfigurationError) as exc_info:
                Settings()

            assert "config_path" in str(exc_info.value)


class TestConfigurationError:
    """Tests for the ConfigurationError exception."""

    def test_error_message_with_missing_fields(self):
        error = ConfigurationError(
            "Configuration failed",
            missing_fields=["encryption_key", "auth_username"]
        )

        message = str(error)
        assert "Configuration failed" in message
        assert "Missing required fields" in message
        assert "encryption_key" in message
        assert "auth_username" in message

    def test_error_message_with_invalid_fields(self):
        error = ConfigurationError(
            "Configuration failed",
            invalid_fields={"log_level": "must be one of DEBUG, INFO"}
        )

        message = str(error)
        assert "Invalid field values" in message
        assert "log_level" in message


class TestGetSettings:
    """Tests for the cached settings accessor."""

    def test_get_settings_returns_cached_instance(self):
        with patch.dict(os.environ, {}, clear=True):
            first = get_settings()
            second = get_settings()

            assert isinstance(first, Settings)
            assert first is second

    def test_clear_settings_cache_allows_reload(self):
        with patch.dict(os.environ, {"SERVER_PORT": "4000"}, clear=True):
            assert get_settings().server_port == 4000

        clear_settings_cache()

        with patch.dict(os.environ, {"SERVER_PORT": "5000"}, clear=True):
            assert get_settings().server_port == 5000

    def test_get_settings_raises_configuration_error_on_invalid_config(self):
        with patch.dict(os.environ, {"LOG_LEVEL": "LOUD"}, clear=True):
            with pytest.raises(ConfigurationError) as exc_info:
                get_settings()

            assert "log_level" in exc_info.value.invalid_fields

    def test_missing_encryption_key_is_reported(self):
        with patch.dict(os.environ, {"ENCRYPTION_ENABLED": "true"}, clear=True):
            with pytest.raises(ConfigurationError) as exc_info:
                create_settings_for_environment(Environment.PRODUCTION)

            assert "production" in str(exc_info.value)
            assert "encryption_key" in str(exc_info.value)


class TestValidateStartup:
    """Tests for startup validation of the database location."""

    def test_creates_missing_database_directory(self, tmp_path):
        db_path = tmp_path / "nested" / "dir" / "owntracks.db"
        settings = Settings(db_path=str(db_path))

        validate_startup(settings)

        assert db_path.parent.is_dir()

    def test_fails_when_directory_cannot_be_created(self, tmp_path):
        blocker = tmp_path / "not-a-directory"
        blocker.write_text("")
        settings = Settings(db_path=str(blocker / "owntracks.db"))

        with pytest.raises(ConfigurationError) as exc_info:
            validate_startup(settings)

        assert "db_path" in exc_info.value.invalid_fields
