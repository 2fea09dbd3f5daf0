"""
Unit tests for configuration loading and validation.

Tests the YAML service configuration and the assistant settings model.
"""

import os
import tempfile

import pytest
import yaml

from directory_assistant.config.loader import (
    AssistantSettings,
    ProviderConfig,
    RateLimitBackend,
    load_assistant_config,
    settings_field_names,
)
from directory_assistant.storage.db import DEFAULT_DB_PATH


class TestLoadAssistantConfig:
    """Test service configuration loading."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_config(self, config_data) -> str:
        """Write config data to a temporary YAML file."""
        config_path = os.path.join(self.temp_dir, "assistant.yaml")
        with open(config_path, "w", encoding="utf-8") as f:
            yaml.dump(config_data, f)
        return config_path

    def test_no_path_returns_defaults(self):
        """Test that no config path yields the default configuration."""
        config = load_assistant_config(None)

        assert config.db_path == DEFAULT_DB_PATH
        assert config.rate_limit_store == RateLimitBackend.SQLITE
        assert config.provider.model == "gemini-2.0-flash"
        assert config.provider.api_key_env == "GEMINI_API_KEY"
        assert config.log_level == "INFO"

    def test_valid_config_loads_correctly(self):
        """Test loading a complete configuration."""
        config_path = self._write_config({
            "database": {"path": "/tmp/assistant.db"},
            "rate_limit_store": "memory",
            "provider": {
                "model": "gemini-1.5-flash",
                "timeout_seconds": 8,
                "temperature": 0.2
            },
            "logging": {"level": "debug"}
        })

        config = load_assistant_config(config_path)

        assert config.db_path == "/tmp/assistant.db"
        assert config.rate_limit_store == RateLimitBackend.MEMORY
        assert config.provider.model == "gemini-1.5-flash"
        assert config.provider.timeout_seconds == 8.0
        assert config.provider.temperature == 0.2
        assert config.log_level == "DEBUG"

    def test_empty_config_returns_defaults(self):
        """Test that an empty file yields the defaults."""
        config_path = os.path.join(self.temp_dir, "empty.yaml")
        with open(config_path, "w", encoding="utf-8") as f:
            f.write("")

        config = load_assistant_config(config_path)

        assert config.rate_limit_store == RateLimitBackend.SQLITE

    def test_missing_file_raises_error(self):
        """Test that a missing config file raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError, match="Assistant config file not found"):
            load_assistant_config(os.path.join(self.temp_dir, "missing.yaml"))

    def test_invalid_yaml_raises_error(self):
        """Test that invalid YAML raises YAMLError."""
        config_path = os.path.join(self.temp_dir, "invalid.yaml")
        with open(config_path, "w", encoding="utf-8") as f:
            f.write("database: [unclosed")

        with pytest.raises(yaml.YAMLError):
            load_assistant_config(config_path)

    def test_unknown_top_level_keys_raise_error(self):
        """Test that typos in top-level keys are rejected."""
        config_path = self._write_config({"databse": {"path": "x.db"}})

        with pytest.raises(ValueError, match="Unknown configuration keys"):
            load_assistant_config(config_path)

    def test_unknown_provider_keys_raise_error(self):
        """Test that unknown provider keys are rejected."""
        config_path = self._write_config({"provider": {"modle": "gemini-2.0-flash"}})

        with pytest.raises(ValueError, match="Unknown keys in provider"):
            load_assistant_config(config_path)

    def test_invalid_rate_limit_store_raises_error(self):
        """Test that an unknown counter backend is rejected."""
        config_path = self._write_config({"rate_limit_store": "redis"})

        with pytest.raises(ValueError, match="'rate_limit_store' must be one of"):
            load_assistant_config(config_path)

    def test_rate_limit_store_is_case_insensitive(self):
        """Test that the backend name is matched case-insensitively."""
        config_path = self._write_config({"rate_limit_store": "SQLite"})

        assert load_assistant_config(config_path).rate_limit_store == RateLimitBackend.SQLITE

    def test_invalid_log_level_raises_error(self):
        """Test that an unknown log level is rejected."""
        config_path = self._write_config({"logging": {"level": "chatty"}})

        with pytest.raises(ValueError, match="'logging.level' must be one of"):
            load_assistant_config(config_path)

    def test_non_numeric_timeout_raises_error(self):
        """Test that a string timeout is rejected."""
        config_path = self._write_config({"provider": {"timeout_seconds": "fast"}})

        with pytest.raises(ValueError, match="'provider.timeout_seconds' must be a number"):
            load_assistant_config(config_path)

    def test_zero_timeout_raises_error(self):
        """Test that a zero timeout is rejected."""
        config_path = self._write_config({"provider": {"timeout_seconds": 0}})

        with pytest.raises(ValueError, match="timeout_seconds must be > 0"):
            load_assistant_config(config_path)

    def test_invalid_section_type_raises_error(self):
        """Test that a non-dictionary section is rejected."""
        config_path = self._write_config({"provider": "gemini"})

        with pytest.raises(ValueError, match="'provider' must be a dictionary"):
            load_assistant_config(config_path)

    def test_empty_database_path_raises_error(self):
        """Test that an empty database path is rejected."""
        config_path = self._write_config({"database": {"path": "  "}})

        with pytest.raises(ValueError, match="'database.path' must be a non-empty string"):
            load_assistant_config(config_path)


class TestAssistantSettings:
    """Test the administrator-controlled settings model."""

    def test_defaults(self):
        """Test default settings values."""
        settings = AssistantSettings()

        assert settings.enabled is True
        assert settings.daily_budget_usd == 2.0
        assert settings.monthly_budget_usd == 50.0
        assert settings.rate_limits == {"minute": 2, "hour": 3, "day": 5}
        assert settings.max_tokens_per_question == 300
        assert settings.max_conversation_turns == 6
        assert settings.welcome_message

    def test_zero_daily_budget_raises_error(self):
        """Test that a zero daily budget is rejected."""
        with pytest.raises(ValueError, match="daily_budget_usd must be > 0"):
            AssistantSettings(daily_budget_usd=0)

    def test_negative_monthly_budget_raises_error(self):
        """Test that a negative monthly budget is rejected."""
        with pytest.raises(ValueError, match="monthly_budget_usd must be > 0"):
            AssistantSettings(monthly_budget_usd=-1.0)

    @pytest.mark.parametrize("name", [
        "rate_limit_per_minute",
        "rate_limit_per_hour",
        "rate_limit_per_day",
        "max_tokens_per_question",
        "max_conversation_turns",
    ])
    def test_integer_limits_must_be_positive(self, name):
        """Test that every integer limit must be at least 1."""
        with pytest.raises(ValueError, match=f"{name} must be an integer >= 1"):
            AssistantSettings(**{name: 0})

    def test_boolean_is_not_an_integer_limit(self):
        """Test that True is not accepted as a rate limit."""
        with pytest.raises(ValueError, match="rate_limit_per_minute"):
            AssistantSettings(rate_limit_per_minute=True)

    def test_empty_welcome_message_raises_error(self):
        """Test that a blank welcome message is rejected."""
        with pytest.raises(ValueError, match="welcome_message cannot be empty"):
            AssistantSettings(welcome_message="   ")

    def test_with_updates_applies_partial(self):
        """Test that a partial update keeps the other fields."""
        settings = AssistantSettings().with_updates({"rate_limit_per_minute": 10, "daily_budget_usd": 5})

        assert settings.rate_limit_per_minute == 10
        assert settings.daily_budget_usd == 5.0
        assert isinstance(settings.daily_budget_usd, float)
        assert settings.rate_limit_per_hour == 3

    def test_with_updates_rejects_unknown_keys(self):
        """Test that unknown settings keys are rejected."""
        with pytest.raises(ValueError, match="Unknown settings keys"):
            AssistantSettings().with_updates({"max_cost": 1.0})

    def test_with_updates_validates_values(self):
        """Test that updated values go through validation."""
        with pytest.raises(ValueError, match="rate_limit_per_day must be an integer >= 1"):
            AssistantSettings().with_updates({"rate_limit_per_day": -3})

    def test_with_updates_rejects_string_budget(self):
        """Test that budgets must be numbers."""
        with pytest.raises(ValueError, match="daily_budget_usd must be a number"):
            AssistantSettings().with_updates({"daily_budget_usd": "10"})

    def test_settings_field_names(self):
        """Test the exported field names."""
        assert "enabled" in settings_field_names()
        assert "welcome_message" in settings_field_names()
        assert len(settings_field_names()) == 9


class TestProviderConfig:
    """Test provider connection settings."""

    def test_empty_model_raises_error(self):
        """Test that an empty model name is rejected."""
        with pytest.raises(ValueError, match="provider.model cannot be empty"):
            ProviderConfig(model="")

    def test_temperature_out_of_range_raises_error(self):
        """Test that temperature is bounded."""
        with pytest.raises(ValueError, match="provider.temperature must be between 0 and 2"):
            ProviderConfig(temperature=3.0)
