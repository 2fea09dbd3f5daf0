"""
Configuration management and loading.

Handles assistant settings and the service configuration file.
"""

from dataclasses import dataclass, field, fields, replace
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from directory_assistant.storage.db import DEFAULT_DB_PATH

DEFAULT_WELCOME_MESSAGE = (
    "¡Hola! Soy tu asistente virtual del directorio de proveedores de eventos. "
    "¿En qué puedo ayudarte?"
)


class RateLimitBackend(Enum):
    """Where rate-limit counters live."""
    SQLITE = "sqlite"
    MEMORY = "memory"


@dataclass(frozen=True)
class AssistantSettings:
    """Administrator-controlled assistant settings.

    A single row, updated in place by the admin panel. The assistant only
    reads it, once per question.
    """
    enabled: bool = True
    daily_budget_usd: float = 2.00
    monthly_budget_usd: float = 50.00
    rate_limit_per_minute: int = 2
    rate_limit_per_hour: int = 3
    rate_limit_per_day: int = 5
    max_tokens_per_question: int = 300
    max_conversation_turns: int = 6
    welcome_message: str = DEFAULT_WELCOME_MESSAGE

    def __post_init__(self):
        """Validate settings values."""
        if not isinstance(self.enabled, bool):
            raise ValueError("enabled must be a boolean")
        if self.daily_budget_usd <= 0:
            raise ValueError("daily_budget_usd must be > 0")
        if self.monthly_budget_usd <= 0:
            raise ValueError("monthly_budget_usd must be > 0")
        for name in ("rate_limit_per_minute", "rate_limit_per_hour", "rate_limit_per_day",
                     "max_tokens_per_question", "max_conversation_turns"):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value < 1:
                raise ValueError(f"{name} must be an integer >= 1")
        if not isinstance(self.welcome_message, str) or not self.welcome_message.strip():
            raise ValueError("welcome_message cannot be empty")

    @property
    def rate_limits(self) -> Dict[str, int]:
        """Per-window request caps, in evaluation order."""
        return {
            "minute": self.rate_limit_per_minute,
            "hour": self.rate_limit_per_hour,
            "day": self.rate_limit_per_day,
        }

    def with_updates(self, partial: Dict[str, Any]) -> "AssistantSettings":
        """Return a copy with ``partial`` applied.

        Raises:
            ValueError: If a key is unknown or a value is invalid
        """
        unknown_keys = set(partial.keys()) - settings_field_names()
        if unknown_keys:
            raise ValueError(f"Unknown settings keys: {unknown_keys}")
        coerced = {key: _coerce_setting(key, value) for key, value in partial.items()}
        return replace(self, **coerced)


def settings_field_names() -> set:
    return {f.name for f in fields(AssistantSettings)}


def _coerce_setting(key: str, value: Any) -> Any:
    """Coerce numeric strings and ints into the declared field type."""
    if key in ("daily_budget_usd", "monthly_budget_usd"):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError(f"{key} must be a number")
        return float(value)
    return value


@dataclass(frozen=True)
class ProviderConfig:
    """Language-model provider connection settings."""
    model: str = "gemini-2.0-flash"
    base_url: str = "https://generativelanguage.googleapis.com/v1beta/openai/"
    api_key_env: str = "GEMINI_API_KEY"
    timeout_seconds: float = 15.0
    temperature: float = 0.7

    def __post_init__(self):
        """Validate provider values."""
        if not self.model or not self.model.strip():
            raise ValueError("provider.model cannot be empty")
        if self.timeout_seconds <= 0:
            raise ValueError("provider.timeout_seconds must be > 0")
        if not 0 <= self.temperature <= 2:
            raise ValueError("provider.temperature must be between 0 and 2")


@dataclass(frozen=True)
class AssistantConfig:
    """Complete service configuration."""
    db_path: str = DEFAULT_DB_PATH
    rate_limit_store: RateLimitBackend = RateLimitBackend.SQLITE
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    log_level: str = "INFO"


_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def load_assistant_config(path: Optional[str] = None) -> AssistantConfig:
    """Load and validate the service configuration from a YAML file.

    Every section is optional; a missing ``path`` yields the defaults.
    Unknown keys are rejected so typos never silently fall back to defaults.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated AssistantConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    if path is None:
        return AssistantConfig()

    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Assistant config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return AssistantConfig()
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration root must be a dictionary")

    allowed_top_keys = {'database', 'rate_limit_store', 'provider', 'logging'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    database = _section(raw_config, 'database', {'path'})
    db_path = database.get('path', DEFAULT_DB_PATH)
    if not isinstance(db_path, str) or not db_path.strip():
        raise ValueError("'database.path' must be a non-empty string")

    backend_str = raw_config.get('rate_limit_store', RateLimitBackend.SQLITE.value)
    try:
        backend = RateLimitBackend(str(backend_str).lower())
    except ValueError:
        valid = [b.value for b in RateLimitBackend]
        raise ValueError(f"'rate_limit_store' must be one of: {valid}")

    provider_data = _section(
        raw_config, 'provider',
        {'model', 'base_url', 'api_key_env', 'timeout_seconds', 'temperature'}
    )
    for numeric_key in ('timeout_seconds', 'temperature'):
        if numeric_key in provider_data:
            value = provider_data[numeric_key]
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValueError(f"'provider.{numeric_key}' must be a number")
            provider_data[numeric_key] = float(value)
    provider = ProviderConfig(**provider_data)

    logging_data = _section(raw_config, 'logging', {'level'})
    level = str(logging_data.get('level', 'INFO')).upper()
    if level not in _LOG_LEVELS:
        raise ValueError(f"'logging.level' must be one of: {sorted(_LOG_LEVELS)}")

    return AssistantConfig(
        db_path=db_path,
        rate_limit_store=backend,
        provider=provider,
        log_level=level
    )


def _section(raw_config: Dict, name: str, allowed_keys: set) -> Dict:
    """Return an optional dictionary section after checking its keys."""
    data = raw_config.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {name}: {unknown_keys}")
    return dict(data)
