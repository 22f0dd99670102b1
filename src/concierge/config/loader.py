"""Configuration loading from TOML files and environment variables."""

import os
import tomllib
from pathlib import Path
from typing import Any

from pydantic import SecretStr, ValidationError

from concierge.config.models import ConciergeConfig, ConfigError, ModelConfig
from concierge.config.paths import get_config_path

PROVIDER_ENV_VARS = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
}


def _get_default_config_paths() -> list[Path]:
    """Get ordered list of default config file locations."""
    return [
        Path("config.toml"),
        get_config_path(),
        Path("/etc/concierge/config.toml"),
    ]


def _resolve_env_secrets(config: dict[str, Any]) -> dict[str, Any]:
    """Fill provider API keys from the environment where the file omits them."""
    used_providers = {
        model.get("provider")
        for model in config.get("models", {}).values()
        if isinstance(model, dict)
    }
    for provider, env_var in PROVIDER_ENV_VARS.items():
        section = config.get(provider)
        if section is None and provider not in used_providers:
            continue
        section = section if isinstance(section, dict) else {}
        if section.get("api_key") is None and (value := os.environ.get(env_var)):
            section["api_key"] = SecretStr(value)
        config[provider] = section
    return config


def load_config(path: Path | None = None) -> ConciergeConfig:
    """Load configuration from TOML file.

    Args:
        path: Explicit path to config file. If None, searches default locations.

    Returns:
        Validated ConciergeConfig instance.

    Raises:
        FileNotFoundError: If no config file is found.
        ConfigError: If the file is not valid TOML or fails validation.
    """
    config_path: Path | None = None
    default_paths = _get_default_config_paths()

    if path is not None:
        config_path = Path(path).expanduser()
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
    else:
        for default_path in default_paths:
            expanded = default_path.expanduser()
            if expanded.exists():
                config_path = expanded
                break

    if config_path is None:
        raise FileNotFoundError(
            f"No config file found. Searched: {', '.join(str(p) for p in default_paths)}"
        )

    try:
        with config_path.open("rb") as f:
            raw_config = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {config_path}: {e}") from e

    raw_config = _resolve_env_secrets(raw_config)

    try:
        return ConciergeConfig.model_validate(raw_config)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration in {config_path}:\n{e}") from e


def get_default_config() -> ConciergeConfig:
    """Get a default configuration for development/testing."""
    raw: dict[str, Any] = {
        "models": {
            "default": ModelConfig(
                provider="anthropic",
                model="claude-haiku-4-5-20251001",
            ).model_dump()
        }
    }
    return ConciergeConfig.model_validate(_resolve_env_secrets(raw))
