"""Config resolution shared by CLI commands."""

from pathlib import Path

import typer

from concierge.cli.console import dim, error
from concierge.config import ConciergeConfig, ConfigError, load_config
from concierge.config.models import CompletionConfig


def get_config(config_path: Path | None, *, offline: bool = False) -> ConciergeConfig:
    """Load configuration for a command.

    Without an explicit path and without a config file in the default
    locations, falls back to a keyword-only configuration.
    """
    try:
        config = load_config(config_path)
    except FileNotFoundError as e:
        if config_path is not None:
            error(str(e))
            raise typer.Exit(1) from None
        dim("No configuration found; running with keyword matching only.")
        config = ConciergeConfig(llm=CompletionConfig(enabled=False))
    except ConfigError as e:
        error(str(e))
        raise typer.Exit(1) from None

    if offline:
        config = config.model_copy(
            update={"llm": config.llm.model_copy(update={"enabled": False})}
        )
    return config
