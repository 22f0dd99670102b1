"""Centralized path management for Concierge.

All state (config, logs, session files, capability specs) lives under a single
base directory, overridable with the CONCIERGE_HOME environment variable.

Default locations:
- Linux/macOS: ~/.concierge
- Windows: %USERPROFILE%\\.concierge
"""

import os
from functools import lru_cache
from pathlib import Path

ENV_VAR = "CONCIERGE_HOME"


@lru_cache(maxsize=1)
def get_concierge_home() -> Path:
    """Get the base directory for all Concierge data.

    Resolution order:
    1. CONCIERGE_HOME environment variable (if set)
    2. Platform default (~/.concierge)
    """
    if env_home := os.environ.get(ENV_VAR):
        return Path(env_home).expanduser().resolve()
    return Path.home() / ".concierge"


def get_config_path() -> Path:
    """Get the default config file path."""
    return get_concierge_home() / "config.toml"


def get_logs_path() -> Path:
    """Get the default logs directory path."""
    return get_concierge_home() / "logs"


def get_sessions_path() -> Path:
    """Get the directory used by the file-backed session store."""
    return get_concierge_home() / "sessions"


def get_skills_path() -> Path:
    """Get the directory scanned for YAML capability specs."""
    return get_concierge_home() / "skills"
