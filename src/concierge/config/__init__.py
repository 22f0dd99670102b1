"""Configuration module."""

from concierge.config.loader import get_default_config, load_config
from concierge.config.models import (
    CompletionConfig,
    ConciergeConfig,
    ConfigError,
    ExecutorConfig,
    ModelConfig,
    ProviderConfig,
    SelectorConfig,
    SessionConfig,
    SlotFillingConfig,
)
from concierge.config.paths import (
    get_concierge_home,
    get_config_path,
    get_logs_path,
    get_sessions_path,
    get_skills_path,
)

__all__ = [
    "CompletionConfig",
    "ConciergeConfig",
    "ConfigError",
    "ExecutorConfig",
    "ModelConfig",
    "ProviderConfig",
    "SelectorConfig",
    "SessionConfig",
    "SlotFillingConfig",
    "get_concierge_home",
    "get_config_path",
    "get_default_config",
    "get_logs_path",
    "get_sessions_path",
    "get_skills_path",
    "load_config",
]
