"""CLI command modules."""

from concierge.cli.commands import chat, config, skill

__all__ = [
    "chat",
    "config",
    "skill",
]
