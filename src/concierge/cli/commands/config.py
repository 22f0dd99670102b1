"""Configuration management commands."""

from pathlib import Path
from typing import Annotated

import click
import typer

from concierge.cli.console import console, error, success


def register(app: typer.Typer) -> None:
    """Register the config command."""

    @app.command()
    def config(
        action: Annotated[
            str | None,
            typer.Argument(help="Action: show, validate"),
        ] = None,
        path: Annotated[
            Path | None,
            typer.Option(
                "--path",
                "-p",
                help="Path to config file (default: $CONCIERGE_HOME/config.toml)",
            ),
        ] = None,
    ) -> None:
        """Show or validate the configuration file."""
        if action is None:
            ctx = click.get_current_context()
            click.echo(ctx.get_help())
            raise typer.Exit(0)

        from rich.syntax import Syntax

        from concierge.cli.console import create_table
        from concierge.config import ConfigError, load_config
        from concierge.config.paths import get_config_path

        expanded_path = path.expanduser() if path else get_config_path()

        if action == "show":
            if not expanded_path.exists():
                error(f"Config file not found: {expanded_path}")
                raise typer.Exit(1)

            content = expanded_path.read_text()
            syntax = Syntax(content, "toml", theme="monokai", line_numbers=True)
            console.print(f"[bold]Config file: {expanded_path}[/bold]\n")
            console.print(syntax)

        elif action == "validate":
            if not expanded_path.exists():
                error(f"Config file not found: {expanded_path}")
                raise typer.Exit(1)

            try:
                config_obj = load_config(expanded_path)
            except ConfigError as e:
                error(str(e))
                raise typer.Exit(1) from None

            table = create_table(
                "Configuration Summary", [("Setting", "cyan"), ("Value", "green")]
            )
            for alias in config_obj.list_models():
                model = config_obj.get_model(alias)
                has_key = config_obj.resolve_api_key(alias) is not None
                key_status = "[green]✓[/green]" if has_key else "[yellow]?[/yellow]"
                table.add_row(f"Model '{alias}'", f"{model.provider}/{model.model} {key_status}")

            table.add_row(
                "Completions",
                f"{config_obj.llm.model} ({config_obj.llm.timeout_seconds:g}s)"
                if config_obj.llm.enabled
                else "[dim]disabled[/dim]",
            )
            table.add_row("Busy sessions", config_obj.sessions.busy_policy)
            table.add_row(
                "Session storage",
                str(config_obj.sessions.state_dir or "[dim]memory[/dim]"),
            )
            table.add_row(
                "Skills directory",
                str(config_obj.skills_dir or "[dim]none[/dim]"),
            )

            success("Configuration is valid!")
            console.print()
            console.print(table)

        else:
            error(f"Unknown action: {action}")
            console.print("Valid actions: show, validate")
            raise typer.Exit(1)
