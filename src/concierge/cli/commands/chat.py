"""Chat command for interactive CLI sessions."""

import asyncio
import logging
import uuid
from datetime import date, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Annotated

import typer

from concierge.cli.console import console, dim, error

if TYPE_CHECKING:
    from concierge.config import ConciergeConfig
    from concierge.engine import SkillEngine, TurnResult

logger = logging.getLogger(__name__)

EXIT_COMMANDS = {"exit", "quit", "/exit", "/quit"}


def _parse_date(value: str | None) -> date | None:
    if value is None:
        return None
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError:
        error(f"Invalid date '{value}'. Use YYYY-MM-DD.")
        raise typer.Exit(1) from None


def register(app: typer.Typer) -> None:
    """Register the chat command."""

    @app.command()
    def chat(
        prompt: Annotated[
            str | None,
            typer.Argument(
                help="Single message to handle (non-interactive mode)",
            ),
        ] = None,
        config_path: Annotated[
            Path | None,
            typer.Option(
                "--config",
                "-c",
                help="Path to configuration file",
            ),
        ] = None,
        session_id: Annotated[
            str | None,
            typer.Option(
                "--session",
                "-s",
                help="Session id to use (default: a new one)",
            ),
        ] = None,
        today: Annotated[
            str | None,
            typer.Option(
                "--date",
                help="Treat this date (YYYY-MM-DD) as today",
            ),
        ] = None,
        offline: Annotated[
            bool,
            typer.Option(
                "--offline",
                help="Disable the completion service and use keyword matching only",
            ),
        ] = False,
    ) -> None:
        """Start an interactive chat session, or handle a single message.

        Examples:
            concierge chat
            concierge chat "book a meeting tomorrow at 2pm with Alice"
            concierge chat --offline --date 2025-01-15
        """
        from concierge.cli.context import get_config
        from concierge.logging import configure_logging

        configure_logging(level="WARNING")
        config = get_config(config_path, offline=offline)
        current_date = _parse_date(today)
        try:
            asyncio.run(
                _run_chat(prompt, config, session_id or f"cli-{uuid.uuid4().hex[:8]}", current_date)
            )
        except KeyboardInterrupt:
            console.print("\n[dim]Goodbye![/dim]")


def _print_result(result: "TurnResult") -> None:
    style = "green" if result.success else "yellow"
    console.print(f"[bold {style}]Concierge:[/bold {style}] {result.message}")


async def _handle(engine: "SkillEngine", session_id: str, current_date: date | None, text: str) -> None:
    result = await engine.handle_turn(
        session_id, "local-user", current_date or date.today(), text
    )
    _print_result(result)


async def _run_chat(
    prompt: str | None,
    config: "ConciergeConfig",
    session_id: str,
    current_date: date | None,
) -> None:
    """Run the chat session asynchronously."""
    from concierge.engine import SkillEngine

    engine = SkillEngine.from_config(config)
    async with engine:
        if prompt:
            await _handle(engine, session_id, current_date, prompt)
            return

        mode = "LLM" if engine.completion is not None else "keyword"
        dim(f"Session {session_id} ({mode} matching). Type 'exit' to quit.")
        while True:
            try:
                text = await asyncio.to_thread(console.input, "[bold cyan]You:[/bold cyan] ")
            except EOFError:
                break
            text = text.strip()
            if not text:
                continue
            if text.lower() in EXIT_COMMANDS:
                break
            await _handle(engine, session_id, current_date, text)

    console.print("[dim]Goodbye![/dim]")
