"""Main CLI application."""

import typer

from concierge.cli.commands import chat, config, skill

app = typer.Typer(
    name="concierge",
    help="Concierge - conversational task automation",
    no_args_is_help=True,
)

chat.register(app)
config.register(app)
skill.register(app)


if __name__ == "__main__":
    app()
