"""Capability inspection commands."""

from pathlib import Path
from typing import Annotated

import typer

from concierge.cli.console import console, create_table, error, success, warning


def _load_registry(config_path: Path | None):
    from concierge.cli.context import get_config
    from concierge.engine import SkillEngine
    from concierge.skills import CapabilityRegistrationError

    config = get_config(config_path, offline=True)
    try:
        return SkillEngine.from_config(config).registry
    except CapabilityRegistrationError as e:
        error(str(e))
        raise typer.Exit(1) from None


def register(app: typer.Typer) -> None:
    """Register the skill command group."""
    skill_app = typer.Typer(name="skill", help="Inspect capabilities", no_args_is_help=True)

    @skill_app.command("list")
    def list_skills(
        config_path: Annotated[
            Path | None,
            typer.Option(
                "--config",
                "-c",
                help="Path to configuration file",
            ),
        ] = None,
    ) -> None:
        """List registered capabilities.

        Examples:
            concierge skill list
        """
        registry = _load_registry(config_path)
        specs = registry.list_all()
        if not specs:
            warning("No capabilities registered")
            return

        table = create_table(
            "Capabilities",
            [
                ("Name", "cyan"),
                ("Category", "magenta"),
                ("Executor", "dim"),
                ("Required", ""),
                ("Description", {"style": "white", "overflow": "fold"}),
            ],
        )
        for spec in specs:
            name = spec.name if registry.is_enabled(spec.name) else f"{spec.name} (disabled)"
            table.add_row(
                name,
                spec.category,
                spec.executor_kind.value,
                ", ".join(spec.required_fields) or "-",
                spec.description,
            )
        console.print(table)

    @skill_app.command("show")
    def show(
        name: Annotated[str, typer.Argument(help="Capability name")],
        config_path: Annotated[
            Path | None,
            typer.Option(
                "--config",
                "-c",
                help="Path to configuration file",
            ),
        ] = None,
    ) -> None:
        """Show the instructions and resources of a capability.

        Examples:
            concierge skill show book_meeting_room
        """
        from concierge.skills.disclosure import render_instructions, render_resources

        registry = _load_registry(config_path)
        if not registry.has(name):
            error(f"Unknown capability: {name}")
            raise typer.Exit(1)
        spec = registry.get(name)
        console.print(render_instructions(spec), markup=False)
        console.print()
        console.print(render_resources(spec), markup=False)

    @skill_app.command("validate")
    def validate(
        path: Annotated[
            Path,
            typer.Argument(help="Path to a capability YAML file"),
        ],
    ) -> None:
        """Validate a capability file.

        Examples:
            concierge skill validate skills/order_lunch.yaml
        """
        from concierge.skills import CapabilityRegistrationError, load_capability_file
        from concierge.skills.registry import validate_spec

        if not path.exists():
            error(f"File not found: {path}")
            raise typer.Exit(1)

        try:
            specs = load_capability_file(path)
        except CapabilityRegistrationError as e:
            error(f"Invalid capability file: {e}")
            raise typer.Exit(1) from None

        failed = False
        for spec in specs:
            problems = validate_spec(spec)
            if problems:
                failed = True
                error(f"{spec.name}: {'; '.join(problems)}")
            else:
                success(f"Valid capability: {spec.name}")
        if failed:
            raise typer.Exit(1)

    @skill_app.command("stats")
    def stats(
        config_path: Annotated[
            Path | None,
            typer.Option(
                "--config",
                "-c",
                help="Path to configuration file",
            ),
        ] = None,
    ) -> None:
        """Show registry statistics."""
        registry = _load_registry(config_path)
        report = registry.stats()

        table = create_table("Registry", [("Metric", "cyan"), ("Value", "")])
        table.add_row("Total", str(report.total))
        table.add_row("Enabled", str(report.enabled))
        table.add_row("Disabled", str(report.disabled))
        table.add_row("Summary tokens", str(report.summary_tokens))
        table.add_row("With procedure", str(report.with_procedure))
        table.add_row("With resources", str(report.with_resources))
        for category, count in sorted(report.by_category.items()):
            table.add_row(f"Category: {category}", str(count))
        for kind, count in sorted(report.by_executor_kind.items()):
            table.add_row(f"Executor: {kind}", str(count))
        console.print(table)

    app.add_typer(skill_app)
