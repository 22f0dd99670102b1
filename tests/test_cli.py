"""Tests for CLI commands."""

import pytest

from concierge.cli.app import app
from concierge.cli.console import console
from concierge.config.paths import ENV_VAR, get_concierge_home

VALID_SKILL = """\
name: order_lunch
description: Order lunch for the team
when_to_use: The user wants food delivered
input_schema:
  - name: dish
    type: string
    required: true
required_fields: [dish]
"""


@pytest.fixture(autouse=True)
def isolated_home(monkeypatch, tmp_path):
    """Point CONCIERGE_HOME at an empty directory and widen the console."""
    monkeypatch.setenv(ENV_VAR, str(tmp_path / "home"))
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(console, "width", 200)
    get_concierge_home.cache_clear()
    yield
    get_concierge_home.cache_clear()


class TestConfigCommand:
    """Tests for 'concierge config'."""

    def test_show_displays_content(self, cli_runner, config_file):
        result = cli_runner.invoke(app, ["config", "show", "--path", str(config_file)])
        assert result.exit_code == 0
        assert "[models.default]" in result.stdout

    def test_show_missing_file(self, cli_runner, tmp_path):
        result = cli_runner.invoke(app, ["config", "show", "--path", str(tmp_path / "missing.toml")])
        assert result.exit_code == 1
        assert "not found" in result.stdout

    def test_validate_success(self, cli_runner, config_file):
        result = cli_runner.invoke(app, ["config", "validate", "--path", str(config_file)])
        assert result.exit_code == 0
        assert "Configuration is valid!" in result.stdout
        assert "anthropic/claude-haiku-4-5-20251001" in result.stdout
        assert "reject" in result.stdout

    def test_validate_invalid_values(self, cli_runner, tmp_path):
        path = tmp_path / "config.toml"
        path.write_text("[executor]\nmax_retries = 99\n")
        result = cli_runner.invoke(app, ["config", "validate", "--path", str(path)])
        assert result.exit_code == 1
        assert "Invalid configuration" in result.stdout

    def test_unknown_action(self, cli_runner, config_file):
        result = cli_runner.invoke(app, ["config", "edit", "--path", str(config_file)])
        assert result.exit_code == 1
        assert "Unknown action: edit" in result.stdout


class TestSkillCommand:
    """Tests for 'concierge skill'."""

    def test_list_shows_builtins(self, cli_runner):
        result = cli_runner.invoke(app, ["skill", "list"])
        assert result.exit_code == 0
        assert "book_meeting_room" in result.stdout
        assert "apply_business_trip" in result.stdout
        assert "send_notification" in result.stdout

    def test_show_prints_instructions(self, cli_runner):
        result = cli_runner.invoke(app, ["skill", "show", "book_meeting_room"])
        assert result.exit_code == 0
        assert "# book_meeting_room" in result.stdout
        assert "## Required fields" in result.stdout
        assert "room_directory (reference)" in result.stdout

    def test_show_unknown(self, cli_runner):
        result = cli_runner.invoke(app, ["skill", "show", "order_pizza"])
        assert result.exit_code == 1
        assert "Unknown capability: order_pizza" in result.stdout

    def test_stats(self, cli_runner):
        result = cli_runner.invoke(app, ["skill", "stats"])
        assert result.exit_code == 0
        assert "Category: calendar" in result.stdout

    def test_validate_valid_file(self, cli_runner, tmp_path):
        path = tmp_path / "order_lunch.yaml"
        path.write_text(VALID_SKILL)
        result = cli_runner.invoke(app, ["skill", "validate", str(path)])
        assert result.exit_code == 0
        assert "Valid capability: order_lunch" in result.stdout

    def test_validate_reports_problems(self, cli_runner, tmp_path):
        path = tmp_path / "order_lunch.yaml"
        path.write_text(VALID_SKILL.replace("required_fields: [dish]", "required_fields: [dish, colour]"))
        result = cli_runner.invoke(app, ["skill", "validate", str(path)])
        assert result.exit_code == 1
        assert "required fields not in input schema: colour" in result.stdout

    def test_validate_missing_file(self, cli_runner, tmp_path):
        result = cli_runner.invoke(app, ["skill", "validate", str(tmp_path / "nope.yaml")])
        assert result.exit_code == 1
        assert "File not found" in result.stdout


class TestChatCommand:
    """Tests for 'concierge chat' in single-message mode."""

    def test_single_prompt_asks_for_the_title(self, cli_runner):
        result = cli_runner.invoke(
            app,
            ["chat", "--offline", "--date", "2025-01-15", "book a meeting tomorrow at 2pm with Alice"],
        )
        assert result.exit_code == 0
        assert "date: 2025-01-16" in result.stdout
        assert "What should the meeting be called?" in result.stdout

    def test_no_match(self, cli_runner):
        result = cli_runner.invoke(app, ["chat", "--offline", "what's the weather like"])
        assert result.exit_code == 0
        assert "couldn't match that" in result.stdout

    def test_invalid_date(self, cli_runner):
        result = cli_runner.invoke(app, ["chat", "--date", "15/01/2025", "hello"])
        assert result.exit_code == 1
        assert "Invalid date" in result.stdout

    def test_missing_explicit_config(self, cli_runner, tmp_path):
        result = cli_runner.invoke(
            app, ["chat", "--config", str(tmp_path / "missing.toml"), "hello"]
        )
        assert result.exit_code == 1
        assert "Config file not found" in result.stdout
