"""Tests for configuration loading and models."""

import pytest
from pydantic import SecretStr, ValidationError

from concierge.config.loader import _resolve_env_secrets, get_default_config, load_config
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


class TestSectionDefaults:
    """Tests for the per-section models."""

    def test_selector_defaults(self):
        config = SelectorConfig()
        assert config.match_confidence_floor == 0.7
        assert config.fallback_confidence == 0.6
        assert config.trust_llm_no_match is True
        assert config.pending_timeout_seconds == 300

    def test_slot_defaults(self):
        config = SlotFillingConfig()
        assert config.confidence_threshold == 0.8
        assert config.max_questions_per_turn == 1
        assert config.default_time == "09:00"

    def test_session_defaults(self):
        config = SessionConfig()
        assert config.busy_policy == "queue"
        assert config.state_dir is None

    def test_executor_defaults(self):
        config = ExecutorConfig()
        assert config.max_retries == 2
        assert config.retry_delay_ms == 1000
        assert config.max_healing_attempts == 1

    def test_bounds_are_enforced(self):
        with pytest.raises(ValidationError):
            SelectorConfig(match_confidence_floor=1.5)
        with pytest.raises(ValidationError):
            ExecutorConfig(max_retries=9)
        with pytest.raises(ValidationError):
            SlotFillingConfig(default_time="9am")
        with pytest.raises(ValidationError):
            SessionConfig(busy_policy="drop")


class TestConciergeConfig:
    """Tests for the root model."""

    def test_empty_config_is_valid(self):
        config = ConciergeConfig()
        assert config.models == {}
        assert config.builtin_skills is True
        assert config.completion_model is None

    def test_unknown_completion_model(self):
        with pytest.raises(ValidationError, match="not defined"):
            ConciergeConfig(
                models={"default": ModelConfig(provider="openai", model="gpt-5-mini")},
                llm=CompletionConfig(model="fast"),
            )

    def test_unknown_model_allowed_when_disabled(self):
        config = ConciergeConfig(
            models={"default": ModelConfig(provider="openai", model="gpt-5-mini")},
            llm=CompletionConfig(enabled=False, model="fast"),
        )
        assert config.completion_model is None

    def test_get_model(self):
        config = ConciergeConfig(
            models={"default": ModelConfig(provider="anthropic", model="claude-haiku-4-5-20251001")}
        )
        assert config.get_model("default").provider == "anthropic"
        assert config.list_models() == ["default"]
        with pytest.raises(ConfigError, match="Unknown model alias 'fast'"):
            config.get_model("fast")

    def test_resolve_api_key(self):
        config = ConciergeConfig(
            models={"default": ModelConfig(provider="openai", model="gpt-5-mini")},
            openai=ProviderConfig(api_key=SecretStr("sk-test")),
        )
        key = config.resolve_api_key("default")
        assert key is not None
        assert key.get_secret_value() == "sk-test"

    def test_invalid_provider(self):
        with pytest.raises(ValidationError):
            ModelConfig(provider="mistral", model="large")


class TestLoadConfig:
    """Tests for load_config."""

    def test_load_from_file(self, config_file):
        config = load_config(config_file)

        assert config.completion_model is not None
        assert config.completion_model.max_tokens == 512
        assert config.llm.timeout_seconds == 5
        assert config.selector.match_confidence_floor == 0.75
        assert config.sessions.busy_policy == "reject"
        assert config.sessions.idle_timeout_seconds == 600
        assert config.resolve_api_key("default").get_secret_value() == "sk-ant-test"

    def test_file_not_found(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "missing.toml")

    def test_invalid_toml(self, tmp_path):
        path = tmp_path / "config.toml"
        path.write_text("[llm\nmodel = ")
        with pytest.raises(ConfigError, match="Invalid TOML"):
            load_config(path)

    def test_invalid_config_values(self, tmp_path):
        path = tmp_path / "config.toml"
        path.write_text("[executor]\nmax_retries = 99\n")
        with pytest.raises(ConfigError, match="Invalid configuration"):
            load_config(path)

    def test_api_key_from_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-from-env")
        path = tmp_path / "config.toml"
        path.write_text('[models.default]\nprovider = "openai"\nmodel = "gpt-5-mini"\n')

        config = load_config(path)
        assert config.resolve_api_key("default").get_secret_value() == "sk-from-env"

    def test_file_key_takes_precedence(self, config_file, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-from-env")
        config = load_config(config_file)
        assert config.resolve_api_key("default").get_secret_value() == "sk-ant-test"


class TestResolveEnvSecrets:
    def test_unused_providers_are_left_out(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-from-env")
        raw = _resolve_env_secrets({"models": {"default": {"provider": "anthropic", "model": "m"}}})
        assert "openai" not in raw
        assert "anthropic" in raw

    def test_default_config(self, monkeypatch):
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        config = get_default_config()
        assert config.completion_model is not None
        assert config.resolve_api_key("default") is None
