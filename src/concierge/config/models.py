"""Configuration models using Pydantic."""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, SecretStr, model_validator


class ConfigError(Exception):
    """Configuration error."""

    pass


class ModelConfig(BaseModel):
    """Configuration for a named model.

    Temperature is optional - if None, the provider's default is used.
    """

    provider: Literal["anthropic", "openai"]
    model: str
    temperature: float | None = None
    max_tokens: int = 1024


class ProviderConfig(BaseModel):
    """Provider-level configuration."""

    api_key: SecretStr | None = None


class CompletionConfig(BaseModel):
    """How the engine talks to the completion service."""

    enabled: bool = True
    model: str = "default"
    # Every completion call is cancelled after this many seconds
    timeout_seconds: float = Field(default=20.0, gt=0)


class SelectorConfig(BaseModel):
    """Capability matching policy.

    An LLM match is accepted at or above ``match_confidence_floor``; anything
    weaker falls through to the keyword matcher.
    """

    match_confidence_floor: float = Field(default=0.7, ge=0.0, le=1.0)
    fallback_confidence: float = Field(default=0.6, ge=0.0, le=1.0)
    min_keyword_length: int = Field(default=3, ge=1)
    trust_llm_no_match: bool = True
    pending_timeout_seconds: int = Field(default=300, gt=0)


class SlotFillingConfig(BaseModel):
    """Slot extraction thresholds."""

    confidence_threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    max_questions_per_turn: int = Field(default=1, ge=1)
    default_time: str = Field(default="09:00", pattern=r"^\d{2}:\d{2}$")


class SessionConfig(BaseModel):
    """Session context lifecycle."""

    max_history: int = Field(default=50, ge=1)
    idle_timeout_seconds: int = Field(default=1800, gt=0)
    sweep_interval_seconds: float = Field(default=60.0, gt=0)
    # "queue" waits for the in-flight turn, "reject" answers immediately
    busy_policy: Literal["queue", "reject"] = "queue"
    state_dir: Path | None = None


class ExecutorConfig(BaseModel):
    """Execution and retry behavior."""

    timeout_seconds: float = Field(default=30.0, gt=0)
    max_retries: int = Field(default=2, ge=0, le=5)
    retry_delay_ms: int = Field(default=1000, ge=0)
    api_base_url: str = "http://localhost:8000"
    max_healing_attempts: int = Field(default=1, ge=0)


class ConciergeConfig(BaseModel):
    """Root configuration model."""

    models: dict[str, ModelConfig] = Field(default_factory=dict)
    anthropic: ProviderConfig | None = None
    openai: ProviderConfig | None = None

    llm: CompletionConfig = Field(default_factory=CompletionConfig)
    selector: SelectorConfig = Field(default_factory=SelectorConfig)
    slots: SlotFillingConfig = Field(default_factory=SlotFillingConfig)
    sessions: SessionConfig = Field(default_factory=SessionConfig)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)

    skills_dir: Path | None = None
    builtin_skills: bool = True

    @model_validator(mode="after")
    def _validate_completion_model(self) -> "ConciergeConfig":
        """The completion model alias must exist when the LLM is enabled."""
        if self.llm.enabled and self.models and self.llm.model not in self.models:
            raise ValueError(
                f"llm.model '{self.llm.model}' is not defined in [models]. "
                f"Available: {', '.join(sorted(self.models))}"
            )
        return self

    def get_model(self, alias: str) -> ModelConfig:
        """Get model configuration by alias.

        Raises:
            ConfigError: If alias not found.
        """
        if alias not in self.models:
            available = ", ".join(sorted(self.models)) or "none"
            raise ConfigError(f"Unknown model alias '{alias}'. Available: {available}")
        return self.models[alias]

    def list_models(self) -> list[str]:
        return sorted(self.models)

    def resolve_api_key(self, alias: str) -> SecretStr | None:
        """Resolve the API key for a model alias from its provider section."""
        provider = self.get_model(alias).provider
        if provider == "anthropic" and self.anthropic:
            return self.anthropic.api_key
        if provider == "openai" and self.openai:
            return self.openai.api_key
        return None

    @property
    def completion_model(self) -> ModelConfig | None:
        """Model used for completion calls, or None when the LLM is disabled."""
        if not self.llm.enabled or self.llm.model not in self.models:
            return None
        return self.models[self.llm.model]
