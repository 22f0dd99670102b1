"""Shared test fixtures and factories."""

import asyncio
import json
from datetime import date
from pathlib import Path
from typing import Any

import pytest

from concierge.calendar import InMemoryCalendarStore
from concierge.config.models import CompletionConfig, ConciergeConfig
from concierge.llm.base import LLMProvider
from concierge.llm.completion import CompletionClient
from concierge.llm.types import CompletionResponse, Message, Role, Usage
from concierge.skills.builtin import register_builtin_capabilities
from concierge.skills.context import SessionContextStore
from concierge.skills.disclosure import DisclosureManager
from concierge.skills.executor import CapabilityExecutor
from concierge.skills.feedback import FeedbackAnalyzer, FeedbackLoop, SelfHealingEngine
from concierge.skills.prompts import (
    HEALING_SYSTEM_PROMPT,
    MATCH_SYSTEM_PROMPT,
    SLOT_SYSTEM_PROMPT,
)
from concierge.skills.registry import CapabilityRegistry
from concierge.skills.selector import CapabilitySelector
from concierge.skills.slots import SlotFillingEngine
from concierge.skills.types import CapabilitySpec, FieldSchema, FieldType

TODAY = date(2025, 1, 15)  # a Wednesday
TOMORROW = "2025-01-16"
SESSION = "session-1"
USER = "user-1"

# =============================================================================
# Configuration Fixtures
# =============================================================================


@pytest.fixture
def offline_config() -> ConciergeConfig:
    """Configuration with the completion service switched off."""
    return ConciergeConfig(llm=CompletionConfig(enabled=False))


@pytest.fixture
def config_toml_content() -> str:
    """Valid TOML config content."""
    return """
[models.default]
provider = "anthropic"
model = "claude-haiku-4-5-20251001"
max_tokens = 512

[anthropic]
api_key = "sk-ant-test"

[llm]
model = "default"
timeout_seconds = 5

[selector]
match_confidence_floor = 0.75

[sessions]
busy_policy = "reject"
idle_timeout_seconds = 600
"""


@pytest.fixture
def config_file(tmp_path: Path, config_toml_content: str) -> Path:
    """Create a temporary config file."""
    config_path = tmp_path / "config.toml"
    config_path.write_text(config_toml_content)
    return config_path


# =============================================================================
# LLM Fixtures and Mocks
# =============================================================================

_PHASES = {
    MATCH_SYSTEM_PROMPT: "match",
    SLOT_SYSTEM_PROMPT: "slots",
    HEALING_SYSTEM_PROMPT: "healing",
}


def reply(**payload: Any) -> str:
    """A completion reply wrapped in a fenced JSON block, as models tend to send it."""
    return f"```json\n{json.dumps(payload)}\n```"


class MockLLMProvider(LLMProvider):
    """Mock LLM provider for testing.

    Replies are taken from ``phase_responses`` (keyed by "match", "slots" or
    "healing", recognised from the system prompt) first, then from the shared
    ``responses`` queue. With nothing queued it answers with non-JSON text,
    which every phase treats as unusable.
    """

    def __init__(
        self,
        responses: list[str] | None = None,
        *,
        phase_responses: dict[str, list[str]] | None = None,
        delay: float = 0.0,
        error: Exception | None = None,
    ):
        self.responses = list(responses or [])
        self.phase_responses = {k: list(v) for k, v in (phase_responses or {}).items()}
        self.delay = delay
        self.error = error
        self.complete_calls: list[dict[str, Any]] = []

    @property
    def name(self) -> str:
        return "mock"

    @property
    def default_model(self) -> str:
        return "mock-model"

    @property
    def phases(self) -> list[str]:
        return [call["phase"] for call in self.complete_calls]

    async def complete(
        self,
        messages: list[Message],
        *,
        model: str | None = None,
        system: str | None = None,
        max_tokens: int = 1024,
        temperature: float | None = None,
    ) -> CompletionResponse:
        phase = _PHASES.get(system or "", "other")
        self.complete_calls.append(
            {
                "messages": messages,
                "model": model,
                "system": system,
                "phase": phase,
                "max_tokens": max_tokens,
                "temperature": temperature,
            }
        )
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error

        queued = self.phase_responses.get(phase)
        if queued:
            text = queued.pop(0)
        elif self.responses:
            text = self.responses.pop(0)
        else:
            text = "Mock response"

        return CompletionResponse(
            message=Message(role=Role.ASSISTANT, content=text),
            usage=Usage(input_tokens=100, output_tokens=50),
            stop_reason="end_turn",
            model=model or "mock-model",
        )


@pytest.fixture
def mock_llm() -> MockLLMProvider:
    """Create a mock LLM provider."""
    return MockLLMProvider()


def completion_for(provider: LLMProvider, deadline: float = 1.0) -> CompletionClient:
    return CompletionClient(provider, model="mock-model", default_deadline=deadline)


# =============================================================================
# Capability Fixtures
# =============================================================================


def make_spec(name: str = "order_lunch", **overrides: Any) -> CapabilitySpec:
    """Small valid capability for tests that do not need the built-ins."""
    values: dict[str, Any] = {
        "name": name,
        "description": "Order lunch for the team",
        "when_to_use": "The user wants food delivered",
        "input_schema": (
            FieldSchema("dish", FieldType.STRING, "What to order", required=True),
            FieldSchema("servings", FieldType.NUMBER, "How many portions", default=1),
        ),
        "required_fields": ("dish",),
        "tags": ("food",),
        "category": "office",
    }
    values.update(overrides)
    return CapabilitySpec(**values)


@pytest.fixture
def registry() -> CapabilityRegistry:
    return CapabilityRegistry()


@pytest.fixture
def store() -> SessionContextStore:
    return SessionContextStore()


@pytest.fixture
def session(store: SessionContextStore) -> str:
    """An existing session whose current date is TODAY."""
    store.get_or_create(SESSION, USER, TODAY)
    return SESSION


@pytest.fixture
def calendar() -> InMemoryCalendarStore:
    return InMemoryCalendarStore()


class Stack:
    """Every component wired together by hand, for selector and feedback tests."""

    def __init__(
        self,
        provider: LLMProvider | None = None,
        *,
        calendar: InMemoryCalendarStore | None = None,
        retry_delay_ms: int = 0,
    ):
        completion = completion_for(provider) if provider is not None else None
        self.registry = CapabilityRegistry()
        self.disclosure = DisclosureManager()
        self.store = SessionContextStore(on_evict=self.disclosure.forget)
        self.slots = SlotFillingEngine()
        self.selector = CapabilitySelector(
            self.registry, self.store, self.disclosure, self.slots, completion
        )
        self.executor = CapabilityExecutor(
            self.registry, self.store, retry_delay_ms=retry_delay_ms
        )
        self.analyzer = FeedbackAnalyzer()
        self.feedback = FeedbackLoop(
            self.analyzer, SelfHealingEngine(completion), self.registry
        )
        self.calendar = calendar if calendar is not None else InMemoryCalendarStore()
        self.outbox: list[dict[str, Any]] = []
        register_builtin_capabilities(
            self.registry,
            self.executor,
            self.calendar,
            analyzer=self.analyzer,
            outbox=self.outbox,
        )
        self.store.get_or_create(SESSION, USER, TODAY)


@pytest.fixture
def stack() -> Stack:
    """Built-in capabilities with keyword matching only."""
    return Stack()


# =============================================================================
# CLI Fixtures
# =============================================================================


@pytest.fixture
def cli_runner():
    from typer.testing import CliRunner

    return CliRunner()
