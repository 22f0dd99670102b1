"""Deadline-bounded text completion.

The orchestration core only ever needs one call shape: a system prompt and a
user prompt in, text out. Every call carries a deadline; when it expires the
request is cancelled and surfaced as CompletionTimeout so callers can take
their deterministic fallback path.
"""

import asyncio
import logging
import time

from concierge.config.models import ModelConfig
from concierge.llm.base import LLMProvider
from concierge.llm.types import Message, Role

logger = logging.getLogger(__name__)

DEFAULT_DEADLINE_SECONDS = 20.0


class CompletionError(Exception):
    """The completion service failed or returned nothing usable."""


class CompletionTimeout(CompletionError):
    """The completion call did not finish before its deadline."""


class CompletionClient:
    """Thin wrapper that turns an LLMProvider into complete(system, user, deadline)."""

    def __init__(
        self,
        provider: LLMProvider,
        *,
        model: str | None = None,
        max_tokens: int = 1024,
        temperature: float | None = 0.0,
        default_deadline: float = DEFAULT_DEADLINE_SECONDS,
    ):
        self._provider = provider
        self._model = model
        self._max_tokens = max_tokens
        self._temperature = temperature
        self._default_deadline = default_deadline

    @classmethod
    def from_model_config(
        cls,
        provider: LLMProvider,
        model_config: ModelConfig,
        default_deadline: float = DEFAULT_DEADLINE_SECONDS,
    ) -> "CompletionClient":
        return cls(
            provider,
            model=model_config.model,
            max_tokens=model_config.max_tokens,
            temperature=model_config.temperature,
            default_deadline=default_deadline,
        )

    @property
    def provider(self) -> LLMProvider:
        return self._provider

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        deadline: float | None = None,
    ) -> str:
        """Run one completion and return its text.

        Args:
            system_prompt: Phase-specific instructions.
            user_prompt: Rendered context and user input.
            deadline: Seconds allowed for the call (defaults to the client's).

        Raises:
            CompletionTimeout: The deadline expired; the request was cancelled.
            CompletionError: The provider failed or returned empty text.
        """
        timeout = deadline if deadline is not None else self._default_deadline
        start_time = time.monotonic()
        try:
            async with asyncio.timeout(timeout):
                response = await self._provider.complete(
                    [Message(role=Role.USER, content=user_prompt)],
                    model=self._model,
                    system=system_prompt,
                    max_tokens=self._max_tokens,
                    temperature=self._temperature,
                )
        except TimeoutError as e:
            logger.warning(
                "completion_timeout",
                extra={"provider": self._provider.name, "deadline_s": timeout},
            )
            raise CompletionTimeout(f"Completion exceeded {timeout}s deadline") from e
        except Exception as e:
            logger.warning(
                "completion_failed",
                extra={
                    "provider": self._provider.name,
                    "error.type": type(e).__name__,
                    "error.message": str(e),
                },
            )
            raise CompletionError(str(e)) from e

        text = response.text.strip()
        logger.debug(
            "completion_finished",
            extra={
                "provider": self._provider.name,
                "duration_ms": int((time.monotonic() - start_time) * 1000),
                "chars": len(text),
            },
        )
        if not text:
            raise CompletionError("Completion returned empty text")
        return text
