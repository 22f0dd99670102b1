"""Anthropic Claude LLM provider."""

import asyncio
import logging
import time
from typing import Any

import anthropic

from concierge.llm.base import LLMProvider
from concierge.llm.retry import RetryConfig, with_retry
from concierge.llm.types import CompletionResponse, Message, Role, Usage

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "claude-haiku-4-5-20251001"


class AnthropicProvider(LLMProvider):
    """Anthropic Claude provider.

    Concurrent requests are bounded per provider instance so that a burst of
    sessions cannot exhaust the account's rate limit.
    """

    def __init__(
        self,
        api_key: str | None = None,
        max_concurrent: int = 4,
        retry: RetryConfig | None = None,
    ):
        self._client = anthropic.AsyncAnthropic(api_key=api_key)
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._retry = retry or RetryConfig()

    @property
    def name(self) -> str:
        return "anthropic"

    @property
    def default_model(self) -> str:
        return DEFAULT_MODEL

    def _build_request_kwargs(
        self,
        messages: list[Message],
        model: str | None,
        system: str | None,
        max_tokens: int,
        temperature: float | None,
    ) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": model or self.default_model,
            "messages": [
                {"role": msg.role.value, "content": msg.content}
                for msg in messages
                if msg.role != Role.SYSTEM
            ],
            "max_tokens": max_tokens,
        }
        if temperature is not None:
            kwargs["temperature"] = temperature
        if system:
            kwargs["system"] = system
        return kwargs

    def _parse_response(self, response: anthropic.types.Message) -> CompletionResponse:
        text = "".join(block.text for block in response.content if block.type == "text")
        return CompletionResponse(
            message=Message(role=Role.ASSISTANT, content=text),
            usage=Usage(
                input_tokens=response.usage.input_tokens,
                output_tokens=response.usage.output_tokens,
            ),
            stop_reason=response.stop_reason,
            model=response.model,
            raw=response.model_dump(),
        )

    async def complete(
        self,
        messages: list[Message],
        *,
        model: str | None = None,
        system: str | None = None,
        max_tokens: int = 1024,
        temperature: float | None = None,
    ) -> CompletionResponse:
        kwargs = self._build_request_kwargs(
            messages, model, system, max_tokens, temperature
        )
        model_name = kwargs["model"]

        async def _make_request() -> anthropic.types.Message:
            async with self._semaphore:
                return await self._client.messages.create(**kwargs)

        start_time = time.monotonic()
        response = await with_retry(
            _make_request,
            config=self._retry,
            operation_name=f"Anthropic {model_name}",
        )
        logger.debug(
            "llm_complete",
            extra={
                "provider": self.name,
                "model": model_name,
                "duration_ms": int((time.monotonic() - start_time) * 1000),
                "tokens_in": response.usage.input_tokens,
                "tokens_out": response.usage.output_tokens,
            },
        )
        return self._parse_response(response)
