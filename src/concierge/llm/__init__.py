"""LLM provider abstraction layer."""

from concierge.llm.anthropic import AnthropicProvider
from concierge.llm.base import LLMProvider
from concierge.llm.completion import (
    CompletionClient,
    CompletionError,
    CompletionTimeout,
)
from concierge.llm.openai import OpenAIProvider
from concierge.llm.registry import ProviderName, create_llm_provider
from concierge.llm.retry import RetryConfig, is_retryable_error, with_retry
from concierge.llm.types import CompletionResponse, Message, Role, Usage

__all__ = [
    # Base
    "LLMProvider",
    # Providers
    "AnthropicProvider",
    "OpenAIProvider",
    "ProviderName",
    "create_llm_provider",
    # Completion boundary
    "CompletionClient",
    "CompletionError",
    "CompletionTimeout",
    # Retry
    "RetryConfig",
    "is_retryable_error",
    "with_retry",
    # Types
    "CompletionResponse",
    "Message",
    "Role",
    "Usage",
]
