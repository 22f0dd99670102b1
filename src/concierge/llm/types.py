"""Provider-agnostic message and completion types."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class Role(str, Enum):
    """Message roles."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


@dataclass
class Message:
    """A conversation message. Concierge only exchanges plain text."""

    role: Role
    content: str

    def get_text(self) -> str:
        return self.content


@dataclass
class Usage:
    """Token usage statistics."""

    input_tokens: int
    output_tokens: int


@dataclass
class CompletionResponse:
    """Response from a completion call."""

    message: Message
    usage: Usage | None = None
    stop_reason: str | None = None
    model: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def text(self) -> str:
        return self.message.get_text()
