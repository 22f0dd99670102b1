"""Strict schemas for completion-service replies.

Model output is untrusted text. Each phase has one expected JSON shape; a
reply that is missing, unparsable or off-schema is rejected as a whole and
the caller takes its deterministic path instead of using part of it.
"""

import logging
import re
from typing import Any, Literal, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

_FENCE_RE = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL | re.IGNORECASE)


class _Reply(BaseModel):
    # "phase" is echoed by some models and carries no information
    model_config = ConfigDict(extra="forbid")

    phase: str | None = None


class ChainStepReply(_Reply):
    capability: str = Field(min_length=1)
    params: dict[str, Any] = Field(default_factory=dict)
    depends_on: str | None = None


class MatchReply(_Reply):
    matched_capability: str | None
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: str = ""
    chain: list[ChainStepReply] | None = None


class ClarificationReply(_Reply):
    field: str = Field(min_length=1)
    question: str = Field(min_length=1)


class SlotReply(_Reply):
    status: Literal["complete", "incomplete", "pending"]
    params: dict[str, Any] = Field(default_factory=dict)
    missing_fields: list[str] = Field(default_factory=list)
    clarification: ClarificationReply | None = None
    waiting_for: str | None = None
    # Optional per-field confidence; fields without one are taken at 0.9
    field_confidence: dict[str, float] = Field(default_factory=dict)
    reasoning: str = ""

    @model_validator(mode="after")
    def _check_status_payload(self) -> "SlotReply":
        if self.status == "pending" and not (self.waiting_for or "").strip():
            raise ValueError("pending status requires waiting_for")
        if self.status == "incomplete" and not (self.missing_fields or self.clarification):
            raise ValueError("incomplete status requires missing_fields or clarification")
        if any(not 0.0 <= c <= 1.0 for c in self.field_confidence.values()):
            raise ValueError("field_confidence values must be within [0, 1]")
        return self


class HealingReply(_Reply):
    solution_id: str = Field(min_length=1)
    reasoning: str = ""
    user_question: str | None = None
    modified_params: dict[str, Any] | None = None


def extract_json(text: str) -> str | None:
    """Pull a JSON object out of free text.

    Prefers a fenced code block, else the span from the first ``{`` to the
    last ``}``. Returns None when there is no candidate at all.
    """
    if not text:
        return None
    if match := _FENCE_RE.search(text):
        return match.group(1)
    start, end = text.find("{"), text.rfind("}")
    if start == -1 or end <= start:
        return None
    return text[start : end + 1]


def parse_reply(text: str, model: type[M]) -> M | None:
    """Validate a completion reply against ``model``; None if it does not fit."""
    raw = extract_json(text)
    if raw is None:
        logger.warning("llm_reply_without_json", extra={"reply.schema": model.__name__})
        return None
    try:
        return model.model_validate_json(raw)
    except ValidationError as e:
        logger.warning(
            "llm_reply_rejected",
            extra={"reply.schema": model.__name__, "error.count": e.error_count()},
        )
        logger.debug("llm_reply_rejected_detail: %s", e)
        return None
