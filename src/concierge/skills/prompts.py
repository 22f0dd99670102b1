"""System prompts and prompt builders for each completion phase."""

import json
from dataclasses import dataclass
from typing import Any

from concierge.skills.disclosure import (
    DisclosureLevel,
    estimate_tokens,
    render_instructions,
    render_summary,
)
from concierge.skills.types import (
    CapabilitySpec,
    ExecutionResult,
    FeedbackAnalysis,
    SessionContext,
)

MATCH_SYSTEM_PROMPT = """\
You are the intent-matching stage of a task automation assistant.

You can only see each capability's name, description, tags and when to use
it. Decide which single capability should handle the user's request. Do not
extract parameters at this stage.

If the request clearly asks for several composable capabilities at once, you
may return them as a chain, in execution order, with any parameters that are
stated explicitly.

Respond with JSON only:
```json
{
  "matched_capability": "capability name or null",
  "confidence": 0.0,
  "reasoning": "short explanation",
  "chain": null
}
```
A chain, when used, is a list of
{"capability": "...", "params": {...}, "depends_on": "capability name or null"}.
Set matched_capability to null when nothing fits."""

SLOT_SYSTEM_PROMPT = """\
You are the parameter validation stage of a task automation assistant.

A capability has been selected and you can see its full input schema,
constraints and procedure. Extract parameter values from the user's input,
check that every required field is present, and ask about what is missing.

Rules:
- Never guess. If a required value is not stated, ask for it.
- Ask one question at a time, about the most important missing field.
- Vague times such as "afternoon" or "next week" must be clarified.
- Dates are YYYY-MM-DD, times are HH:MM (24h).
- Only use field names from the schema.

Respond with JSON only, using one of these shapes:
```json
{"status": "complete", "params": {"field": "value"}, "reasoning": "..."}
```
```json
{"status": "incomplete", "params": {"known_field": "value"},
 "missing_fields": ["field"],
 "clarification": {"field": "field", "question": "friendly question"},
 "reasoning": "..."}
```
```json
{"status": "pending", "params": {"known_field": "value"},
 "waiting_for": "the event to wait for", "reasoning": "..."}
```
Use "pending" only when the capability may be deferred and the user asked to
wait for something."""

HEALING_SYSTEM_PROMPT = """\
You are the self-healing stage of a task automation assistant.

An action did not fully succeed. Pick the most suitable recovery option from
the list you are given. Only choose ids from that list.

Respond with JSON only:
```json
{
  "solution_id": "chosen option id",
  "reasoning": "why",
  "user_question": "question for the user, if the option asks the user",
  "modified_params": {"field": "new value"}
}
```"""


@dataclass(frozen=True, slots=True)
class Prompt:
    system: str
    user: str
    estimated_tokens: int


def _context_lines(context: SessionContext) -> str:
    lines = [
        f"- date: {context.current_date.isoformat()} ({context.current_date.strftime('%A')})",
        f"- user: {context.user_id}",
    ]
    if context.active_capability:
        lines.append(f"- active capability: {context.active_capability.capability_name}")
    return "\n".join(lines)


def build_match_prompt(
    user_input: str, specs: list[CapabilitySpec], context: SessionContext
) -> Prompt:
    tokens = estimate_tokens(DisclosureLevel.SUMMARY, specs)
    user = (
        f"# Available capabilities ({len(specs)}, about {tokens} tokens)\n"
        f"{render_summary(specs)}\n\n"
        f"# Context\n{_context_lines(context)}\n\n"
        f"# User input\n{json.dumps(user_input, ensure_ascii=False)}\n\n"
        "Which capability should handle this request?"
    )
    return Prompt(MATCH_SYSTEM_PROMPT, user, tokens)


def build_slot_prompt(
    user_input: str,
    spec: CapabilitySpec,
    context: SessionContext,
    known_params: dict[str, Any],
) -> Prompt:
    known = (
        "\n".join(
            f"- {k}: {json.dumps(v, ensure_ascii=False, default=str)}"
            for k, v in known_params.items()
        )
        or "- none"
    )
    user = (
        f"{render_instructions(spec)}\n\n"
        f"# Context\n{_context_lines(context)}\n\n"
        f"# Known parameters\n{known}\n\n"
        f"# User input\n{json.dumps(user_input, ensure_ascii=False)}\n\n"
        "Extract the parameters and check whether they are complete."
    )
    return Prompt(SLOT_SYSTEM_PROMPT, user, estimate_tokens(DisclosureLevel.INSTRUCTIONS, [spec]))


def build_healing_prompt(
    result: ExecutionResult,
    analysis: FeedbackAnalysis,
    context: SessionContext,
) -> Prompt:
    options = "\n".join(
        f"- {s.id}: {s.description} [{s.action.value}]" for s in analysis.suggested_actions
    )
    problem = result.error.message if result.error else result.message
    user = (
        f"# Outcome\n"
        f"- capability: {result.capability_name}\n"
        f"- type: {analysis.type.value}\n"
        f"- problem: {problem}\n"
        f"- params: {json.dumps(result.params, ensure_ascii=False, default=str)}\n\n"
        f"# Options\n{options}\n\n"
        f"# Context\n{_context_lines(context)}\n\n"
        "Pick the best recovery option."
    )
    return Prompt(HEALING_SYSTEM_PROMPT, user, 0)
