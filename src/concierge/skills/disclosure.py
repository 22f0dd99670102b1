"""Progressive disclosure of capability details.

Capabilities are revealed to the completion service in three tiers:

- summary: name, description, tags and when to (not) use it. Every enabled
  capability is shown at this tier, so it is the only one that grows with
  the size of the registry.
- instructions: the full input schema, constraints and standard procedure of
  the one selected capability.
- resources: ids, types and descriptions of execution resources. Resource
  content is never rendered, so this tier adds nothing to the prompt.

Each session moves forward through the tiers once per capability selection
and returns to summary on reset.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Literal

from concierge.skills.errors import InvalidTransitionError
from concierge.skills.types import CapabilitySpec, SkillResource, utc_now

logger = logging.getLogger(__name__)

MAX_EVENT_LOG = 100


class DisclosureLevel(str, Enum):
    SUMMARY = "summary"
    INSTRUCTIONS = "instructions"
    RESOURCES = "resources"


@dataclass(frozen=True, slots=True)
class TierInfo:
    budget: int
    visibility: Literal["always", "on_match", "on_demand"]
    in_context: bool


DISCLOSURE_TIERS: dict[DisclosureLevel, TierInfo] = {
    DisclosureLevel.SUMMARY: TierInfo(100, "always", True),
    DisclosureLevel.INSTRUCTIONS: TierInfo(500, "on_match", True),
    DisclosureLevel.RESOURCES: TierInfo(0, "on_demand", False),
}

INSTRUCTION_TOKENS_PER_STEP = 30
INSTRUCTION_TOKENS_PER_CONSTRAINT = 20

Phase = Literal["intent_matching", "slot_validation", "pending", "execution"]

PHASE_TIERS: dict[str, DisclosureLevel] = {
    "intent_matching": DisclosureLevel.SUMMARY,
    "slot_validation": DisclosureLevel.INSTRUCTIONS,
    "pending": DisclosureLevel.INSTRUCTIONS,
    "execution": DisclosureLevel.RESOURCES,
}

_ORDER = [
    DisclosureLevel.SUMMARY,
    DisclosureLevel.INSTRUCTIONS,
    DisclosureLevel.RESOURCES,
]


def estimate_tokens(level: DisclosureLevel, specs: list[CapabilitySpec]) -> int:
    """Rough size of a tier, in the same units as DISCLOSURE_TIERS budgets."""
    if level == DisclosureLevel.SUMMARY:
        return len(specs) * DISCLOSURE_TIERS[level].budget
    if level == DisclosureLevel.INSTRUCTIONS:
        total = 0
        for spec in specs:
            steps = len(spec.standard_procedure.steps) if spec.standard_procedure else 0
            total += (
                DISCLOSURE_TIERS[level].budget
                + steps * INSTRUCTION_TOKENS_PER_STEP
                + len(spec.constraints) * INSTRUCTION_TOKENS_PER_CONSTRAINT
            )
        return total
    return 0


# =============================================================================
# Rendering
# =============================================================================


def render_summary(specs: list[CapabilitySpec]) -> str:
    """Summary tier for a set of capabilities."""
    if not specs:
        return "No capabilities are available."
    blocks = []
    for spec in specs:
        lines = [f"- {spec.name}: {spec.description}"]
        if spec.tags:
            lines.append(f"  tags: {', '.join(spec.tags)}")
        lines.append(f"  use when: {spec.when_to_use}")
        if spec.when_not_to_use:
            lines.append(f"  do not use when: {spec.when_not_to_use}")
        blocks.append("\n".join(lines))
    return "\n".join(blocks)


def _describe_field(spec: CapabilitySpec, name: str) -> str:
    schema = spec.get_field(name)
    assert schema is not None
    parts = [f"{schema.name} ({schema.type.value})"]
    if schema.description:
        parts.append(schema.description)
    if schema.enum:
        parts.append(f"one of: {', '.join(schema.enum)}")
    if schema.has_default:
        parts.append(f"default: {schema.default}")
    if v := schema.validation:
        if v.min is not None:
            parts.append(f"min {v.min:g}")
        if v.max is not None:
            parts.append(f"max {v.max:g}")
        if v.min_length is not None:
            parts.append(f"min length {v.min_length}")
        if v.max_length is not None:
            parts.append(f"max length {v.max_length}")
        if v.pattern:
            parts.append(f"pattern {v.pattern}")
    return " - ".join(parts)


def render_instructions(spec: CapabilitySpec) -> str:
    """Instructions tier for the selected capability."""
    lines = [f"# {spec.name}", spec.description, ""]

    required = [f for f in spec.field_names if spec.is_required(f)]
    optional = [f for f in spec.field_names if not spec.is_required(f)]
    lines.append("## Required fields")
    lines.extend(f"- {_describe_field(spec, f)}" for f in required)
    if not required:
        lines.append("- none")
    if optional:
        lines.append("## Optional fields")
        lines.extend(f"- {_describe_field(spec, f)}" for f in optional)

    if spec.constraints:
        lines.append("## Constraints")
        for rule in spec.constraints:
            text = rule.description or rule.condition
            lines.append(f"- [{rule.kind.value}] {text} (on violation: {rule.on_violation.value})")

    if spec.standard_procedure:
        lines.append(f"## Procedure: {spec.standard_procedure.name}")
        for step in sorted(spec.standard_procedure.steps, key=lambda s: s.step):
            detail = f"{step.step}. [{step.action.value}] {step.description}"
            if step.fields:
                detail += f" (fields: {', '.join(step.fields)})"
            lines.append(detail)

    notes = []
    if spec.composable and spec.composable_with:
        notes.append(f"Can be combined with: {', '.join(spec.composable_with)}")
    if spec.deferred_allowed:
        notes.append("May be deferred until a later event the user describes")
    if notes:
        lines.append("## Notes")
        lines.extend(f"- {n}" for n in notes)

    return "\n".join(lines)


def describe_resource(resource: SkillResource) -> dict[str, str]:
    """Public view of a resource: never includes its pointer or handler."""
    return {
        "id": resource.id,
        "type": resource.type.value,
        "description": resource.description,
    }


def render_resources(spec: CapabilitySpec) -> str:
    """Resources tier: ids, types and descriptions only."""
    lines = [f"# {spec.name} resources", f"executor: {spec.executor_kind.value}"]
    if not spec.resources:
        lines.append("- none")
    for resource in spec.resources:
        view = describe_resource(resource)
        lines.append(f"- {view['id']} ({view['type']}): {view['description']}")
    return "\n".join(lines)


# =============================================================================
# Per-session state machine
# =============================================================================


@dataclass(slots=True)
class DisclosureState:
    level: DisclosureLevel = DisclosureLevel.SUMMARY
    capability_name: str | None = None
    loaded_resources: list[str] = field(default_factory=list)
    tokens: int = 0


@dataclass(slots=True)
class DisclosureEvent:
    session_id: str
    level: DisclosureLevel
    capability_name: str | None
    tokens: int
    timestamp: datetime = field(default_factory=utc_now)


class DisclosureManager:
    """Tracks which tier each session has in view.

    Transitions are forward only: summary -> instructions on select(),
    instructions -> resources on confirm(). reset() is the only way back.
    """

    def __init__(self) -> None:
        self._states: dict[str, DisclosureState] = {}
        self._events: deque[DisclosureEvent] = deque(maxlen=MAX_EVENT_LOG)

    def state(self, session_id: str) -> DisclosureState:
        return self._states.setdefault(session_id, DisclosureState())

    def level(self, session_id: str) -> DisclosureLevel:
        return self.state(session_id).level

    @property
    def events(self) -> list[DisclosureEvent]:
        return list(self._events)

    def load_summary(self, session_id: str, specs: list[CapabilitySpec]) -> str:
        """Render the summary tier. Does not change the session's level."""
        state = self.state(session_id)
        if state.level == DisclosureLevel.SUMMARY:
            state.tokens = estimate_tokens(DisclosureLevel.SUMMARY, specs)
        return render_summary(specs)

    def select(self, session_id: str, spec: CapabilitySpec) -> str:
        """Advance to the instructions tier for ``spec`` and render it.

        Re-selecting the capability already at instructions is a no-op. Any
        other non-summary state starts a new selection from summary.
        """
        state = self.state(session_id)
        if state.level == DisclosureLevel.INSTRUCTIONS and state.capability_name == spec.name:
            return render_instructions(spec)
        if state.level != DisclosureLevel.SUMMARY:
            self.reset(session_id)
            state = self.state(session_id)
        state.level = DisclosureLevel.INSTRUCTIONS
        state.capability_name = spec.name
        state.tokens += estimate_tokens(DisclosureLevel.INSTRUCTIONS, [spec])
        self._record(session_id, state)
        return render_instructions(spec)

    def confirm(self, session_id: str, spec: CapabilitySpec) -> str:
        """Advance from instructions to resources once params are complete.

        Raises:
            InvalidTransitionError: Unless the session is at instructions for ``spec``.
        """
        state = self.state(session_id)
        if state.level != DisclosureLevel.INSTRUCTIONS or state.capability_name != spec.name:
            raise InvalidTransitionError(state.level.value, DisclosureLevel.RESOURCES.value)
        state.level = DisclosureLevel.RESOURCES
        self._record(session_id, state)
        return render_resources(spec)

    def load_resource(self, session_id: str, spec: CapabilitySpec, resource_id: str) -> dict[str, str]:
        """Mark a resource as loaded and return its public descriptor.

        Raises:
            InvalidTransitionError: If the session is not at the resources tier.
            KeyError: If the capability has no such resource.
        """
        state = self.state(session_id)
        if state.level != DisclosureLevel.RESOURCES or state.capability_name != spec.name:
            raise InvalidTransitionError(state.level.value, "load_resource")
        resource = spec.get_resource(resource_id)
        if resource is None:
            raise KeyError(f"Capability '{spec.name}' has no resource '{resource_id}'")
        if resource_id not in state.loaded_resources:
            state.loaded_resources.append(resource_id)
        return describe_resource(resource)

    def can_advance(self, session_id: str, phase: Phase) -> bool:
        """Whether the session's tier allows entering ``phase``."""
        required = PHASE_TIERS[phase]
        return _ORDER.index(self.level(session_id)) >= _ORDER.index(required)

    def reset(self, session_id: str) -> None:
        state = self._states.pop(session_id, None)
        if state is not None and state.level != DisclosureLevel.SUMMARY:
            self._record(session_id, DisclosureState())

    def forget(self, session_id: str) -> None:
        """Drop all state for an evicted session."""
        self._states.pop(session_id, None)

    def _record(self, session_id: str, state: DisclosureState) -> None:
        self._events.append(
            DisclosureEvent(session_id, state.level, state.capability_name, state.tokens)
        )
        logger.debug(
            "disclosure_level_changed",
            extra={
                "session.id": session_id,
                "disclosure.level": state.level.value,
                "capability.name": state.capability_name,
                "disclosure.tokens": state.tokens,
            },
        )
