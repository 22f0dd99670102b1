"""Capability registry.

The registry is the source of truth for every other component. Specs are
validated in full when they are registered so that a malformed capability
fails startup instead of failing a user's turn later.
"""

import logging
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal

from concierge.skills.constraints import ConstraintSyntaxError, parse_condition
from concierge.skills.errors import CapabilityRegistrationError
from concierge.skills.types import (
    CapabilitySpec,
    ConstraintKind,
    ExecutionStatus,
    ExecutorKind,
    ResourceType,
    utc_now,
)

logger = logging.getLogger(__name__)

SUMMARY_TOKENS_PER_CAPABILITY = 100

RegistryEventType = Literal[
    "registered", "unregistered", "executed", "enabled", "disabled"
]


@dataclass(slots=True)
class RegistryEvent:
    type: RegistryEventType
    capability_name: str
    status: ExecutionStatus | None = None
    timestamp: datetime = field(default_factory=utc_now)


RegistryListener = Callable[[RegistryEvent], None]


@dataclass(slots=True)
class RegistryStats:
    total: int
    enabled: int
    disabled: int
    by_category: dict[str, int]
    by_executor_kind: dict[str, int]
    summary_tokens: int
    with_procedure: int
    with_resources: int


def validate_spec(spec: CapabilitySpec) -> list[str]:
    """Return every problem with a spec (empty when valid)."""
    problems: list[str] = []

    if not spec.name.strip():
        problems.append("name is empty")
    if not spec.description.strip():
        problems.append("description is empty")
    if not spec.when_to_use.strip():
        problems.append("when_to_use is empty")

    names = spec.field_names
    duplicates = sorted(n for n, count in Counter(names).items() if count > 1)
    if duplicates:
        problems.append(f"duplicate input fields: {', '.join(duplicates)}")
    missing = [f for f in spec.required_fields if f not in names]
    if missing:
        problems.append(f"required fields not in input schema: {', '.join(missing)}")

    if spec.standard_procedure is not None:
        procedure = spec.standard_procedure
        if not procedure.name.strip():
            problems.append("standard procedure has no name")
        if not procedure.steps:
            problems.append("standard procedure has no steps")
        numbers = sorted(step.step for step in procedure.steps)
        if numbers != list(range(1, len(numbers) + 1)):
            problems.append(
                "standard procedure steps must be numbered 1..N without gaps, "
                f"got {numbers}"
            )

    resource_ids = [r.id for r in spec.resources]
    if any(not rid.strip() for rid in resource_ids):
        problems.append("resource with empty id")
    collisions = sorted(r for r, count in Counter(resource_ids).items() if count > 1)
    if collisions:
        problems.append(f"duplicate resource ids: {', '.join(collisions)}")
    for resource in spec.resources:
        if resource.type == ResourceType.SCRIPT and not resource.handler:
            problems.append(f"script resource '{resource.id}' has no handler id")

    if spec.script_entry is not None:
        entry = spec.get_resource(spec.script_entry)
        if entry is None or entry.type != ResourceType.SCRIPT:
            problems.append(f"script_entry '{spec.script_entry}' is not a script resource")
    if spec.executor_kind == ExecutorKind.SCRIPT and spec.script_resource() is None:
        problems.append("script executor requires a script resource")

    for rule in spec.constraints:
        try:
            comparison = parse_condition(rule.condition)
        except ConstraintSyntaxError as e:
            problems.append(f"constraint '{rule.id}': {e}")
            continue
        # Postconditions may also refer to fields of the handler's output
        if rule.kind == ConstraintKind.POSTCONDITION:
            continue
        unknown = [f for f in comparison.fields if f not in names]
        if unknown:
            problems.append(
                f"constraint '{rule.id}' references unknown fields: {', '.join(unknown)}"
            )

    return problems


class CapabilityRegistry:
    """Catalog of registered capabilities, in registration order."""

    def __init__(self) -> None:
        self._specs: dict[str, CapabilitySpec] = {}
        self._disabled: set[str] = set()
        self._listeners: list[RegistryListener] = []

    def register(self, spec: CapabilitySpec) -> None:
        """Validate and register a capability.

        Raises:
            CapabilityRegistrationError: If the spec is invalid or the name is taken.
        """
        problems = validate_spec(spec)
        if spec.name in self._specs:
            problems.append("a capability with this name is already registered")
        if problems:
            raise CapabilityRegistrationError(spec.name, problems)

        self._specs[spec.name] = spec
        logger.debug(
            "capability_registered",
            extra={"capability.name": spec.name, "capability.category": spec.category},
        )
        self._emit(RegistryEvent("registered", spec.name))

    def unregister(self, name: str) -> bool:
        """Remove a capability. Returns False if it was not registered."""
        if self._specs.pop(name, None) is None:
            return False
        self._disabled.discard(name)
        self._emit(RegistryEvent("unregistered", name))
        return True

    def get(self, name: str) -> CapabilitySpec:
        """Get a capability by name.

        Raises:
            KeyError: If the capability is not registered.
        """
        if name not in self._specs:
            raise KeyError(f"Capability '{name}' not registered")
        return self._specs[name]

    def has(self, name: str) -> bool:
        return name in self._specs

    def __contains__(self, name: object) -> bool:
        return name in self._specs

    def __len__(self) -> int:
        return len(self._specs)

    def list_all(self) -> list[CapabilitySpec]:
        return list(self._specs.values())

    def list_enabled(self) -> list[CapabilitySpec]:
        return [s for s in self._specs.values() if s.name not in self._disabled]

    def is_enabled(self, name: str) -> bool:
        return name in self._specs and name not in self._disabled

    def enable(self, name: str) -> None:
        self.get(name)
        if name in self._disabled:
            self._disabled.discard(name)
            self._emit(RegistryEvent("enabled", name))

    def disable(self, name: str) -> None:
        self.get(name)
        if name not in self._disabled:
            self._disabled.add(name)
            self._emit(RegistryEvent("disabled", name))

    def by_category(self, category: str) -> list[CapabilitySpec]:
        return [s for s in self.list_enabled() if s.category == category]

    def by_tag(self, tag: str) -> list[CapabilitySpec]:
        return [s for s in self.list_enabled() if tag in s.tags]

    def subscribe(self, listener: RegistryListener) -> Callable[[], None]:
        """Subscribe to registry events. Returns a callable that unsubscribes."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def record_execution(self, name: str, status: ExecutionStatus) -> None:
        self._emit(RegistryEvent("executed", name, status=status))

    def stats(self) -> RegistryStats:
        specs = self.list_all()
        enabled = self.list_enabled()
        return RegistryStats(
            total=len(specs),
            enabled=len(enabled),
            disabled=len(specs) - len(enabled),
            by_category=dict(Counter(s.category for s in specs)),
            by_executor_kind=dict(Counter(s.executor_kind.value for s in specs)),
            summary_tokens=len(enabled) * SUMMARY_TOKENS_PER_CAPABILITY,
            with_procedure=sum(1 for s in specs if s.standard_procedure is not None),
            with_resources=sum(1 for s in specs if s.resources),
        )

    def _emit(self, event: RegistryEvent) -> None:
        # Listener errors are logged, never raised
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.warning(
                    "registry_listener_failed",
                    exc_info=True,
                    extra={"event.type": event.type},
                )
