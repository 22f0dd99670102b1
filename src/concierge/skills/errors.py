"""Error codes and exceptions for the capability engine."""

from typing import Any

SKILL_NOT_FOUND = "SKILL_NOT_FOUND"
SKILL_DISABLED = "SKILL_DISABLED"
INVALID_PARAMS = "INVALID_PARAMS"
PRECONDITION_FAILED = "PRECONDITION_FAILED"
VALIDATION_ERROR = "VALIDATION_ERROR"
TIME_CONFLICT = "TIME_CONFLICT"
RESOURCE_UNAVAILABLE = "RESOURCE_UNAVAILABLE"
PERMISSION_DENIED = "PERMISSION_DENIED"
EXECUTION_ERROR = "EXECUTION_ERROR"

# Failures that are recoverable but would fail identically on a blind retry
DETERMINISTIC_CODES = frozenset(
    {INVALID_PARAMS, PRECONDITION_FAILED, VALIDATION_ERROR, TIME_CONFLICT}
)


class CapabilityRegistrationError(ValueError):
    """A capability spec failed validation at registration time."""

    def __init__(self, capability: str, problems: list[str]) -> None:
        super().__init__(f"Invalid capability '{capability}': " + "; ".join(problems))
        self.capability = capability
        self.problems = problems


class CapabilityExecutionError(Exception):
    """Raised by execution handlers to report a typed failure.

    The executor turns this into an ExecutionResult carrying the same code,
    so handlers never need to build results by hand.
    """

    def __init__(
        self,
        code: str,
        message: str,
        *,
        recoverable: bool = False,
        fields: tuple[str, ...] | list[str] = (),
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.recoverable = recoverable
        self.fields = tuple(fields)
        self.details = details or {}


class InvalidTransitionError(RuntimeError):
    """A state machine was asked to move along an edge it does not have."""

    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Cannot transition from '{current}' to '{target}'")
        self.current = current
        self.target = target
