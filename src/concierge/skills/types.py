"""Capability, session and decision types.

Capability descriptors are frozen: they are built once at registration and
never change afterwards (enable/disable state lives in the registry). Session
state types are mutable but are only modified through SessionContextStore.
"""

from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from enum import Enum
from typing import Any, ClassVar


def utc_now() -> datetime:
    return datetime.now(UTC)


# =============================================================================
# Capability descriptors
# =============================================================================


class FieldType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    ARRAY = "array"
    OBJECT = "object"
    DATE = "date"
    TIME = "time"
    DATETIME = "datetime"


class ExecutorKind(str, Enum):
    LOCAL = "local"
    API = "api"
    SCRIPT = "script"


class ResourceType(str, Enum):
    SCRIPT = "script"
    TEMPLATE = "template"
    REFERENCE = "reference"
    CONFIG = "config"


class ConstraintKind(str, Enum):
    PRECONDITION = "precondition"
    POSTCONDITION = "postcondition"
    INVARIANT = "invariant"


class ViolationPolicy(str, Enum):
    REJECT = "reject"
    WARN = "warn"
    ASK_USER = "ask_user"
    AUTO_FIX = "auto_fix"


class StepAction(str, Enum):
    COLLECT = "collect"
    VALIDATE = "validate"
    TRANSFORM = "transform"
    EXECUTE = "execute"
    CONFIRM = "confirm"


class StepFailurePolicy(str, Enum):
    RETRY = "retry"
    ASK_USER = "ask_user"
    SKIP = "skip"
    ABORT = "abort"


@dataclass(frozen=True, slots=True)
class FieldValidation:
    """Bounds for a field. Numeric bounds apply to numbers, lengths to strings/arrays."""

    min: float | None = None
    max: float | None = None
    min_length: int | None = None
    max_length: int | None = None
    pattern: str | None = None


@dataclass(frozen=True, slots=True)
class FieldSchema:
    """One named input of a capability."""

    name: str
    type: FieldType = FieldType.STRING
    description: str = ""
    required: bool = False
    # None means "no default"
    default: Any = None
    enum: tuple[str, ...] = ()
    validation: FieldValidation | None = None
    examples: tuple[str, ...] = ()
    clarification_prompt: str | None = None

    @property
    def has_default(self) -> bool:
        return self.default is not None


@dataclass(frozen=True, slots=True)
class ConstraintRule:
    """A rule checked around execution.

    ``condition`` is a comparison such as ``end_time > start_time`` or
    ``date >= today``; see concierge.skills.constraints for the grammar.
    """

    id: str
    condition: str
    description: str = ""
    kind: ConstraintKind = ConstraintKind.PRECONDITION
    on_violation: ViolationPolicy = ViolationPolicy.REJECT
    message: str = ""


@dataclass(frozen=True, slots=True)
class ProcedureStep:
    step: int
    description: str
    action: StepAction = StepAction.COLLECT
    fields: tuple[str, ...] = ()
    condition: str | None = None
    on_failure: StepFailurePolicy = StepFailurePolicy.ASK_USER


@dataclass(frozen=True, slots=True)
class StandardProcedure:
    """Named, numbered operating procedure shown in the instructions tier."""

    name: str
    steps: tuple[ProcedureStep, ...] = ()


@dataclass(frozen=True, slots=True)
class SkillResource:
    """Handle to an execution resource.

    ``pointer`` locates the content (a file path, relative paths resolve
    against the resource directory) and ``content`` holds it inline. Neither is
    ever rendered to the completion service. Script resources name a
    registered handler id in ``handler``; stored text is never executed.
    """

    id: str
    type: ResourceType
    description: str = ""
    pointer: str | None = None
    handler: str | None = None
    content: str | None = None
    # capability param name -> template placeholder name
    param_mapping: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ApiEndpoint:
    """HTTP dispatch settings for api-backed capabilities."""

    path: str | None = None
    method: str = "POST"
    headers: dict[str, str] = field(default_factory=dict)
    # Environment variable holding a bearer token
    auth_env: str | None = None
    # capability param name -> request field name
    param_mapping: dict[str, str] = field(default_factory=dict)
    timeout: float | None = None


@dataclass(frozen=True, slots=True)
class CapabilityExample:
    user_input: str
    expected_action: str = ""


@dataclass(frozen=True, slots=True)
class CapabilitySpec:
    """Immutable descriptor of one capability."""

    name: str
    description: str
    when_to_use: str
    input_schema: tuple[FieldSchema, ...] = ()
    required_fields: tuple[str, ...] = ()
    tags: tuple[str, ...] = ()
    category: str = "general"
    when_not_to_use: str = ""
    constraints: tuple[ConstraintRule, ...] = ()
    standard_procedure: StandardProcedure | None = None
    composable: bool = False
    composable_with: tuple[str, ...] = ()
    deferred_allowed: bool = False
    # Seconds a deferred request stays pending
    deferred_timeout: int | None = None
    resources: tuple[SkillResource, ...] = ()
    executor_kind: ExecutorKind = ExecutorKind.LOCAL
    api: ApiEndpoint | None = None
    script_entry: str | None = None
    version: str = "1.0.0"
    priority: int = 0
    examples: tuple[CapabilityExample, ...] = ()

    def get_field(self, name: str) -> FieldSchema | None:
        for schema in self.input_schema:
            if schema.name == name:
                return schema
        return None

    @property
    def field_names(self) -> list[str]:
        return [f.name for f in self.input_schema]

    def is_required(self, name: str) -> bool:
        return name in self.required_fields

    @property
    def preconditions(self) -> list[ConstraintRule]:
        return [c for c in self.constraints if c.kind == ConstraintKind.PRECONDITION]

    def get_resource(self, resource_id: str) -> SkillResource | None:
        for resource in self.resources:
            if resource.id == resource_id:
                return resource
        return None

    def script_resource(self) -> SkillResource | None:
        """The script to run: ``script_entry`` if set, else the first script resource."""
        if self.script_entry:
            return self.get_resource(self.script_entry)
        for resource in self.resources:
            if resource.type == ResourceType.SCRIPT:
                return resource
        return None


# =============================================================================
# Session state
# =============================================================================


class CapabilityStatus(str, Enum):
    SELECTING = "selecting"
    FILLING = "filling"
    EXECUTING = "executing"
    CONFIRMING = "confirming"
    COMPLETED = "completed"
    FAILED = "failed"


class SlotSource(str, Enum):
    USER_INPUT = "user_input"
    CONTEXT = "context"
    DEFAULT = "default"
    INFERRED = "inferred"


@dataclass(slots=True)
class SlotState:
    field: str
    value: Any = None
    filled: bool = False
    source: SlotSource | None = None
    confidence: float = 0.0
    filled_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class SlotFill:
    """A candidate value for one slot, as produced by extraction."""

    field: str
    value: Any
    confidence: float
    source: SlotSource = SlotSource.USER_INPUT


@dataclass(slots=True)
class ActiveCapabilityState:
    capability_name: str
    slots: list[SlotState] = field(default_factory=list)
    status: CapabilityStatus = CapabilityStatus.SELECTING
    started_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    retry_count: int = 0
    # Field the last clarification question asked about
    awaiting_field: str | None = None

    def get_slot(self, name: str) -> SlotState | None:
        for slot in self.slots:
            if slot.field == name:
                return slot
        return None


@dataclass(slots=True)
class PendingCapability:
    capability_name: str
    partial_params: dict[str, Any]
    waiting_for: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utc_now)

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.expires_at <= (now or utc_now())


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    PARTIAL_SUCCESS = "partial_success"
    ERROR = "error"
    CANCELLED = "cancelled"


@dataclass(slots=True)
class ExecutionError:
    code: str
    message: str
    recoverable: bool = False
    # Params the failure is attributed to, so they can be asked for again
    fields: tuple[str, ...] = ()
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ExecutionResult:
    status: ExecutionStatus
    capability_name: str
    params: dict[str, Any] = field(default_factory=dict)
    data: Any = None
    error: ExecutionError | None = None
    message: str = ""
    warnings: list[str] = field(default_factory=list)
    suggestions: list[str] = field(default_factory=list)
    execution_time_ms: int = 0
    timestamp: datetime = field(default_factory=utc_now)

    @property
    def ok(self) -> bool:
        return self.status in (ExecutionStatus.SUCCESS, ExecutionStatus.PARTIAL_SUCCESS)

    @property
    def recoverable(self) -> bool:
        return self.error is not None and self.error.recoverable


@dataclass(slots=True)
class HistoryEntry:
    capability_name: str
    params: dict[str, Any]
    result: ExecutionResult
    user_input: str = ""
    timestamp: datetime = field(default_factory=utc_now)


@dataclass(slots=True)
class SessionContext:
    session_id: str
    user_id: str
    current_date: date
    active_capability: ActiveCapabilityState | None = None
    pending_capabilities: list[PendingCapability] = field(default_factory=list)
    history: list[HistoryEntry] = field(default_factory=list)
    variables: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)
    last_updated_at: datetime = field(default_factory=utc_now)


# =============================================================================
# Selector decisions
# =============================================================================


@dataclass(slots=True)
class SkillCallDecision:
    kind: ClassVar[str] = "skill_call"

    capability_name: str
    params: dict[str, Any]
    confidence: float
    reasoning: str = ""


@dataclass(slots=True)
class ClarificationQuestion:
    field: str
    question: str


@dataclass(slots=True)
class ClarificationDecision:
    kind: ClassVar[str] = "clarification"

    capability_name: str
    missing_fields: list[str]
    questions: list[ClarificationQuestion]

    @property
    def message(self) -> str:
        return "\n".join(q.question for q in self.questions)


@dataclass(slots=True)
class PendingDecision:
    kind: ClassVar[str] = "pending"

    capability_name: str
    partial_params: dict[str, Any]
    waiting_for: str
    # Seconds until the pending request expires
    timeout: int


@dataclass(slots=True)
class ChainStep:
    capability_name: str
    params: dict[str, Any]
    depends_on: str | None = None


@dataclass(slots=True)
class ChainDecision:
    kind: ClassVar[str] = "chain"

    steps: list[ChainStep]
    reasoning: str = ""


@dataclass(slots=True)
class NoMatchDecision:
    kind: ClassVar[str] = "no_match"

    reason: str
    suggestion: str | None = None


SelectorDecision = (
    SkillCallDecision
    | ClarificationDecision
    | PendingDecision
    | ChainDecision
    | NoMatchDecision
)


# =============================================================================
# Feedback and self-healing
# =============================================================================


class FeedbackType(str, Enum):
    SUCCESS = "success"
    PARTIAL_SUCCESS = "partial_success"
    CONFLICT = "conflict"
    PERMISSION_DENIED = "permission_denied"
    RESOURCE_UNAVAILABLE = "resource_unavailable"
    VALIDATION_ERROR = "validation_error"
    SYSTEM_ERROR = "system_error"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class SolutionAction(str, Enum):
    RETRY = "retry"
    MODIFY_PARAMS = "modify_params"
    ASK_USER = "ask_user"
    USE_ALTERNATIVE = "use_alternative"
    CANCEL = "cancel"


@dataclass(frozen=True, slots=True)
class Solution:
    id: str
    description: str
    action: SolutionAction
    params: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class FeedbackAnalysis:
    type: FeedbackType
    severity: Severity
    can_auto_recover: bool
    suggested_actions: list[Solution]
    user_message: str


@dataclass(slots=True)
class SelfHealingDecision:
    solution_id: str
    action: SolutionAction
    modified_params: dict[str, Any] | None = None
    user_question: str | None = None
    alternative_capability: str | None = None
    reasoning: str = ""
    # "llm" or "fallback"
    source: str = "fallback"


@dataclass(slots=True)
class FeedbackVerdict:
    """What the caller should do next; never contains raw error codes."""

    should_retry: bool
    user_message: str
    analysis: FeedbackAnalysis
    decision: SelfHealingDecision | None = None
    modified_params: dict[str, Any] | None = None
    ask_user: bool = False
    fields_to_refill: tuple[str, ...] = ()
    alternative_capability: str | None = None
