"""Capability orchestration.

Capabilities are declared as CapabilitySpec descriptors (in code or YAML),
selected from user input, filled slot by slot, and executed with feedback
driven self-healing.
"""

from concierge.skills.context import ContextSweeper, SessionContextStore
from concierge.skills.disclosure import DisclosureLevel, DisclosureManager
from concierge.skills.errors import (
    CapabilityExecutionError,
    CapabilityRegistrationError,
    InvalidTransitionError,
)
from concierge.skills.executor import CapabilityExecutor, ExecutionContext, HandlerResult
from concierge.skills.feedback import FeedbackAnalyzer, FeedbackLoop, SelfHealingEngine
from concierge.skills.loader import load_capabilities_dir, load_capability_file
from concierge.skills.registry import CapabilityRegistry
from concierge.skills.resources import ResourceManager
from concierge.skills.selector import CapabilitySelector
from concierge.skills.slots import SlotFillingEngine
from concierge.skills.types import (
    CapabilitySpec,
    ExecutionResult,
    ExecutionStatus,
    FieldSchema,
    FieldType,
    SelectorDecision,
    SessionContext,
)

__all__ = [
    # Registry
    "CapabilityRegistry",
    "CapabilityRegistrationError",
    "load_capabilities_dir",
    "load_capability_file",
    # Disclosure
    "DisclosureLevel",
    "DisclosureManager",
    # Context
    "ContextSweeper",
    "InvalidTransitionError",
    "SessionContextStore",
    # Selection
    "CapabilitySelector",
    "SlotFillingEngine",
    # Execution
    "CapabilityExecutionError",
    "CapabilityExecutor",
    "ExecutionContext",
    "HandlerResult",
    "ResourceManager",
    # Feedback
    "FeedbackAnalyzer",
    "FeedbackLoop",
    "SelfHealingEngine",
    # Types
    "CapabilitySpec",
    "ExecutionResult",
    "ExecutionStatus",
    "FieldSchema",
    "FieldType",
    "SelectorDecision",
    "SessionContext",
]
