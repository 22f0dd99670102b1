"""Feedback analysis and self-healing.

This module is the only place that turns execution results into words for the
user. FeedbackAnalyzer classifies a result and lists recovery options,
SelfHealingEngine picks one (completion service first, deterministic rule as
fallback) and FeedbackLoop folds both into a FeedbackVerdict for the caller.
"""

import logging
from typing import Any

from concierge.llm.completion import CompletionClient, CompletionError
from concierge.skills import errors
from concierge.skills.prompts import build_healing_prompt
from concierge.skills.registry import CapabilityRegistry
from concierge.skills.responses import HealingReply, parse_reply
from concierge.skills.types import (
    ExecutionResult,
    ExecutionStatus,
    FeedbackAnalysis,
    FeedbackType,
    FeedbackVerdict,
    SelfHealingDecision,
    SessionContext,
    Severity,
    Solution,
    SolutionAction,
)

logger = logging.getLogger(__name__)

_CODE_TYPES: dict[str, FeedbackType] = {
    errors.TIME_CONFLICT: FeedbackType.CONFLICT,
    errors.PERMISSION_DENIED: FeedbackType.PERMISSION_DENIED,
    errors.RESOURCE_UNAVAILABLE: FeedbackType.RESOURCE_UNAVAILABLE,
    errors.INVALID_PARAMS: FeedbackType.VALIDATION_ERROR,
    errors.VALIDATION_ERROR: FeedbackType.VALIDATION_ERROR,
    errors.PRECONDITION_FAILED: FeedbackType.VALIDATION_ERROR,
}

_MESSAGE_KEYWORDS: list[tuple[FeedbackType, tuple[str, ...]]] = [
    (FeedbackType.CONFLICT, ("conflict", "overlap", "already booked", "double-booked", "clash")),
    (FeedbackType.PERMISSION_DENIED, ("permission", "forbidden", "not allowed", "unauthorized")),
    (FeedbackType.RESOURCE_UNAVAILABLE, ("unavailable", "not available", "fully booked", "no rooms")),
    (FeedbackType.VALIDATION_ERROR, ("invalid", "must be", "is required")),
]

# (severity, can_auto_recover); system_error recovers only when the error says so
_TYPE_POLICY: dict[FeedbackType, tuple[Severity, bool]] = {
    FeedbackType.SUCCESS: (Severity.LOW, False),
    FeedbackType.PARTIAL_SUCCESS: (Severity.MEDIUM, True),
    FeedbackType.CONFLICT: (Severity.MEDIUM, True),
    FeedbackType.PERMISSION_DENIED: (Severity.HIGH, False),
    FeedbackType.RESOURCE_UNAVAILABLE: (Severity.MEDIUM, True),
    FeedbackType.VALIDATION_ERROR: (Severity.MEDIUM, True),
    FeedbackType.SYSTEM_ERROR: (Severity.HIGH, False),
}

CANCEL = Solution("cancel", "Cancel this request", SolutionAction.CANCEL)

DEFAULT_QUESTIONS: dict[str, str] = {
    "ask_time": "Which other time would work for you?",
    "ask_correct": "Could you give me the corrected details?",
    "continue_remaining": "Would you like me to try the remaining part again?",
}


def _label(name: str) -> str:
    return name.replace("_", " ")


class FeedbackAnalyzer:
    """Classifies execution results and phrases them for the user."""

    def __init__(self) -> None:
        self._success_templates: dict[str, str] = {}

    def register_success_message(self, capability_name: str, template: str) -> None:
        """Success text for a capability; ``{field}`` placeholders come from params and data."""
        self._success_templates[capability_name] = template

    def classify(self, result: ExecutionResult) -> FeedbackType:
        if result.status == ExecutionStatus.SUCCESS:
            return FeedbackType.SUCCESS
        if result.status == ExecutionStatus.PARTIAL_SUCCESS:
            return FeedbackType.PARTIAL_SUCCESS
        error = result.error
        if error is None:
            return FeedbackType.SYSTEM_ERROR
        if error.code in _CODE_TYPES:
            return _CODE_TYPES[error.code]
        message = error.message.lower()
        for feedback_type, keywords in _MESSAGE_KEYWORDS:
            if any(k in message for k in keywords):
                return feedback_type
        return FeedbackType.SYSTEM_ERROR

    def analyze(self, result: ExecutionResult) -> FeedbackAnalysis:
        feedback_type = self.classify(result)
        severity, can_recover = _TYPE_POLICY[feedback_type]
        if feedback_type == FeedbackType.SYSTEM_ERROR:
            can_recover = result.recoverable
        return FeedbackAnalysis(
            type=feedback_type,
            severity=severity,
            can_auto_recover=can_recover,
            suggested_actions=self.candidate_solutions(feedback_type, result),
            user_message=self.user_message(feedback_type, result),
        )

    def candidate_solutions(
        self, feedback_type: FeedbackType, result: ExecutionResult
    ) -> list[Solution]:
        """Recovery options for a result, unique by id, always ending with cancel."""
        details = result.error.details if result.error else {}
        candidates: list[Solution] = []
        match feedback_type:
            case FeedbackType.CONFLICT:
                candidates += [
                    Solution(
                        "adjust_time",
                        "Move to the nearest free time",
                        SolutionAction.MODIFY_PARAMS,
                        dict(details.get("suggested") or {}),
                    ),
                    Solution("ask_time", "Ask the user for another time", SolutionAction.ASK_USER),
                    Solution(
                        "force_create",
                        "Create it anyway, overlapping the existing entry",
                        SolutionAction.RETRY,
                        {"force": True},
                    ),
                ]
            case FeedbackType.RESOURCE_UNAVAILABLE:
                candidates += [
                    Solution(
                        "find_alternative",
                        "Use a similar capability instead",
                        SolutionAction.USE_ALTERNATIVE,
                    ),
                    Solution("wait_retry", "Wait briefly and try again", SolutionAction.RETRY),
                ]
            case FeedbackType.VALIDATION_ERROR:
                candidates.append(
                    Solution("ask_correct", "Ask the user to correct the details", SolutionAction.ASK_USER)
                )
            case FeedbackType.PARTIAL_SUCCESS:
                candidates.append(
                    Solution(
                        "continue_remaining",
                        "Ask whether to retry the part that did not finish",
                        SolutionAction.ASK_USER,
                    )
                )
            case FeedbackType.SYSTEM_ERROR if result.recoverable:
                candidates.append(Solution("retry", "Try again", SolutionAction.RETRY))
        candidates.append(CANCEL)

        unique: dict[str, Solution] = {}
        for solution in candidates:
            unique.setdefault(solution.id, solution)
        return list(unique.values())

    def success_message(self, result: ExecutionResult) -> str:
        if result.message:
            return result.message
        template = self._success_templates.get(result.capability_name)
        if template:
            values: dict[str, Any] = dict(result.params)
            if isinstance(result.data, dict):
                values.update(result.data)
            try:
                return template.format_map(values)
            except (KeyError, IndexError, ValueError):
                logger.debug(
                    "success_template_unfilled",
                    extra={"capability.name": result.capability_name},
                )
        return f"Done: {_label(result.capability_name)}."

    def user_message(self, feedback_type: FeedbackType, result: ExecutionResult) -> str:
        label = _label(result.capability_name)
        error = result.error
        details = error.details if error else {}
        match feedback_type:
            case FeedbackType.SUCCESS:
                text = self.success_message(result)
            case FeedbackType.PARTIAL_SUCCESS:
                text = result.message or f"I could only partly complete the {label} request."
            case FeedbackType.CONFLICT:
                conflict = details.get("conflict") or {}
                if title := conflict.get("title"):
                    span = " to ".join(
                        str(v) for v in (conflict.get("start_time"), conflict.get("end_time")) if v
                    )
                    text = f"That time clashes with '{title}'" + (f" ({span})" if span else "") + "."
                else:
                    text = "That time clashes with something already on the calendar."
            case FeedbackType.PERMISSION_DENIED:
                text = f"I don't have permission to {label}. Someone with access will need to do this."
            case FeedbackType.RESOURCE_UNAVAILABLE:
                text = f"What {label} needs isn't available right now."
            case FeedbackType.VALIDATION_ERROR:
                problem = error.message if error else "some details are not valid"
                text = f"Some details need fixing: {problem}."
            case _:
                if error is not None and error.code == errors.SKILL_NOT_FOUND:
                    text = f"I don't know how to {label}."
                elif error is not None and error.code == errors.SKILL_DISABLED:
                    text = f"{label.capitalize()} is switched off at the moment."
                else:
                    text = f"Something went wrong while trying to {label}."
        if result.warnings:
            text += " Note: " + "; ".join(result.warnings) + "."
        return text


class SelfHealingEngine:
    """Chooses a recovery option for a failed or partial result."""

    def __init__(
        self,
        completion: CompletionClient | None = None,
        *,
        llm_deadline: float | None = None,
    ):
        self._completion = completion
        self._llm_deadline = llm_deadline

    async def generate_decision(
        self,
        result: ExecutionResult,
        analysis: FeedbackAnalysis,
        context: SessionContext,
    ) -> SelfHealingDecision:
        candidates = analysis.suggested_actions
        if self._completion is not None and candidates:
            decision = await self._ask(result, analysis, context)
            if decision is not None:
                return decision
        return self.fallback_decision(analysis)

    async def _ask(
        self,
        result: ExecutionResult,
        analysis: FeedbackAnalysis,
        context: SessionContext,
    ) -> SelfHealingDecision | None:
        assert self._completion is not None
        prompt = build_healing_prompt(result, analysis, context)
        try:
            text = await self._completion.complete(prompt.system, prompt.user, self._llm_deadline)
        except CompletionError as e:
            logger.debug("llm_healing_fallback", extra={"error.message": str(e)})
            return None
        reply = parse_reply(text, HealingReply)
        if reply is None:
            return None
        solution = next((s for s in analysis.suggested_actions if s.id == reply.solution_id), None)
        if solution is None:
            logger.warning("llm_healing_unknown_solution", extra={"solution.id": reply.solution_id})
            return None
        modified = dict(solution.params) | dict(reply.modified_params or {})
        return SelfHealingDecision(
            solution_id=solution.id,
            action=solution.action,
            modified_params=modified or None,
            user_question=reply.user_question or DEFAULT_QUESTIONS.get(solution.id),
            reasoning=reply.reasoning,
            source="llm",
        )

    @staticmethod
    def fallback_decision(analysis: FeedbackAnalysis) -> SelfHealingDecision:
        """Prefer asking the user, else the first option, else cancel."""
        candidates = analysis.suggested_actions
        solution = next(
            (s for s in candidates if s.action == SolutionAction.ASK_USER),
            candidates[0] if candidates else CANCEL,
        )
        return SelfHealingDecision(
            solution_id=solution.id,
            action=solution.action,
            modified_params=dict(solution.params) or None,
            user_question=DEFAULT_QUESTIONS.get(solution.id),
            reasoning="deterministic fallback",
            source="fallback",
        )


class FeedbackLoop:
    """Single entry point: result in, verdict out."""

    def __init__(
        self,
        analyzer: FeedbackAnalyzer,
        healer: SelfHealingEngine,
        registry: CapabilityRegistry,
    ):
        self._analyzer = analyzer
        self._healer = healer
        self._registry = registry

    @property
    def analyzer(self) -> FeedbackAnalyzer:
        return self._analyzer

    async def handle_result(
        self, result: ExecutionResult, context: SessionContext
    ) -> FeedbackVerdict:
        analysis = self._analyzer.analyze(result)
        if result.ok or not analysis.can_auto_recover:
            logger.debug(
                "feedback_no_healing",
                extra={"capability.name": result.capability_name, "feedback.type": analysis.type.value},
            )
            return FeedbackVerdict(
                should_retry=False, user_message=analysis.user_message, analysis=analysis
            )

        decision = await self._healer.generate_decision(result, analysis, context)
        logger.info(
            "self_healing_decision",
            extra={
                "capability.name": result.capability_name,
                "feedback.type": analysis.type.value,
                "solution.id": decision.solution_id,
                "solution.source": decision.source,
            },
        )
        return self._verdict(result, analysis, decision)

    def _verdict(
        self,
        result: ExecutionResult,
        analysis: FeedbackAnalysis,
        decision: SelfHealingDecision,
    ) -> FeedbackVerdict:
        base = analysis.user_message
        fields = result.error.fields if result.error else ()
        ask = FeedbackVerdict(
            should_retry=False,
            user_message=f"{base} {decision.user_question or DEFAULT_QUESTIONS['ask_correct']}",
            analysis=analysis,
            decision=decision,
            ask_user=True,
            fields_to_refill=fields,
        )

        match decision.action:
            case SolutionAction.RETRY:
                return FeedbackVerdict(
                    should_retry=True,
                    user_message=f"{base} Trying again.",
                    analysis=analysis,
                    decision=decision,
                    modified_params=result.params | (decision.modified_params or {}),
                )
            case SolutionAction.MODIFY_PARAMS:
                if not decision.modified_params:
                    return ask
                changes = ", ".join(
                    f"{_label(k)} {v}" for k, v in decision.modified_params.items()
                )
                return FeedbackVerdict(
                    should_retry=True,
                    user_message=f"{base} Trying again with {changes}.",
                    analysis=analysis,
                    decision=decision,
                    modified_params=result.params | decision.modified_params,
                )
            case SolutionAction.ASK_USER:
                return ask
            case SolutionAction.USE_ALTERNATIVE:
                alternative = decision.alternative_capability or self._alternative(
                    result.capability_name
                )
                if alternative is None:
                    return FeedbackVerdict(
                        should_retry=False,
                        user_message=f"{base} There is no alternative I can use, so I've stopped here.",
                        analysis=analysis,
                        decision=decision,
                    )
                return FeedbackVerdict(
                    should_retry=False,
                    user_message=f"{base} I can try {_label(alternative)} instead.",
                    analysis=analysis,
                    decision=decision,
                    alternative_capability=alternative,
                )
            case _:
                return FeedbackVerdict(
                    should_retry=False,
                    user_message=f"{base} I've cancelled this request.",
                    analysis=analysis,
                    decision=decision,
                )

    def _alternative(self, name: str) -> str | None:
        """Another enabled capability in the same category."""
        if not self._registry.has(name):
            return None
        category = self._registry.get(name).category
        for spec in self._registry.by_category(category):
            if spec.name != name:
                return spec.name
        return None
