"""Tests for feedback analysis and self-healing."""

from typing import Any

import pytest

from concierge.skills import errors
from concierge.skills.builtin import SUCCESS_MESSAGES
from concierge.skills.context import SessionContextStore
from concierge.skills.feedback import FeedbackAnalyzer, FeedbackLoop, SelfHealingEngine
from concierge.skills.registry import CapabilityRegistry
from concierge.skills.types import (
    ExecutionError,
    ExecutionResult,
    ExecutionStatus,
    FeedbackType,
    SessionContext,
    Severity,
    SolutionAction,
)
from tests.conftest import TOMORROW, MockLLMProvider, completion_for, make_spec, reply

CONFLICT_DETAILS = {
    "conflict": {"id": "c1", "title": "Standup", "date": TOMORROW, "start_time": "14:00", "end_time": "15:00"},
    "suggested": {"start_time": "15:00", "end_time": "16:00"},
}

MEETING_PARAMS = {
    "title": "Sync",
    "date": TOMORROW,
    "start_time": "14:00",
    "attendees": ["Alice"],
    "room_type": "standard",
}


def _failure(
    code: str,
    message: str = "failed",
    *,
    name: str = "order_lunch",
    recoverable: bool = False,
    fields: tuple[str, ...] = (),
    details: dict[str, Any] | None = None,
    params: dict[str, Any] | None = None,
) -> ExecutionResult:
    return ExecutionResult(
        status=ExecutionStatus.ERROR,
        capability_name=name,
        params=params or {"dish": "soup"},
        error=ExecutionError(code, message, recoverable, fields, dict(details or {})),
    )


def _conflict() -> ExecutionResult:
    return _failure(
        errors.TIME_CONFLICT,
        "Overlaps with 'Standup'",
        name="book_meeting_room",
        recoverable=True,
        fields=("start_time", "end_time"),
        details=CONFLICT_DETAILS,
        params=dict(MEETING_PARAMS),
    )


@pytest.fixture
def context(store: SessionContextStore, session: str) -> SessionContext:
    return store.snapshot(session)


@pytest.fixture
def analyzer() -> FeedbackAnalyzer:
    return FeedbackAnalyzer()


class TestClassify:
    """Tests for FeedbackAnalyzer.classify."""

    def test_success_and_partial(self, analyzer: FeedbackAnalyzer):
        assert analyzer.classify(ExecutionResult(ExecutionStatus.SUCCESS, "x")) == FeedbackType.SUCCESS
        assert (
            analyzer.classify(ExecutionResult(ExecutionStatus.PARTIAL_SUCCESS, "x"))
            == FeedbackType.PARTIAL_SUCCESS
        )

    @pytest.mark.parametrize(
        ("code", "expected"),
        [
            (errors.TIME_CONFLICT, FeedbackType.CONFLICT),
            (errors.PERMISSION_DENIED, FeedbackType.PERMISSION_DENIED),
            (errors.RESOURCE_UNAVAILABLE, FeedbackType.RESOURCE_UNAVAILABLE),
            (errors.INVALID_PARAMS, FeedbackType.VALIDATION_ERROR),
            (errors.PRECONDITION_FAILED, FeedbackType.VALIDATION_ERROR),
            (errors.VALIDATION_ERROR, FeedbackType.VALIDATION_ERROR),
            (errors.EXECUTION_ERROR, FeedbackType.SYSTEM_ERROR),
        ],
    )
    def test_by_code(self, analyzer: FeedbackAnalyzer, code: str, expected: FeedbackType):
        assert analyzer.classify(_failure(code)) == expected

    @pytest.mark.parametrize(
        ("message", "expected"),
        [
            ("The slot overlaps another booking", FeedbackType.CONFLICT),
            ("Forbidden by policy", FeedbackType.PERMISSION_DENIED),
            ("All rooms are fully booked", FeedbackType.RESOURCE_UNAVAILABLE),
            ("budget must be a number", FeedbackType.VALIDATION_ERROR),
            ("connection reset", FeedbackType.SYSTEM_ERROR),
        ],
    )
    def test_by_message(self, analyzer: FeedbackAnalyzer, message: str, expected: FeedbackType):
        assert analyzer.classify(_failure(errors.EXECUTION_ERROR, message)) == expected

    def test_error_status_without_error(self, analyzer: FeedbackAnalyzer):
        assert analyzer.classify(ExecutionResult(ExecutionStatus.ERROR, "x")) == FeedbackType.SYSTEM_ERROR


class TestAnalyze:
    """Tests for recovery options and severity."""

    def test_conflict_options(self, analyzer: FeedbackAnalyzer):
        analysis = analyzer.analyze(_conflict())
        assert [s.id for s in analysis.suggested_actions] == [
            "adjust_time",
            "ask_time",
            "force_create",
            "cancel",
        ]
        assert analysis.suggested_actions[0].params == {"start_time": "15:00", "end_time": "16:00"}
        assert analysis.suggested_actions[2].params == {"force": True}
        assert analysis.can_auto_recover

    def test_resource_options(self, analyzer: FeedbackAnalyzer):
        analysis = analyzer.analyze(_failure(errors.RESOURCE_UNAVAILABLE, recoverable=True))
        assert [s.id for s in analysis.suggested_actions] == ["find_alternative", "wait_retry", "cancel"]

    def test_validation_options(self, analyzer: FeedbackAnalyzer):
        analysis = analyzer.analyze(_failure(errors.INVALID_PARAMS, recoverable=True))
        assert [s.id for s in analysis.suggested_actions] == ["ask_correct", "cancel"]

    def test_system_error_follows_the_error(self, analyzer: FeedbackAnalyzer):
        recoverable = analyzer.analyze(_failure(errors.EXECUTION_ERROR, recoverable=True))
        assert recoverable.can_auto_recover
        assert [s.id for s in recoverable.suggested_actions] == ["retry", "cancel"]

        fatal = analyzer.analyze(_failure(errors.EXECUTION_ERROR))
        assert not fatal.can_auto_recover
        assert [s.id for s in fatal.suggested_actions] == ["cancel"]
        assert fatal.severity == Severity.HIGH

    def test_permission_is_never_healed(self, analyzer: FeedbackAnalyzer):
        analysis = analyzer.analyze(_failure(errors.PERMISSION_DENIED, recoverable=True))
        assert not analysis.can_auto_recover
        assert analysis.severity == Severity.HIGH


class TestMessages:
    """Tests for user-facing text."""

    def test_success_template(self, analyzer: FeedbackAnalyzer):
        analyzer.register_success_message("book_meeting_room", SUCCESS_MESSAGES["book_meeting_room"])
        result = ExecutionResult(
            ExecutionStatus.SUCCESS,
            "book_meeting_room",
            params=dict(MEETING_PARAMS),
            data={"end_time": "15:00"},
        )
        assert analyzer.analyze(result).user_message == "Booked 'Sync' on 2025-01-16 from 14:00 to 15:00."

    def test_template_with_missing_values(self, analyzer: FeedbackAnalyzer):
        analyzer.register_success_message("order_lunch", "Ordered {dish} for {count}.")
        result = ExecutionResult(ExecutionStatus.SUCCESS, "order_lunch", params={"dish": "soup"})
        assert analyzer.success_message(result) == "Done: order lunch."

    def test_handler_message_wins(self, analyzer: FeedbackAnalyzer):
        analyzer.register_success_message("order_lunch", "Ordered {dish}.")
        result = ExecutionResult(ExecutionStatus.SUCCESS, "order_lunch", message="Soup is on its way.")
        assert analyzer.success_message(result) == "Soup is on its way."

    def test_warnings_are_appended(self, analyzer: FeedbackAnalyzer):
        result = ExecutionResult(
            ExecutionStatus.SUCCESS, "order_lunch", warnings=["the soup is cold", "no bread"]
        )
        assert analyzer.analyze(result).user_message == (
            "Done: order lunch. Note: the soup is cold; no bread."
        )

    def test_conflict(self, analyzer: FeedbackAnalyzer):
        assert analyzer.analyze(_conflict()).user_message == (
            "That time clashes with 'Standup' (14:00 to 15:00)."
        )
        bare = _failure(errors.TIME_CONFLICT)
        assert analyzer.analyze(bare).user_message == (
            "That time clashes with something already on the calendar."
        )

    @pytest.mark.parametrize(
        ("result", "expected"),
        [
            (
                _failure(errors.PERMISSION_DENIED),
                "I don't have permission to order lunch. Someone with access will need to do this.",
            ),
            (_failure(errors.RESOURCE_UNAVAILABLE), "What order lunch needs isn't available right now."),
            (_failure(errors.INVALID_PARAMS, "dish is required"), "Some details need fixing: dish is required."),
            (_failure(errors.SKILL_NOT_FOUND, name="order_pizza"), "I don't know how to order pizza."),
            (_failure(errors.SKILL_DISABLED), "Order lunch is switched off at the moment."),
            (_failure(errors.EXECUTION_ERROR, "boom"), "Something went wrong while trying to order lunch."),
        ],
    )
    def test_failures(self, analyzer: FeedbackAnalyzer, result: ExecutionResult, expected: str):
        assert analyzer.analyze(result).user_message == expected


class TestSelfHealingEngine:
    """Tests for choosing a recovery option."""

    @pytest.mark.asyncio
    async def test_fallback_prefers_asking(self, analyzer: FeedbackAnalyzer, context: SessionContext):
        decision = await SelfHealingEngine().generate_decision(
            _conflict(), analyzer.analyze(_conflict()), context
        )
        assert decision.solution_id == "ask_time"
        assert decision.action == SolutionAction.ASK_USER
        assert decision.user_question == "Which other time would work for you?"
        assert decision.source == "fallback"

    @pytest.mark.asyncio
    async def test_fallback_takes_first_option_without_a_question(
        self, analyzer: FeedbackAnalyzer, context: SessionContext
    ):
        result = _failure(errors.EXECUTION_ERROR, recoverable=True)
        decision = await SelfHealingEngine().generate_decision(result, analyzer.analyze(result), context)
        assert decision.solution_id == "retry"
        assert decision.action == SolutionAction.RETRY

    @pytest.mark.asyncio
    async def test_llm_choice(self, analyzer: FeedbackAnalyzer, context: SessionContext):
        provider = MockLLMProvider(
            phase_responses={"healing": [reply(solution_id="adjust_time", reasoning="next slot is free")]}
        )
        healer = SelfHealingEngine(completion_for(provider))

        decision = await healer.generate_decision(_conflict(), analyzer.analyze(_conflict()), context)
        assert decision.solution_id == "adjust_time"
        assert decision.modified_params == {"start_time": "15:00", "end_time": "16:00"}
        assert decision.source == "llm"
        assert provider.phases == ["healing"]

    @pytest.mark.asyncio
    async def test_llm_params_override_the_suggestion(
        self, analyzer: FeedbackAnalyzer, context: SessionContext
    ):
        provider = MockLLMProvider(
            phase_responses={
                "healing": [
                    reply(solution_id="adjust_time", modified_params={"start_time": "16:00", "end_time": "17:00"})
                ]
            }
        )
        decision = await SelfHealingEngine(completion_for(provider)).generate_decision(
            _conflict(), analyzer.analyze(_conflict()), context
        )
        assert decision.modified_params == {"start_time": "16:00", "end_time": "17:00"}

    @pytest.mark.parametrize(
        "healing_reply",
        [reply(solution_id="book_a_bigger_room"), "I would move the meeting.", reply(reasoning="no id")],
    )
    @pytest.mark.asyncio
    async def test_unusable_llm_reply_falls_back(
        self, analyzer: FeedbackAnalyzer, context: SessionContext, healing_reply: str
    ):
        provider = MockLLMProvider(phase_responses={"healing": [healing_reply]})
        decision = await SelfHealingEngine(completion_for(provider)).generate_decision(
            _conflict(), analyzer.analyze(_conflict()), context
        )
        assert decision.solution_id == "ask_time"
        assert decision.source == "fallback"


class TestFeedbackLoop:
    """Tests for FeedbackLoop.handle_result."""

    @staticmethod
    def _loop(provider: MockLLMProvider | None = None, registry: CapabilityRegistry | None = None) -> FeedbackLoop:
        healer = SelfHealingEngine(completion_for(provider) if provider else None)
        return FeedbackLoop(FeedbackAnalyzer(), healer, registry or CapabilityRegistry())

    @pytest.mark.asyncio
    async def test_success(self, context: SessionContext):
        verdict = await self._loop().handle_result(
            ExecutionResult(ExecutionStatus.SUCCESS, "order_lunch"), context
        )
        assert not verdict.should_retry
        assert verdict.decision is None
        assert verdict.user_message == "Done: order lunch."

    @pytest.mark.asyncio
    async def test_unrecoverable_failure_is_only_reported(self, context: SessionContext):
        provider = MockLLMProvider()
        verdict = await self._loop(provider).handle_result(_failure(errors.PERMISSION_DENIED), context)

        assert not verdict.should_retry
        assert verdict.decision is None
        assert provider.complete_calls == []

    @pytest.mark.asyncio
    async def test_conflict_asks_for_another_time(self, context: SessionContext):
        verdict = await self._loop().handle_result(_conflict(), context)

        assert verdict.ask_user
        assert not verdict.should_retry
        assert verdict.fields_to_refill == ("start_time", "end_time")
        assert verdict.user_message == (
            "That time clashes with 'Standup' (14:00 to 15:00). Which other time would work for you?"
        )

    @pytest.mark.asyncio
    async def test_adjusted_retry(self, context: SessionContext):
        provider = MockLLMProvider(phase_responses={"healing": [reply(solution_id="adjust_time")]})
        verdict = await self._loop(provider).handle_result(_conflict(), context)

        assert verdict.should_retry
        assert verdict.modified_params == MEETING_PARAMS | {"start_time": "15:00", "end_time": "16:00"}
        assert verdict.user_message == (
            "That time clashes with 'Standup' (14:00 to 15:00). "
            "Trying again with start time 15:00, end time 16:00."
        )

    @pytest.mark.asyncio
    async def test_forced_retry(self, context: SessionContext):
        provider = MockLLMProvider(phase_responses={"healing": [reply(solution_id="force_create")]})
        verdict = await self._loop(provider).handle_result(_conflict(), context)

        assert verdict.should_retry
        assert verdict.modified_params["force"] is True
        assert verdict.user_message.endswith("Trying again.")

    @pytest.mark.asyncio
    async def test_adjust_without_a_free_slot_asks(self, context: SessionContext):
        result = _conflict()
        result.error.details["suggested"] = None
        provider = MockLLMProvider(phase_responses={"healing": [reply(solution_id="adjust_time")]})

        verdict = await self._loop(provider).handle_result(result, context)
        assert verdict.ask_user
        assert verdict.user_message.endswith("Could you give me the corrected details?")

    @pytest.mark.asyncio
    async def test_alternative_in_same_category(self, context: SessionContext):
        registry = CapabilityRegistry()
        registry.register(make_spec("order_lunch"))
        registry.register(make_spec("order_coffee"))
        provider = MockLLMProvider(phase_responses={"healing": [reply(solution_id="find_alternative")]})

        verdict = await self._loop(provider, registry).handle_result(
            _failure(errors.RESOURCE_UNAVAILABLE, recoverable=True), context
        )
        assert verdict.alternative_capability == "order_coffee"
        assert verdict.user_message.endswith("I can try order coffee instead.")

    @pytest.mark.asyncio
    async def test_no_alternative(self, context: SessionContext):
        registry = CapabilityRegistry()
        registry.register(make_spec("order_lunch"))
        provider = MockLLMProvider(phase_responses={"healing": [reply(solution_id="find_alternative")]})

        verdict = await self._loop(provider, registry).handle_result(
            _failure(errors.RESOURCE_UNAVAILABLE, recoverable=True), context
        )
        assert verdict.alternative_capability is None
        assert verdict.user_message.endswith("There is no alternative I can use, so I've stopped here.")

    @pytest.mark.asyncio
    async def test_cancel(self, context: SessionContext):
        provider = MockLLMProvider(phase_responses={"healing": [reply(solution_id="cancel")]})
        verdict = await self._loop(provider).handle_result(_conflict(), context)

        assert not verdict.should_retry
        assert not verdict.ask_user
        assert verdict.user_message.endswith("I've cancelled this request.")
