"""Skill orchestration engine.

SkillEngine owns one instance of every component and runs a user turn end to
end: select, execute, heal, and answer. Nothing is shared through module
globals, so several engines can run side by side (tests do exactly that).
"""

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any, Literal

import httpx

from concierge.calendar import CalendarStore, InMemoryCalendarStore
from concierge.config.models import ConciergeConfig
from concierge.llm.base import LLMProvider
from concierge.llm.completion import CompletionClient
from concierge.llm.registry import create_llm_provider
from concierge.logging import log_context
from concierge.skills.builtin import register_builtin_capabilities
from concierge.skills.context import (
    ContextSweeper,
    InMemoryContextBackend,
    JsonFileContextBackend,
    SessionContextStore,
)
from concierge.skills.disclosure import DisclosureManager
from concierge.skills.executor import CapabilityExecutor
from concierge.skills.feedback import FeedbackAnalyzer, FeedbackLoop, SelfHealingEngine
from concierge.skills.loader import load_capabilities_dir
from concierge.skills.registry import CapabilityRegistry
from concierge.skills.resources import ResourceManager
from concierge.skills.selector import CapabilitySelector
from concierge.skills.slots import SlotFillingEngine
from concierge.skills.types import (
    CapabilityStatus,
    ChainDecision,
    ClarificationDecision,
    ExecutionResult,
    FeedbackVerdict,
    NoMatchDecision,
    PendingDecision,
    SelectorDecision,
    SkillCallDecision,
)

logger = logging.getLogger(__name__)

BusyPolicy = Literal["queue", "reject"]

BUSY_MESSAGE = "I'm still working on your previous message. Please wait a moment and try again."
NO_MATCH_MESSAGE = "Sorry, I couldn't match that to anything I can do."


@dataclass(slots=True)
class TurnResult:
    """What a front-end shows for one turn.

    ``success`` is False when the request could not be handled (no match,
    a failed action, a busy session) and True otherwise, including turns that
    end with a question.
    """

    message: str
    success: bool
    action: ExecutionResult | None = None
    decision: SelectorDecision | None = None


def _label(name: str) -> str:
    return name.replace("_", " ")


def _describe_timeout(seconds: int) -> str:
    delta = timedelta(seconds=seconds)
    if delta.days >= 1:
        return f"{delta.days} day{'s' if delta.days != 1 else ''}"
    hours = seconds // 3600
    if hours >= 1:
        return f"{hours} hour{'s' if hours != 1 else ''}"
    minutes = max(1, seconds // 60)
    return f"{minutes} minute{'s' if minutes != 1 else ''}"


class SkillEngine:
    """Conversational front door to the capability system."""

    def __init__(
        self,
        *,
        registry: CapabilityRegistry,
        store: SessionContextStore,
        disclosure: DisclosureManager,
        selector: CapabilitySelector,
        executor: CapabilityExecutor,
        feedback: FeedbackLoop,
        calendar: CalendarStore,
        completion: CompletionClient | None = None,
        sweeper: ContextSweeper | None = None,
        busy_policy: BusyPolicy = "queue",
        max_healing_attempts: int = 1,
    ):
        self._registry = registry
        self._store = store
        self._disclosure = disclosure
        self._selector = selector
        self._executor = executor
        self._feedback = feedback
        self._calendar = calendar
        self._completion = completion
        self._sweeper = sweeper
        self._busy_policy = busy_policy
        self._max_healing_attempts = max_healing_attempts

    @classmethod
    def from_config(
        cls,
        config: ConciergeConfig,
        provider: LLMProvider | None = None,
        *,
        calendar: CalendarStore | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> "SkillEngine":
        """Build every component from configuration.

        ``provider`` overrides the provider built from ``[models]``; passing
        one with an empty ``[models]`` table still enables completions.
        """
        completion = cls._build_completion(config, provider)
        deadline = config.llm.timeout_seconds

        registry = CapabilityRegistry()
        disclosure = DisclosureManager()
        backend = (
            JsonFileContextBackend(config.sessions.state_dir)
            if config.sessions.state_dir
            else InMemoryContextBackend()
        )
        store = SessionContextStore(
            backend,
            max_history=config.sessions.max_history,
            idle_timeout=timedelta(seconds=config.sessions.idle_timeout_seconds),
            confidence_threshold=config.slots.confidence_threshold,
            on_evict=disclosure.forget,
        )
        slots = SlotFillingEngine(
            confidence_threshold=config.slots.confidence_threshold,
            max_questions_per_turn=config.slots.max_questions_per_turn,
            default_time=config.slots.default_time,
        )
        selector = CapabilitySelector(
            registry,
            store,
            disclosure,
            slots,
            completion,
            match_confidence_floor=config.selector.match_confidence_floor,
            fallback_confidence=config.selector.fallback_confidence,
            min_keyword_length=config.selector.min_keyword_length,
            trust_llm_no_match=config.selector.trust_llm_no_match,
            pending_timeout=config.selector.pending_timeout_seconds,
            llm_deadline=deadline,
        )
        executor = CapabilityExecutor(
            registry,
            store,
            timeout_seconds=config.executor.timeout_seconds,
            max_retries=config.executor.max_retries,
            retry_delay_ms=config.executor.retry_delay_ms,
            api_base_url=config.executor.api_base_url,
            http_client=http_client,
            resources=ResourceManager(config.skills_dir),
        )
        analyzer = FeedbackAnalyzer()
        feedback = FeedbackLoop(
            analyzer, SelfHealingEngine(completion, llm_deadline=deadline), registry
        )
        calendar = calendar if calendar is not None else InMemoryCalendarStore()

        if config.builtin_skills:
            register_builtin_capabilities(registry, executor, calendar, analyzer=analyzer)
        if config.skills_dir is not None:
            load_capabilities_dir(registry, config.skills_dir)

        return cls(
            registry=registry,
            store=store,
            disclosure=disclosure,
            selector=selector,
            executor=executor,
            feedback=feedback,
            calendar=calendar,
            completion=completion,
            sweeper=ContextSweeper(store, interval=config.sessions.sweep_interval_seconds),
            busy_policy=config.sessions.busy_policy,
            max_healing_attempts=config.executor.max_healing_attempts,
        )

    @staticmethod
    def _build_completion(
        config: ConciergeConfig, provider: LLMProvider | None
    ) -> CompletionClient | None:
        if not config.llm.enabled:
            return None
        model_config = config.completion_model
        if provider is None and model_config is not None:
            api_key = config.resolve_api_key(config.llm.model)
            if api_key is None:
                logger.warning(
                    "completion_disabled",
                    extra={"reason": "no API key", "llm.model": config.llm.model},
                )
                return None
            provider = create_llm_provider(model_config.provider, api_key)
        if provider is None:
            return None
        if model_config is not None:
            return CompletionClient.from_model_config(
                provider, model_config, default_deadline=config.llm.timeout_seconds
            )
        return CompletionClient(provider, default_deadline=config.llm.timeout_seconds)

    # -------------------------------------------------------------------------
    # Components
    # -------------------------------------------------------------------------

    @property
    def registry(self) -> CapabilityRegistry:
        return self._registry

    @property
    def store(self) -> SessionContextStore:
        return self._store

    @property
    def disclosure(self) -> DisclosureManager:
        return self._disclosure

    @property
    def executor(self) -> CapabilityExecutor:
        return self._executor

    @property
    def calendar(self) -> CalendarStore:
        return self._calendar

    @property
    def completion(self) -> CompletionClient | None:
        return self._completion

    @property
    def sweeper(self) -> ContextSweeper | None:
        return self._sweeper

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        await self._store.load()
        if self._sweeper is not None:
            await self._sweeper.start()

    async def stop(self) -> None:
        if self._sweeper is not None:
            await self._sweeper.stop()
        await self._store.flush()

    async def __aenter__(self) -> "SkillEngine":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    # -------------------------------------------------------------------------
    # Turns
    # -------------------------------------------------------------------------

    async def handle_turn(
        self,
        session_id: str,
        user_id: str,
        current_date: date,
        user_input: str,
    ) -> TurnResult:
        """Handle one user message for a session.

        Turns for the same session never overlap: with the "queue" policy a
        second turn waits for the first, with "reject" it is answered with a
        busy message straight away.
        """
        lock = self._store.session_lock(session_id)
        if lock.locked() and self._busy_policy == "reject":
            logger.warning("turn_rejected_busy", extra={"session.id": session_id})
            return TurnResult(BUSY_MESSAGE, success=False)

        async with lock:
            with log_context(session_id=session_id, user_id=user_id):
                await self._store.load()
                try:
                    self._store.get_or_create(session_id, user_id, current_date)
                    decision = await self._selector.select(session_id, user_input)
                    logger.debug("turn_decision", extra={"decision.kind": decision.kind})
                    return await self._dispatch(session_id, user_input, current_date, decision)
                finally:
                    await self._store.flush()

    async def _dispatch(
        self,
        session_id: str,
        user_input: str,
        today: date,
        decision: SelectorDecision,
    ) -> TurnResult:
        match decision:
            case SkillCallDecision():
                with log_context(capability=decision.capability_name):
                    return await self._run_skill(session_id, user_input, today, decision)
            case ChainDecision():
                return await self._run_chain(session_id, user_input, today, decision)
            case ClarificationDecision():
                return TurnResult(decision.message, success=True, decision=decision)
            case PendingDecision():
                message = (
                    f"Okay, I'll {_label(decision.capability_name)} once {decision.waiting_for}. "
                    f"I'll hold on to this for {_describe_timeout(decision.timeout)}."
                )
                return TurnResult(message, success=True, decision=decision)
            case NoMatchDecision():
                if decision.reason == "internal_error":
                    message = decision.suggestion or NO_MATCH_MESSAGE
                else:
                    message = " ".join(filter(None, [NO_MATCH_MESSAGE, decision.suggestion]))
                return TurnResult(message, success=False, decision=decision)

    async def _run_skill(
        self,
        session_id: str,
        user_input: str,
        today: date,
        decision: SkillCallDecision,
    ) -> TurnResult:
        name = decision.capability_name
        params = decision.params
        healing_attempts = 0
        while True:
            result = await self._executor.execute_with_retry(
                name, params, session_id=session_id, user_input=user_input, today=today
            )
            verdict = await self._feedback.handle_result(result, self._store.snapshot(session_id))
            if (
                verdict.should_retry
                and verdict.modified_params is not None
                and healing_attempts < self._max_healing_attempts
            ):
                healing_attempts += 1
                params = verdict.modified_params
                context = self._store.get(session_id)
                active = context.active_capability if context else None
                if active is not None and active.capability_name == name:
                    self._store.increment_retry(session_id)
                logger.info(
                    "self_healing_retry",
                    extra={"capability.name": name, "healing.attempt": healing_attempts},
                )
                continue
            break

        self._settle(session_id, name, result, verdict)
        message = verdict.user_message
        if verdict.should_retry:
            # Out of healing attempts: report the problem, not the retry
            message = verdict.analysis.user_message
        return TurnResult(message, success=result.ok, action=result, decision=decision)

    def _settle(
        self,
        session_id: str,
        name: str,
        result: ExecutionResult,
        verdict: FeedbackVerdict,
    ) -> None:
        """Leave the session ready for the next turn."""
        self._disclosure.reset(session_id)
        context = self._store.get(session_id)
        active = context.active_capability if context else None
        if active is None or active.capability_name != name:
            return
        if not result.ok and verdict.ask_user and verdict.fields_to_refill:
            fields = list(verdict.fields_to_refill)
            self._store.clear_slots(session_id, fields)
            self._store.transition(session_id, CapabilityStatus.FILLING)
            unfilled = {s.field for s in self._store.unfilled_slots(session_id)}
            awaiting = next((f for f in fields if f in unfilled), None)
            self._store.set_awaiting_field(session_id, awaiting)
            logger.debug(
                "capability_reopened",
                extra={"capability.name": name, "slots.refill": fields},
            )
            return
        self._store.clear_active_capability(session_id)

    async def _run_chain(
        self,
        session_id: str,
        user_input: str,
        today: date,
        decision: ChainDecision,
    ) -> TurnResult:
        outcomes: dict[str, bool] = {}
        messages: list[str] = []
        last: ExecutionResult | None = None
        for step in decision.steps:
            if step.depends_on is not None and not outcomes.get(step.depends_on, False):
                messages.append(
                    f"I skipped {_label(step.capability_name)} because "
                    f"{_label(step.depends_on)} did not go through."
                )
                outcomes[step.capability_name] = False
                continue
            with log_context(capability=step.capability_name):
                result = await self._executor.execute_with_retry(
                    step.capability_name,
                    step.params,
                    session_id=session_id,
                    user_input=user_input,
                    today=today,
                )
            outcomes[step.capability_name] = result.ok
            messages.append(self._feedback.analyzer.analyze(result).user_message)
            last = result
        self._disclosure.reset(session_id)
        return TurnResult(
            " ".join(messages),
            success=all(outcomes.values()),
            action=last,
            decision=decision,
        )
