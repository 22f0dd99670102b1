"""Per-turn decision protocol.

Phase 1 picks a capability: an active capability still collecting slots wins,
then a pending capability whose trigger appears in the input, then a match
over the summary tier of every enabled capability (completion service first,
keyword fallback when it is unavailable, unsure or off-schema).

Phase 2 loads the instructions tier of the chosen capability and resolves its
slots, again completion first with type-directed extraction as the fallback.

Phase 3 emits exactly one SelectorDecision. The selector is the only writer
of capability and slot state; execution status belongs to the executor.
"""

import logging
import re
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from concierge.llm.completion import CompletionClient, CompletionError
from concierge.skills.context import SessionContextStore
from concierge.skills.disclosure import DisclosureManager
from concierge.skills.prompts import build_match_prompt, build_slot_prompt
from concierge.skills.registry import CapabilityRegistry
from concierge.skills.responses import MatchReply, SlotReply, parse_reply
from concierge.skills.slots import SlotFillingEngine
from concierge.skills.types import (
    CapabilitySpec,
    CapabilityStatus,
    ChainDecision,
    ChainStep,
    ClarificationDecision,
    ClarificationQuestion,
    NoMatchDecision,
    PendingCapability,
    PendingDecision,
    SelectorDecision,
    SessionContext,
    SkillCallDecision,
    SlotFill,
    SlotSource,
)

logger = logging.getLogger(__name__)

DEFAULT_MATCH_FLOOR = 0.7
DEFAULT_FALLBACK_CONFIDENCE = 0.6
DEFAULT_MIN_KEYWORD_LENGTH = 3
DEFAULT_PENDING_TIMEOUT = 300
# Confidence given to LLM-extracted params that carry no per-field score
LLM_PARAM_CONFIDENCE = 0.9

MATCH_CONFIDENCE_VAR = "selector.match_confidence"

# Where a keyword came from decides how much a hit on it counts
_SOURCE_WEIGHTS = {"name": 3.0, "tags": 2.0, "when_to_use": 1.0, "description": 1.0}

_STOPWORDS = frozenset(
    {
        "the", "and", "for", "with", "from", "into", "about", "this", "that",
        "when", "user", "users", "wants", "want", "use", "used", "using", "can",
        "will", "should", "would", "not", "are", "was", "has", "have", "one",
        "any", "all", "some", "other", "such", "like", "need", "needs", "asks",
        "ask", "someone", "their", "them", "they", "you", "your", "please",
    }
)  # fmt: skip

_WORD_RE = re.compile(r"[a-z0-9]+")
_WAIT_RE = re.compile(
    r"\b(?:once|after|when|as soon as)\s+(.+?)(?:[,.;!?]|$)", re.IGNORECASE
)
_WAIT_EVENT_RE = re.compile(
    r"\b(?:is|are|has|have|gets?|comes?|arrives?|approved|confirmed|done|finished|ready|signed)\b",
    re.IGNORECASE,
)


@dataclass(slots=True)
class CapabilityMatch:
    spec: CapabilitySpec
    confidence: float
    reasoning: str
    source: str


def _normalize(word: str) -> str:
    """Plural-insensitive form of a word."""
    if len(word) > 3 and word.endswith("s") and not word.endswith("ss"):
        return word[:-1]
    return word


def detect_wait_condition(user_input: str) -> str | None:
    """The event a request says to wait for ("once the budget is approved")."""
    for match in _WAIT_RE.finditer(user_input):
        clause = match.group(1).strip()
        if _WAIT_EVENT_RE.search(clause):
            return clause
    return None


class CapabilitySelector:
    """Decides, per turn, whether to call, clarify, defer, chain or give up."""

    def __init__(
        self,
        registry: CapabilityRegistry,
        store: SessionContextStore,
        disclosure: DisclosureManager,
        slots: SlotFillingEngine,
        completion: CompletionClient | None = None,
        *,
        match_confidence_floor: float = DEFAULT_MATCH_FLOOR,
        fallback_confidence: float = DEFAULT_FALLBACK_CONFIDENCE,
        min_keyword_length: int = DEFAULT_MIN_KEYWORD_LENGTH,
        trust_llm_no_match: bool = True,
        pending_timeout: int = DEFAULT_PENDING_TIMEOUT,
        llm_deadline: float | None = None,
    ):
        self._registry = registry
        self._store = store
        self._disclosure = disclosure
        self._slots = slots
        self._completion = completion
        self._floor = match_confidence_floor
        self._fallback_confidence = fallback_confidence
        self._min_keyword_length = min_keyword_length
        self._trust_llm_no_match = trust_llm_no_match
        self._pending_timeout = pending_timeout
        self._llm_deadline = llm_deadline
        self._keyword_cache: dict[str, tuple[CapabilitySpec, dict[str, float]]] = {}

    async def select(self, session_id: str, user_input: str) -> SelectorDecision:
        """Run the three phases for one turn. Never raises."""
        try:
            return await self._select(session_id, user_input)
        except Exception:
            logger.exception("selector_failed", extra={"session.id": session_id})
            return NoMatchDecision(
                reason="internal_error",
                suggestion="Something went wrong while I was working out your request. Please try again.",
            )

    async def _select(self, session_id: str, user_input: str) -> SelectorDecision:
        context = self._store.snapshot(session_id)

        # Phase 1: continue, resume, or match
        active = context.active_capability
        if active is not None:
            if active.status == CapabilityStatus.FILLING and self._registry.is_enabled(
                active.capability_name
            ):
                spec = self._registry.get(active.capability_name)
                logger.debug(
                    "capability_continued",
                    extra={"session.id": session_id, "capability.name": spec.name},
                )
                return await self._resolve_slots(session_id, spec, user_input)
            # Leftover state from an abandoned turn
            self._store.clear_active_capability(session_id)
            self._disclosure.reset(session_id)

        if resumed := self._resume_pending(session_id, user_input):
            return await self._resolve_slots(session_id, resumed, user_input)

        outcome = await self._match(session_id, user_input, context)
        if not isinstance(outcome, CapabilityMatch):
            return outcome

        logger.info(
            "capability_selected",
            extra={
                "session.id": session_id,
                "capability.name": outcome.spec.name,
                "selector.source": outcome.source,
                "selector.confidence": outcome.confidence,
            },
        )
        self._activate(session_id, outcome.spec, outcome.confidence)
        return await self._resolve_slots(session_id, outcome.spec, user_input, outcome.reasoning)

    # -------------------------------------------------------------------------
    # Phase 1
    # -------------------------------------------------------------------------

    def _activate(self, session_id: str, spec: CapabilitySpec, confidence: float) -> None:
        self._store.set_active_capability(session_id, spec)
        self._store.set_variable(session_id, MATCH_CONFIDENCE_VAR, confidence)
        self._disclosure.select(session_id, spec)

    def _resume_pending(self, session_id: str, user_input: str) -> CapabilitySpec | None:
        pending = self._store.check_pending_trigger(session_id, user_input)
        if pending is None or not self._registry.is_enabled(pending.capability_name):
            return None
        self._store.remove_pending(session_id, pending.capability_name)
        spec = self._registry.get(pending.capability_name)
        self._activate(session_id, spec, 1.0)
        self._store.fill_slots(
            session_id,
            [
                SlotFill(name, value, 1.0, SlotSource.CONTEXT)
                for name, value in pending.partial_params.items()
                if spec.get_field(name) is not None
            ],
        )
        logger.info(
            "pending_capability_resumed",
            extra={"session.id": session_id, "capability.name": spec.name},
        )
        return spec

    async def _match(
        self, session_id: str, user_input: str, context: SessionContext
    ) -> CapabilityMatch | ChainDecision | NoMatchDecision:
        specs = self._registry.list_enabled()
        if not specs:
            return NoMatchDecision(
                reason="no_capabilities",
                suggestion="No capabilities are available right now.",
            )
        self._disclosure.load_summary(session_id, specs)

        reply = await self._ask_match(user_input, specs, context)
        if reply is not None:
            if reply.chain and (chain := self._validate_chain(reply)):
                logger.info(
                    "capability_chain_selected",
                    extra={"session.id": session_id, "chain.length": len(chain.steps)},
                )
                return chain
            if reply.confidence >= self._floor:
                if reply.matched_capability is None and self._trust_llm_no_match:
                    return NoMatchDecision(reason="no_match", suggestion=self._suggestion(specs))
                if reply.matched_capability and self._registry.is_enabled(reply.matched_capability):
                    return CapabilityMatch(
                        self._registry.get(reply.matched_capability),
                        reply.confidence,
                        reply.reasoning,
                        "llm",
                    )
            logger.debug(
                "llm_match_not_used",
                extra={
                    "capability.name": reply.matched_capability,
                    "selector.confidence": reply.confidence,
                },
            )

        if match := self.keyword_match(user_input, specs):
            return match
        return NoMatchDecision(reason="no_match", suggestion=self._suggestion(specs))

    async def _ask_match(
        self, user_input: str, specs: list[CapabilitySpec], context: SessionContext
    ) -> MatchReply | None:
        if self._completion is None:
            return None
        prompt = build_match_prompt(user_input, specs, context)
        try:
            text = await self._completion.complete(prompt.system, prompt.user, self._llm_deadline)
        except CompletionError as e:
            logger.debug("llm_match_fallback", extra={"error.message": str(e)})
            return None
        return parse_reply(text, MatchReply)

    def _validate_chain(self, reply: MatchReply) -> ChainDecision | None:
        """A chain is used only if every step is runnable as given."""
        steps: list[ChainStep] = []
        seen: set[str] = set()
        for step in reply.chain or []:
            if not self._registry.is_enabled(step.capability):
                return None
            spec = self._registry.get(step.capability)
            if not spec.composable:
                return None
            if any(name not in step.params for name in spec.required_fields):
                return None
            if any(spec.get_field(name) is None for name in step.params):
                return None
            if step.depends_on is not None and step.depends_on not in seen:
                return None
            steps.append(ChainStep(spec.name, dict(step.params), step.depends_on))
            seen.add(spec.name)
        if len(steps) < 2:
            return None
        return ChainDecision(steps=steps, reasoning=reply.reasoning)

    def _keywords(self, spec: CapabilitySpec) -> dict[str, float]:
        cached = self._keyword_cache.get(spec.name)
        if cached is not None and cached[0] is spec:
            return cached[1]
        sources = {
            "name": spec.name.replace("_", " ").replace("-", " "),
            "tags": " ".join(spec.tags),
            "when_to_use": spec.when_to_use,
            "description": spec.description,
        }
        weights: dict[str, float] = {}
        for source, text in sources.items():
            for word in _WORD_RE.findall(text.lower()):
                if len(word) < self._min_keyword_length or word in _STOPWORDS:
                    continue
                key = _normalize(word)
                weights[key] = max(weights.get(key, 0.0), _SOURCE_WEIGHTS[source])
        self._keyword_cache[spec.name] = (spec, weights)
        return weights

    def keyword_match(
        self, user_input: str, specs: list[CapabilitySpec]
    ) -> CapabilityMatch | None:
        """Deterministic match: longest weighted keyword hit, registration order on ties."""
        words = {_normalize(w) for w in _WORD_RE.findall(user_input.lower())}
        best: tuple[float, CapabilitySpec, str] | None = None
        for spec in specs:
            hits = [
                (len(keyword) * weight, keyword)
                for keyword, weight in self._keywords(spec).items()
                if keyword in words
            ]
            if not hits:
                continue
            score, keyword = max(hits)
            if best is None or score > best[0]:
                best = (score, spec, keyword)
        if best is None:
            return None
        score, spec, keyword = best
        return CapabilityMatch(
            spec,
            self._fallback_confidence,
            f"keyword '{keyword}' (score {score:g})",
            "keyword",
        )

    def _suggestion(self, specs: list[CapabilitySpec]) -> str:
        names = ", ".join(s.name.replace("_", " ") for s in specs)
        return f"I can help with: {names}."

    # -------------------------------------------------------------------------
    # Phase 2
    # -------------------------------------------------------------------------

    async def _resolve_slots(
        self,
        session_id: str,
        spec: CapabilitySpec,
        user_input: str,
        reasoning: str = "",
    ) -> SelectorDecision:
        self._disclosure.select(session_id, spec)
        self._store.transition(session_id, CapabilityStatus.FILLING)
        context = self._store.snapshot(session_id)
        known = self._store.filled_params(session_id)

        reply = await self._ask_slots(user_input, spec, context, known)
        if reply is not None:
            decision = self._apply_slot_reply(session_id, spec, reply, known)
            if decision is not None:
                return decision

        result = self._slots.process_input(user_input, spec, context)
        self._store.fill_slots(session_id, result.filled_slots)
        if spec.deferred_allowed and (waiting_for := detect_wait_condition(user_input)):
            return self._defer(session_id, spec, waiting_for)
        return self._conclude(session_id, spec, reasoning)

    async def _ask_slots(
        self,
        user_input: str,
        spec: CapabilitySpec,
        context: SessionContext,
        known: dict[str, Any],
    ) -> SlotReply | None:
        if self._completion is None:
            return None
        prompt = build_slot_prompt(user_input, spec, context, known)
        try:
            text = await self._completion.complete(prompt.system, prompt.user, self._llm_deadline)
        except CompletionError as e:
            logger.debug("llm_slots_fallback", extra={"error.message": str(e)})
            return None
        return parse_reply(text, SlotReply)

    def _slot_reply_mismatch(
        self, spec: CapabilitySpec, reply: SlotReply, known: dict[str, Any]
    ) -> str | None:
        unknown = [name for name in reply.params if spec.get_field(name) is None]
        if unknown:
            return f"unknown fields {unknown}"
        if reply.clarification and spec.get_field(reply.clarification.field) is None:
            return f"clarification about unknown field {reply.clarification.field}"
        if any(spec.get_field(name) is None for name in reply.missing_fields):
            return "missing_fields names unknown fields"
        if reply.status == "pending" and not spec.deferred_allowed:
            return "pending status for a capability that cannot be deferred"
        if reply.status == "complete":
            merged = known | reply.params
            if missing := [f for f in spec.required_fields if merged.get(f) in (None, "", [])]:
                return f"complete status with missing required fields {missing}"
        return None

    def _apply_slot_reply(
        self,
        session_id: str,
        spec: CapabilitySpec,
        reply: SlotReply,
        known: dict[str, Any],
    ) -> SelectorDecision | None:
        if mismatch := self._slot_reply_mismatch(spec, reply, known):
            logger.warning(
                "llm_slot_reply_mismatch",
                extra={"capability.name": spec.name, "reply.problem": mismatch},
            )
            return None

        self._store.fill_slots(
            session_id,
            [
                SlotFill(
                    name,
                    value,
                    reply.field_confidence.get(name, LLM_PARAM_CONFIDENCE),
                    SlotSource.USER_INPUT,
                )
                for name, value in reply.params.items()
                if value is not None
            ],
        )
        if reply.status == "pending":
            return self._defer(session_id, spec, (reply.waiting_for or "").strip())

        question = None
        if reply.clarification is not None:
            question = ClarificationQuestion(
                reply.clarification.field, reply.clarification.question
            )
        return self._conclude(session_id, spec, reply.reasoning, question)

    # -------------------------------------------------------------------------
    # Phase 3
    # -------------------------------------------------------------------------

    def _conclude(
        self,
        session_id: str,
        spec: CapabilitySpec,
        reasoning: str,
        question: ClarificationQuestion | None = None,
    ) -> SkillCallDecision | ClarificationDecision:
        check = self._store.check_required_slots(session_id, spec)
        params = self._store.filled_params(session_id)
        if check.complete:
            self._store.set_awaiting_field(session_id, None)
            self._disclosure.confirm(session_id, spec)
            self._store.transition(session_id, CapabilityStatus.EXECUTING)
            confidence = self._store.get_variable(session_id, MATCH_CONFIDENCE_VAR, 1.0)
            return SkillCallDecision(spec.name, params, confidence, reasoning)

        questions = self._slots.build_questions(spec, check.missing_fields, params)
        if question is not None and question.field in check.missing_fields:
            questions = [question]
        self._store.set_awaiting_field(session_id, questions[0].field if questions else None)
        logger.debug(
            "clarification_needed",
            extra={"capability.name": spec.name, "slots.missing": check.missing_fields},
        )
        return ClarificationDecision(spec.name, check.missing_fields, questions)

    def _defer(
        self, session_id: str, spec: CapabilitySpec, waiting_for: str
    ) -> PendingDecision:
        timeout = spec.deferred_timeout or self._pending_timeout
        now = self._store.now()
        params = self._store.filled_params(session_id)
        self._store.add_pending(
            session_id,
            PendingCapability(
                capability_name=spec.name,
                partial_params=params,
                waiting_for=waiting_for,
                expires_at=now + timedelta(seconds=timeout),
                created_at=now,
            ),
        )
        self._store.clear_active_capability(session_id)
        self._disclosure.reset(session_id)
        logger.info(
            "capability_deferred",
            extra={
                "session.id": session_id,
                "capability.name": spec.name,
                "pending.timeout_s": timeout,
            },
        )
        return PendingDecision(spec.name, params, waiting_for, timeout)
