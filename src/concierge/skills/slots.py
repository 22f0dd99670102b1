"""Type-directed slot extraction.

Each field type has a pure extractor over ``(text, today)`` that returns an
Extraction with a confidence, or None. The engine only proposes values; the
session store commits them and enforces the confidence threshold, so a
low-confidence extraction can never mark a slot filled.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any

from concierge.skills.types import (
    CapabilitySpec,
    ClarificationQuestion,
    FieldSchema,
    FieldType,
    SessionContext,
    SlotFill,
    SlotSource,
)

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE_THRESHOLD = 0.8
DEFAULT_TIME = "09:00"

# Direct answers to the question asked on the previous turn
DIRECT_ANSWER_CONFIDENCE = 0.9
DIRECT_LIST_CONFIDENCE = 0.85
LIST_CUE_CONFIDENCE = 0.85
LOOSE_LIST_CONFIDENCE = 0.6
FREE_TEXT_CONFIDENCE = 0.7
QUOTED_TEXT_CONFIDENCE = 0.9
LABELLED_CONFIDENCE = 0.9
ENUM_CONFIDENCE = 0.95
NUMBER_CONFIDENCE = 0.9
BOOLEAN_CONFIDENCE = 0.9
BARE_HOUR_CONFIDENCE = 0.7
INFERRED_TIME_FACTOR = 0.8

_WEEKDAYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]
_MONTHS = {
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "may": 5, "jun": 6,
    "jul": 7, "aug": 8, "sep": 9, "oct": 10, "nov": 11, "dec": 12,
}  # fmt: skip

_MONTH = (
    r"(jan(?:uary)?|feb(?:ruary)?|mar(?:ch)?|apr(?:il)?|may|june?|july?|"
    r"aug(?:ust)?|sep(?:t(?:ember)?)?|oct(?:ober)?|nov(?:ember)?|dec(?:ember)?)"
)
_MERIDIEM = r"(am|pm|a\.m\.|p\.m\.)(?![a-z])"

_ISO_DATE_RE = re.compile(r"\b(\d{4})-(\d{1,2})-(\d{1,2})\b")
_SHORT_DATE_RE = re.compile(
    r"(?<![\d\-/:])(\d{1,2})[-/](\d{1,2})(?![\d\-/:])"
    r"(?!\s*(?:am|pm|a\.m\.|p\.m\.|o'?clock))"
    r"(?!\s*(?:people|persons|guests|attendees|participants|pax|seats|rooms|tickets|items"
    r"|times|days|nights|hours|hrs|minutes|mins|weeks|months)\b)"
)
_MONTH_DAY_RE = re.compile(rf"\b{_MONTH}\.?\s+(\d{{1,2}})(?:st|nd|rd|th)?\b")
_DAY_MONTH_RE = re.compile(rf"\b(\d{{1,2}})(?:st|nd|rd|th)?\s+(?:of\s+)?{_MONTH}\b")
_RELATIVE_RE = re.compile(r"\b(?:the\s+)?(day after tomorrow|tomorrow|today)\b")
_WEEKDAY_RE = re.compile(rf"\b(?:(next|this|on)\s+)?({'|'.join(_WEEKDAYS)})\b")

_TIME_RANGE_RE = re.compile(
    rf"\b(\d{{1,2}})(?::(\d{{2}}))?\s*(?:-|to|until|till)\s*(\d{{1,2}})(?::(\d{{2}}))?\s*{_MERIDIEM}"
)
_CLOCK_RE = re.compile(rf"\b(\d{{1,2}}):(\d{{2}})(?:\s*{_MERIDIEM})?")
_HALF_PAST_RE = re.compile(rf"\b(half|quarter) (past|to) (\d{{1,2}})(?:\s*{_MERIDIEM})?")
_HOUR_MERIDIEM_RE = re.compile(rf"\b(\d{{1,2}})\s*{_MERIDIEM}")
_OCLOCK_RE = re.compile(rf"\b(\d{{1,2}})\s*o'?clock(?:\s*{_MERIDIEM})?")
_NOON_RE = re.compile(r"\b(noon|midday|midnight)\b")
_BARE_HOUR_RE = re.compile(
    r"\bat\s+(\d{1,2})\b(?!\s*(?::|[-/]\d|am\b|pm\b|a\.m\.|p\.m\.|o'?clock))"
)

_RANGE_GAP_RE = re.compile(r"\s*(?:-|–|to|until|till|through|thru|and)\s*")
_NUMBER_RE = re.compile(r"(?<![\w.])-?(?:\d{1,3}(?:,\d{3})+|\d+)(?:\.\d+)?(?![\w.])")
_QUOTED_RE = re.compile(r"[\"“']([^\"”']{2,})[\"”']")
# Quotes that open and close on word boundaries, so "Bob's" is not a quote
_QUOTED_SPAN_RE = re.compile(r"(?<!\w)[\"“']([^\"“”]+?)[\"”'](?!\w)")
_QUOTE_CHARS = "\"“'"
_TITLE_CUE_RE = re.compile(
    r"\b(?:titled|called|named|about|regarding|for)\s+(.+)$", re.IGNORECASE
)
_LIST_CUE_RE = re.compile(
    r"\b(?:with|invite|inviting|notify|tell|cc)\s+(.+)$", re.IGNORECASE
)
_LIST_SPLIT_RE = re.compile(r"\s*(?:,|;|&|\band\b)\s*", re.IGNORECASE)

# Words that end a list or free-text phrase picked up after a cue
_PHRASE_STOPWORDS = frozenset(
    {
        "today", "tomorrow", "tonight", "at", "on", "from", "to", "in", "next",
        "this", "by", "before", "after", "until", "between", "starting", "that",
        "about", "regarding", "for", "please", "via", "using",
        *_WEEKDAYS,
    }
)  # fmt: skip

# A list also ends where a name or a labelled value starts
_LIST_STOPWORDS = _PHRASE_STOPWORDS | {"titled", "called", "named", "title", "subject"}
_LABEL_VERBS = frozenset({"is", "are", "=", ":"})
_MASK = "|"

_POSITIVE = frozenset(
    {"yes", "yeah", "yep", "sure", "true", "ok", "okay", "need", "needs", "want", "please", "required"}
)
_NEGATIVE = frozenset(
    {"no", "not", "don't", "dont", "without", "false", "nope", "never", "skip"}
)

_ANSWER_PREFIX_RE = re.compile(
    r"^(?:it's|it is|its|the \w+ is|call it|make it|use|let's say)\s+", re.IGNORECASE
)


@dataclass(frozen=True, slots=True)
class Extraction:
    value: Any
    confidence: float
    source: SlotSource = SlotSource.USER_INPUT


@dataclass(frozen=True, slots=True)
class _Match:
    start: int
    end: int
    value: Any
    confidence: float
    source: SlotSource = SlotSource.USER_INPUT


@dataclass(slots=True)
class SlotFillResult:
    filled_slots: list[SlotFill] = field(default_factory=list)
    remaining_fields: list[str] = field(default_factory=list)
    next_question: str | None = None
    questions: list[ClarificationQuestion] = field(default_factory=list)
    # Every extraction, including those below the threshold
    candidates: list[SlotFill] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.remaining_fields


# =============================================================================
# Span helpers
# =============================================================================


def _add(matches: list[_Match], match: _Match) -> None:
    """Append unless it overlaps a match found by a higher-priority pattern."""
    for other in matches:
        if match.start < other.end and other.start < match.end:
            return
    matches.append(match)


def _pick(matches: list[_Match], text: str, *, end_bound: bool) -> _Match | None:
    """Members of a range for start and end fields; otherwise the most confident match.

    Ties go to the earliest mention.
    """
    if not matches:
        return None
    ranged = len(matches) >= 2 and _RANGE_GAP_RE.fullmatch(
        text[matches[0].end : matches[1].start]
    )
    if end_bound:
        return matches[1] if ranged else None
    if ranged:
        return matches[0]
    return max(matches, key=lambda m: m.confidence)


def is_end_bound(name: str) -> bool:
    """Whether a field holds the end of a range (end_time, end_date, time_end)."""
    lowered = name.lower()
    return lowered.startswith("end") or lowered.endswith("_end")


def _strip_spans(text: str, matches: list[_Match]) -> str:
    chars = list(text)
    for m in matches:
        chars[m.start : m.end] = " " * (m.end - m.start)
    return "".join(chars)


# =============================================================================
# Dates
# =============================================================================


def _safe_date(year: int, month: int, day: int) -> date | None:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def _resolve_weekday(today: date, weekday: int, modifier: str | None) -> date:
    if modifier == "next":
        return today + timedelta(days=7 - today.weekday() + weekday)
    ahead = (weekday - today.weekday()) % 7
    if ahead == 0 and modifier != "this":
        ahead = 7
    return today + timedelta(days=ahead)


def find_dates(text: str, today: date) -> list[_Match]:
    """All date mentions in ``text``, in order of appearance."""
    lowered = text.lower()
    matches: list[_Match] = []

    for m in _ISO_DATE_RE.finditer(lowered):
        if value := _safe_date(int(m.group(1)), int(m.group(2)), int(m.group(3))):
            _add(matches, _Match(m.start(), m.end(), value, 0.95))

    for m in _RELATIVE_RE.finditer(lowered):
        offset = {"today": 0, "tomorrow": 1, "day after tomorrow": 2}[m.group(1)]
        _add(matches, _Match(m.start(), m.end(), today + timedelta(days=offset), 0.95))

    for m in _MONTH_DAY_RE.finditer(lowered):
        if value := _safe_date(today.year, _MONTHS[m.group(1)[:3]], int(m.group(2))):
            _add(matches, _Match(m.start(), m.end(), value, 0.9))
    for m in _DAY_MONTH_RE.finditer(lowered):
        if value := _safe_date(today.year, _MONTHS[m.group(2)[:3]], int(m.group(1))):
            _add(matches, _Match(m.start(), m.end(), value, 0.9))

    for m in _SHORT_DATE_RE.finditer(lowered):
        if value := _safe_date(today.year, int(m.group(1)), int(m.group(2))):
            _add(matches, _Match(m.start(), m.end(), value, 0.9))

    for m in _WEEKDAY_RE.finditer(lowered):
        modifier = m.group(1)
        value = _resolve_weekday(today, _WEEKDAYS.index(m.group(2)), modifier)
        _add(matches, _Match(m.start(), m.end(), value, 0.9 if modifier == "next" else 0.85))

    matches.sort(key=lambda x: x.start)
    return matches


def extract_date(text: str, today: date, *, end_bound: bool = False) -> Extraction | None:
    match = _pick(find_dates(text, today), text, end_bound=end_bound)
    if match is None:
        return None
    return Extraction(match.value.isoformat(), match.confidence, match.source)


# =============================================================================
# Times
# =============================================================================


def _apply_meridiem(hour: int, meridiem: str | None) -> int:
    if meridiem is None:
        return hour
    if meridiem.startswith("p") and hour < 12:
        return hour + 12
    if meridiem.startswith("a") and hour == 12:
        return 0
    return hour


def _period_hour(hour: int, text: str) -> int:
    """Shift an hour without am/pm using period words such as "afternoon"."""
    if hour < 12 and any(w in text for w in ("afternoon", "evening", "tonight")):
        return hour + 12
    return hour


def _infer_hour(hour: int, text: str) -> int:
    """Period words first, then office hours: 1 to 7 without am/pm means pm."""
    shifted = _period_hour(hour, text)
    if shifted != hour or "morning" in text:
        return shifted
    return hour + 12 if 1 <= hour <= 7 else hour


def _fmt_time(hour: int, minute: int) -> str | None:
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        return None
    return f"{hour:02d}:{minute:02d}"


def find_times(text: str) -> list[_Match]:
    """All time mentions in ``text``, in order of appearance, as HH:MM."""
    lowered = text.lower()
    matches: list[_Match] = []

    def add(start: int, end: int, hour: int, minute: int, confidence: float, source=SlotSource.USER_INPUT) -> None:
        if value := _fmt_time(hour, minute):
            _add(matches, _Match(start, end, value, confidence, source))

    for m in _TIME_RANGE_RE.finditer(lowered):
        meridiem = m.group(5)
        end_hour = _apply_meridiem(int(m.group(3)), meridiem)
        start_hour = int(m.group(1))
        if meridiem.startswith("p") and start_hour < 12 and start_hour + 12 <= end_hour:
            start_hour += 12
        add(m.start(1), m.end(2) if m.group(2) else m.end(1), start_hour, int(m.group(2) or 0), 0.9)
        add(m.start(3), m.end(), end_hour, int(m.group(4) or 0), 0.9)

    for m in _CLOCK_RE.finditer(lowered):
        hour = int(m.group(1))
        hour = _apply_meridiem(hour, m.group(3)) if m.group(3) else _period_hour(hour, lowered)
        add(m.start(), m.end(), hour, int(m.group(2)), 0.95)

    for m in _HALF_PAST_RE.finditer(lowered):
        hour = int(m.group(3))
        minute = 30 if m.group(1) == "half" else 15
        if m.group(2) == "to":
            hour, minute = hour - 1, 60 - minute
        hour = _apply_meridiem(hour, m.group(4)) if m.group(4) else _infer_hour(hour, lowered)
        add(m.start(), m.end(), hour, minute, 0.9)

    for m in _HOUR_MERIDIEM_RE.finditer(lowered):
        add(m.start(), m.end(), _apply_meridiem(int(m.group(1)), m.group(2)), 0, 0.9)

    for m in _OCLOCK_RE.finditer(lowered):
        hour = int(m.group(1))
        hour = _apply_meridiem(hour, m.group(2)) if m.group(2) else _infer_hour(hour, lowered)
        add(m.start(), m.end(), hour, 0, 0.9)

    for m in _NOON_RE.finditer(lowered):
        add(m.start(), m.end(), 0 if m.group(1) == "midnight" else 12, 0, 0.9)

    for m in _BARE_HOUR_RE.finditer(lowered):
        hour = _infer_hour(int(m.group(1)), lowered)
        add(m.start(1), m.end(1), hour, 0, BARE_HOUR_CONFIDENCE, SlotSource.INFERRED)

    matches.sort(key=lambda x: x.start)
    return matches


def extract_time(text: str, *, end_bound: bool = False) -> Extraction | None:
    match = _pick(find_times(text), text, end_bound=end_bound)
    if match is None:
        return None
    return Extraction(match.value, match.confidence, match.source)


def extract_datetime(
    text: str, today: date, *, default_time: str = DEFAULT_TIME, end_bound: bool = False
) -> Extraction | None:
    """Date plus time; a date alone gets ``default_time`` at reduced confidence."""
    day = extract_date(text, today, end_bound=end_bound)
    if day is None:
        return None
    time = extract_time(text, end_bound=end_bound)
    if time is None:
        return Extraction(
            f"{day.value}T{default_time}",
            round(day.confidence * INFERRED_TIME_FACTOR, 4),
            SlotSource.INFERRED,
        )
    source = SlotSource.INFERRED if time.source == SlotSource.INFERRED else day.source
    return Extraction(
        f"{day.value}T{time.value}", min(day.confidence, time.confidence), source
    )


# =============================================================================
# Scalars
# =============================================================================


def extract_number(
    text: str,
    today: date,
    *,
    minimum: float | None = None,
    maximum: float | None = None,
) -> Extraction | None:
    """First numeric token that is not part of a date or time."""
    masked = _strip_spans(text, find_dates(text, today) + find_times(text))
    match = _NUMBER_RE.search(masked)
    if match is None:
        return None
    raw = match.group(0).replace(",", "")
    value: int | float = float(raw) if "." in raw else int(raw)
    if minimum is not None and value < minimum:
        return None
    if maximum is not None and value > maximum:
        return None
    return Extraction(value, NUMBER_CONFIDENCE)


def extract_boolean(text: str) -> Extraction | None:
    words = set(re.findall(r"[a-z']+", text.lower()))
    # Negation wins: "no, I don't need a hotel"
    if words & _NEGATIVE:
        return Extraction(False, BOOLEAN_CONFIDENCE)
    if words & _POSITIVE:
        return Extraction(True, BOOLEAN_CONFIDENCE)
    return None


def extract_enum(text: str, options: tuple[str, ...]) -> Extraction | None:
    """Longest allowed value contained in the text, case-insensitively."""
    lowered = text.lower()
    best: str | None = None
    for option in options:
        needle = option.lower()
        variants = {needle, needle.replace("_", " "), needle.replace("-", " ")}
        if any(re.search(rf"\b{re.escape(v)}\b", lowered) for v in variants):
            if best is None or len(option) > len(best):
                best = option
    if best is None:
        return None
    return Extraction(best, ENUM_CONFIDENCE)


def _trim_phrase(phrase: str) -> str:
    """Cut a phrase at the first word that starts another detail (date, time, cue)."""
    kept: list[str] = []
    for word in phrase.split():
        bare = word.strip(".,;:!?").lower()
        if bare in _PHRASE_STOPWORDS or bare[:1].isdigit():
            break
        kept.append(word)
    return " ".join(kept).strip(" ,;:.!?")


def _trim_list_phrase(phrase: str) -> str:
    """Like _trim_phrase, but also stop at a naming cue, a label or a quote.

    "Alice, title is Sync" keeps only "Alice".
    """
    words = phrase.split()
    kept: list[str] = []
    for i, word in enumerate(words):
        bare = word.strip(".,;!?").lower()
        following = words[i + 1].lower() if i + 1 < len(words) else ""
        if (
            bare.rstrip(":=") in _LIST_STOPWORDS
            or bare[:1].isdigit()
            or word.startswith((_MASK, *_QUOTE_CHARS))
            or following in _LABEL_VERBS
        ):
            break
        if bare.endswith((":", "=")):
            # "Alice and Bob: agenda" ends the list at Bob; "Alice, room: 4" starts a label
            if not kept or not kept[-1].endswith((",", ";")):
                kept.append(word)
            break
        kept.append(word)
    return " ".join(kept).strip(" ,;:=.!?")


def _mask_spans(text: str, spans: list[tuple[int, int]]) -> str:
    """Replace each span with a marker word that ends any phrase running into it."""
    for start, end in sorted(spans, reverse=True):
        text = f"{text[:start]} {_MASK} {text[end:]}"
    return text


def split_list(text: str) -> list[str]:
    items = (item.strip(" .!?\"'") for item in _LIST_SPLIT_RE.split(text))
    return [item for item in items if item and item != _MASK]


def extract_list(text: str, today: date | None = None) -> Extraction | None:
    """Items after a cue such as "with X, Y and Z"; a bare delimited list is weaker.

    Quoted phrases and, given ``today``, dates and times belong to other
    fields and are masked out first.
    """
    spans = [m.span() for m in _QUOTED_SPAN_RE.finditer(text)]
    if today is not None:
        spans += [(m.start, m.end) for m in find_dates(text, today) + find_times(text)]
    masked = _mask_spans(text, _merge_spans(spans))
    if cue := _LIST_CUE_RE.search(masked):
        items = split_list(_trim_list_phrase(cue.group(1)))
        if items:
            return Extraction(items, LIST_CUE_CONFIDENCE)
    if re.search(r",|&|\band\b", masked, re.IGNORECASE):
        items = [item for item in split_list(masked) if _MASK not in item]
        if len(items) > 1:
            return Extraction(items, LOOSE_LIST_CONFIDENCE)
    return None


def _merge_spans(spans: list[tuple[int, int]]) -> list[tuple[int, int]]:
    merged: list[tuple[int, int]] = []
    for start, end in sorted(spans):
        if merged and start < merged[-1][1]:
            merged[-1] = (merged[-1][0], max(end, merged[-1][1]))
        else:
            merged.append((start, end))
    return merged


def _label_pattern(name: str) -> re.Pattern[str]:
    label = re.escape(name.replace("_", " ")).replace(r"\ ", r"[\s_]")
    return re.compile(rf"\b{label}\s*(?:is|=|:)\s*(.+?)(?:[,;.]|\band\b|$)", re.IGNORECASE)


def extract_text(text: str, name: str, *, naming: bool = True) -> Extraction | None:
    """Free text for a field without an enum.

    A labelled value ("destination is Paris") or a quoted phrase after a
    naming cue is explicit enough to fill. Anything picked up from a loose
    cue ("about the budget") stays below the default threshold. Only the
    ``naming`` field listens to cues; every other field needs its label.
    """
    if labelled := _label_pattern(name).search(text):
        value = labelled.group(1).strip(" \"'")
        if value:
            return Extraction(value, LABELLED_CONFIDENCE)
    if not naming:
        return None
    if cue := _TITLE_CUE_RE.search(text):
        tail = cue.group(1)
        if quoted := _QUOTED_RE.match(tail.strip()):
            return Extraction(quoted.group(1).strip(), QUOTED_TEXT_CONFIDENCE)
        if phrase := _trim_phrase(tail):
            return Extraction(phrase, FREE_TEXT_CONFIDENCE)
    return None


def _direct_answer(text: str) -> str:
    answer = _ANSWER_PREFIX_RE.sub("", text.strip())
    return answer.strip(" .!?\"'")


# =============================================================================
# Questions
# =============================================================================


def _label(schema: FieldSchema) -> str:
    return schema.name.replace("_", " ")


def _format_value(value: Any) -> str:
    if isinstance(value, list | tuple):
        return ", ".join(str(v) for v in value)
    return str(value)


def default_question(schema: FieldSchema) -> str:
    """Generic prompt for a field that has no clarification_prompt."""
    label = _label(schema)
    match schema.type:
        case FieldType.DATE:
            return f"Which date should I use for the {label}?"
        case FieldType.TIME:
            return f"What time should I use for the {label}?"
        case FieldType.DATETIME:
            return f"When should the {label} be (date and time)?"
        case FieldType.NUMBER:
            return f"What {label} should I use?"
        case FieldType.BOOLEAN:
            return f"Should I set {label}? (yes or no)"
        case FieldType.ARRAY:
            return f"Who or what should be included in {label}?"
        case _ if schema.enum:
            return f"Which {label} would you like? Options: {', '.join(schema.enum)}."
        case _:
            return f"What is the {label}?"


# =============================================================================
# Engine
# =============================================================================


class SlotFillingEngine:
    """Extracts slot values from user input and builds clarification questions."""

    def __init__(
        self,
        *,
        confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
        max_questions_per_turn: int = 1,
        default_time: str = DEFAULT_TIME,
    ):
        self._threshold = confidence_threshold
        self._max_questions = max(1, max_questions_per_turn)
        self._default_time = default_time

    @property
    def confidence_threshold(self) -> float:
        return self._threshold

    def extract(
        self,
        user_input: str,
        schema: FieldSchema,
        today: date,
        *,
        awaited: bool = False,
        naming: bool = True,
    ) -> Extraction | None:
        """Extract one field.

        ``awaited`` marks a reply to a question about it; ``naming`` lets a
        string field take the phrase after "called", "titled" and the like.
        """
        end_bound = is_end_bound(schema.name)
        match schema.type:
            case FieldType.DATE:
                return extract_date(user_input, today, end_bound=end_bound)
            case FieldType.TIME:
                return extract_time(user_input, end_bound=end_bound)
            case FieldType.DATETIME:
                return extract_datetime(
                    user_input, today, default_time=self._default_time, end_bound=end_bound
                )
            case FieldType.NUMBER:
                v = schema.validation
                return extract_number(
                    user_input,
                    today,
                    minimum=v.min if v else None,
                    maximum=v.max if v else None,
                )
            case FieldType.BOOLEAN:
                hints = [w for w in schema.name.lower().split("_") if len(w) >= 4 and w != "need"]
                if awaited or any(h in user_input.lower() for h in hints):
                    return extract_boolean(user_input)
                return None
            case FieldType.ARRAY:
                if awaited:
                    items = split_list(_direct_answer(user_input))
                    return Extraction(items, DIRECT_LIST_CONFIDENCE) if items else None
                return extract_list(user_input, today)
            case FieldType.OBJECT:
                return self._extract_object(user_input)
            case _:
                if schema.enum:
                    return extract_enum(user_input, schema.enum)
                if awaited and (answer := _direct_answer(user_input)):
                    return Extraction(answer, DIRECT_ANSWER_CONFIDENCE)
                return extract_text(user_input, schema.name, naming=naming)

    def _extract_object(self, user_input: str) -> Extraction | None:
        raw = user_input.strip()
        if not raw.startswith("{"):
            return None
        try:
            value = json.loads(raw)
        except json.JSONDecodeError:
            return None
        return Extraction(value, DIRECT_ANSWER_CONFIDENCE) if isinstance(value, dict) else None

    def process_input(
        self,
        user_input: str,
        spec: CapabilitySpec,
        context: SessionContext,
    ) -> SlotFillResult:
        """Propose values for the unfilled slots of ``spec``.

        Known values come from the context's active capability when it is
        ``spec``. Only extractions at or above the threshold are returned in
        ``filled_slots``; the caller commits them to the store.
        """
        active = context.active_capability
        if active is not None and active.capability_name != spec.name:
            active = None
        known = {s.field: s.value for s in active.slots if s.filled} if active else {}
        awaiting = active.awaiting_field if active else None
        naming_field = naming_field_for(spec)

        result = SlotFillResult()
        for schema in spec.input_schema:
            if schema.name in known:
                continue
            extraction = self.extract(
                user_input,
                schema,
                context.current_date,
                awaited=schema.name == awaiting,
                naming=schema.name == naming_field,
            )
            if extraction is None:
                continue
            fill = SlotFill(schema.name, extraction.value, extraction.confidence, extraction.source)
            result.candidates.append(fill)
            if extraction.confidence >= self._threshold:
                result.filled_slots.append(fill)
            else:
                logger.debug(
                    "slot_below_threshold",
                    extra={
                        "capability.name": spec.name,
                        "slot.field": schema.name,
                        "slot.confidence": extraction.confidence,
                    },
                )

        merged = known | {f.field: f.value for f in result.filled_slots}
        result.remaining_fields = [f for f in spec.required_fields if f not in merged]
        result.questions = self.build_questions(spec, result.remaining_fields, merged)
        if result.questions:
            result.next_question = "\n".join(q.question for q in result.questions)
        return result

    def build_questions(
        self,
        spec: CapabilitySpec,
        missing: list[str],
        known: dict[str, Any],
    ) -> list[ClarificationQuestion]:
        """Questions for the first ``max_questions_per_turn`` missing fields.

        The first question is prefixed with the values already known, so the
        user is not asked again for what they already said.
        """
        questions = []
        for name in missing[: self._max_questions]:
            schema = spec.get_field(name)
            if schema is None:
                continue
            text = schema.clarification_prompt or default_question(schema)
            questions.append(ClarificationQuestion(field=name, question=text))

        defaults = {f.name for f in spec.input_schema if f.has_default and known.get(f.name) == f.default}
        stated = {k: v for k, v in known.items() if k not in defaults}
        if questions and stated:
            summary = ", ".join(f"{_label_for(spec, k)}: {_format_value(v)}" for k, v in stated.items())
            first = questions[0]
            questions[0] = ClarificationQuestion(
                field=first.field, question=f"I already have {summary}. {first.question}"
            )
        return questions


def naming_field_for(spec: CapabilitySpec) -> str | None:
    """The first required free-text field, which takes "called ..." phrases."""
    for schema in spec.input_schema:
        if schema.type == FieldType.STRING and not schema.enum and schema.name in spec.required_fields:
            return schema.name
    return None


def _label_for(spec: CapabilitySpec, name: str) -> str:
    schema = spec.get_field(name)
    return _label(schema) if schema else name
