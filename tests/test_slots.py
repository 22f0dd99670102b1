"""Tests for slot extraction and clarification questions."""

from datetime import date

import pytest

from concierge.skills.builtin import BOOK_MEETING_ROOM, SEND_NOTIFICATION
from concierge.skills.context import SessionContextStore
from concierge.skills.slots import (
    SlotFillingEngine,
    default_question,
    extract_boolean,
    extract_date,
    extract_datetime,
    extract_enum,
    extract_list,
    extract_number,
    extract_text,
    extract_time,
    is_end_bound,
    naming_field_for,
)
from concierge.skills.types import FieldSchema, FieldType, FieldValidation, SlotSource

TODAY = date(2025, 1, 15)  # a Wednesday


class TestDates:
    """Tests for date extraction."""

    @pytest.mark.parametrize(
        ("text", "expected"),
        [
            ("tomorrow", "2025-01-16"),
            ("the day after tomorrow", "2025-01-17"),
            ("on 2025-03-04 please", "2025-03-04"),
            ("march 3rd", "2025-03-03"),
            ("the 3rd of March", "2025-03-03"),
            ("1/20", "2025-01-20"),
            ("friday", "2025-01-17"),
            ("next monday", "2025-01-20"),
            ("on wednesday", "2025-01-22"),
            ("this wednesday", "2025-01-15"),
        ],
    )
    def test_resolves_relative_to_today(self, text: str, expected: str):
        extraction = extract_date(text, TODAY)
        assert extraction is not None
        assert extraction.value == expected

    def test_relative_dates_are_confident(self):
        assert extract_date("tomorrow", TODAY).confidence == 0.95

    def test_invalid_calendar_date_is_ignored(self):
        assert extract_date("2025-02-30", TODAY) is None

    def test_range_start_and_end(self):
        text = "from march 3 to march 5"
        assert extract_date(text, TODAY).value == "2025-03-03"
        assert extract_date(text, TODAY, end_bound=True).value == "2025-03-05"

    def test_end_needs_a_range(self):
        assert extract_date("march 3", TODAY, end_bound=True) is None

    def test_nothing_found(self):
        assert extract_date("sometime soon", TODAY) is None

    def test_count_is_not_a_date(self):
        extraction = extract_date("book a meeting for 2-3 people tomorrow at 10am", TODAY)
        assert extraction.value == "2025-01-16"

    def test_most_confident_mention_wins(self):
        assert extract_date("2-3 of us, tomorrow", TODAY).value == "2025-01-16"


class TestTimes:
    """Tests for time extraction."""

    @pytest.mark.parametrize(
        ("text", "expected"),
        [
            ("at 2pm", "14:00"),
            ("14:30", "14:30"),
            ("9:15 am", "09:15"),
            ("12am", "00:00"),
            ("half past 3", "15:30"),
            ("quarter to 10am", "09:45"),
            ("noon", "12:00"),
            ("4 o'clock", "16:00"),
            ("at 10 in the morning", "10:00"),
        ],
    )
    def test_formats_as_hh_mm(self, text: str, expected: str):
        extraction = extract_time(text)
        assert extraction is not None
        assert extraction.value == expected

    def test_bare_hour_is_inferred(self):
        extraction = extract_time("let's meet at 3")
        assert extraction.value == "15:00"
        assert extraction.source == SlotSource.INFERRED
        assert extraction.confidence < 0.8

    def test_shared_meridiem_range(self):
        assert extract_time("2-4pm").value == "14:00"
        assert extract_time("2-4pm", end_bound=True).value == "16:00"
        assert extract_time("from 9 to 11am").value == "09:00"
        assert extract_time("from 9 to 11am", end_bound=True).value == "11:00"

    def test_clock_range(self):
        text = "14:00 to 15:30"
        assert extract_time(text).value == "14:00"
        assert extract_time(text, end_bound=True).value == "15:30"

    def test_single_time_has_no_end(self):
        assert extract_time("at 2pm", end_bound=True) is None


class TestDatetime:
    """Tests for combined date and time extraction."""

    def test_date_and_time(self):
        extraction = extract_datetime("tomorrow at 3pm", TODAY)
        assert extraction.value == "2025-01-16T15:00"
        assert extraction.confidence == 0.9

    def test_date_alone_gets_default_time(self):
        extraction = extract_datetime("tomorrow", TODAY, default_time="08:30")
        assert extraction.value == "2025-01-16T08:30"
        assert extraction.source == SlotSource.INFERRED
        assert extraction.confidence < 0.8

    def test_time_alone_is_not_enough(self):
        assert extract_datetime("at 3pm", TODAY) is None


class TestScalars:
    """Tests for numbers, booleans, enums, lists and text."""

    def test_number_skips_dates_and_times(self):
        assert extract_number("tomorrow at 2pm for 4 people", TODAY).value == 4
        assert extract_number("on 2025-01-16 for 3 people", TODAY).value == 3

    def test_number_with_thousands_and_decimals(self):
        assert extract_number("budget 1,500 dollars", TODAY).value == 1500
        assert extract_number("about 2.5 hours", TODAY).value == 2.5

    def test_number_outside_bounds(self):
        assert extract_number("budget 5000", TODAY, maximum=2000) is None
        assert extract_number("budget 50", TODAY, minimum=100) is None

    @pytest.mark.parametrize(
        ("text", "expected"),
        [("yes please", True), ("sure", True), ("no, I don't need a hotel", False), ("skip it", False)],
    )
    def test_boolean(self, text: str, expected: bool):
        assert extract_boolean(text).value is expected

    def test_boolean_without_signal(self):
        assert extract_boolean("maybe later") is None

    def test_enum_prefers_longest_option(self):
        options = ("headquarters", "east campus", "online")
        assert extract_enum("book the East Campus room", options).value == "east campus"
        assert extract_enum("a large boardroom", ("large", "boardroom")).value == "boardroom"

    def test_enum_matches_underscored_values(self):
        assert extract_enum("set up a video call", ("video_call", "in_person")).value == "video_call"

    def test_enum_without_match(self):
        assert extract_enum("somewhere", ("online",)) is None

    def test_list_after_cue(self):
        extraction = extract_list("meeting with Alice, Bob and Carol tomorrow")
        assert extraction.value == ["Alice", "Bob", "Carol"]
        assert extraction.confidence >= 0.8

    @pytest.mark.parametrize(
        "text",
        [
            'book a meeting tomorrow at 2pm with Alice called "Sync"',
            "book a meeting tomorrow at 2pm with Alice, title is Sync",
            "book a meeting with Alice subject: budget",
            "with Alice Jan 20",
        ],
    )
    def test_list_stops_where_another_detail_starts(self, text: str):
        assert extract_list(text, TODAY).value == ["Alice"]

    def test_list_stops_before_a_quoted_title(self):
        extraction = extract_list("meet with Alice and Bob titled 'Design sync'", TODAY)
        assert extraction.value == ["Alice", "Bob"]

    def test_list_keeps_possessives_and_a_trailing_colon(self):
        assert extract_list("with Alice's team and Bob", TODAY).value == ["Alice's team", "Bob"]
        assert extract_list("invite Alice and Bob: agenda review", TODAY).value == ["Alice", "Bob"]

    def test_loose_list_stays_below_threshold(self):
        extraction = extract_list("Alice and Bob")
        assert extraction.value == ["Alice", "Bob"]
        assert extraction.confidence < 0.8

    def test_labelled_text(self):
        extraction = extract_text("destination is Paris, leaving Monday", "destination")
        assert extraction.value == "Paris"
        assert extraction.confidence >= 0.8

    def test_quoted_text_after_cue(self):
        extraction = extract_text('set up a meeting called "Budget planning" tomorrow', "title")
        assert extraction.value == "Budget planning"
        assert extraction.confidence >= 0.8

    def test_other_fields_need_their_label(self):
        text = 'set up a meeting called "Budget planning"'
        assert extract_text(text, "description", naming=False) is None
        assert extract_text("description is quarterly numbers", "description", naming=False).value == (
            "quarterly numbers"
        )

    def test_loose_cue_is_only_a_candidate(self):
        extraction = extract_text("a meeting about the budget tomorrow", "title")
        assert extraction.value == "the budget"
        assert extraction.confidence < 0.8

    @pytest.mark.parametrize(
        ("name", "expected"),
        [("end_time", True), ("end_date", True), ("time_end", True), ("start_time", False), ("attendees", False)],
    )
    def test_is_end_bound(self, name: str, expected: bool):
        assert is_end_bound(name) is expected


class TestDefaultQuestion:
    """Tests for generated clarification prompts."""

    def test_by_type(self):
        assert default_question(FieldSchema("deadline", FieldType.DATE)) == (
            "Which date should I use for the deadline?"
        )
        assert default_question(FieldSchema("need_hotel", FieldType.BOOLEAN)) == (
            "Should I set need hotel? (yes or no)"
        )
        assert default_question(FieldSchema("purpose", FieldType.STRING)) == "What is the purpose?"

    def test_enum_lists_options(self):
        schema = FieldSchema("channel", FieldType.STRING, enum=("email", "sms"))
        assert default_question(schema) == "Which channel would you like? Options: email, sms."


class TestSlotFillingEngine:
    """Tests for SlotFillingEngine."""

    @pytest.fixture
    def engine(self) -> SlotFillingEngine:
        return SlotFillingEngine()

    def test_extracts_what_the_user_said(
        self, engine: SlotFillingEngine, store: SessionContextStore, session: str
    ):
        store.set_active_capability(session, BOOK_MEETING_ROOM)
        result = engine.process_input(
            "book a meeting tomorrow at 2pm with Alice",
            BOOK_MEETING_ROOM,
            store.snapshot(session),
        )

        filled = {f.field: f.value for f in result.filled_slots}
        assert filled == {"date": "2025-01-16", "start_time": "14:00", "attendees": ["Alice"]}
        assert result.remaining_fields == ["title"]
        assert not result.complete
        # Defaults are not repeated back to the user
        assert result.next_question == (
            "I already have date: 2025-01-16, start time: 14:00, attendees: Alice. "
            "What should the meeting be called?"
        )

    def test_a_named_title_fills_only_the_title(
        self, engine: SlotFillingEngine, store: SessionContextStore, session: str
    ):
        store.set_active_capability(session, BOOK_MEETING_ROOM)
        result = engine.process_input(
            'book a meeting tomorrow at 2pm with Alice called "Design sync"',
            BOOK_MEETING_ROOM,
            store.snapshot(session),
        )

        assert {f.field: f.value for f in result.filled_slots} == {
            "title": "Design sync",
            "date": "2025-01-16",
            "start_time": "14:00",
            "attendees": ["Alice"],
        }
        assert "description" not in [c.field for c in result.candidates]
        assert result.complete

    def test_naming_field_is_the_first_required_text_field(self):
        assert naming_field_for(BOOK_MEETING_ROOM) == "title"
        assert naming_field_for(SEND_NOTIFICATION) == "message"

    def test_awaited_field_takes_the_whole_answer(
        self, engine: SlotFillingEngine, store: SessionContextStore, session: str
    ):
        store.set_active_capability(session, BOOK_MEETING_ROOM)
        store.set_awaiting_field(session, "title")
        result = engine.process_input("it's Quarterly review", BOOK_MEETING_ROOM, store.snapshot(session))

        [fill] = result.filled_slots
        assert fill.field == "title"
        assert fill.value == "Quarterly review"

    def test_awaited_list_answer(
        self, engine: SlotFillingEngine, store: SessionContextStore, session: str
    ):
        store.set_active_capability(session, BOOK_MEETING_ROOM)
        store.set_awaiting_field(session, "attendees")
        result = engine.process_input("Alice and Bob", BOOK_MEETING_ROOM, store.snapshot(session))
        assert {f.field: f.value for f in result.filled_slots} == {"attendees": ["Alice", "Bob"]}

    def test_known_slots_are_not_extracted_again(
        self, engine: SlotFillingEngine, store: SessionContextStore, session: str
    ):
        store.set_active_capability(session, BOOK_MEETING_ROOM)
        store.fill_slot(session, "date", "2025-01-20")
        result = engine.process_input("tomorrow", BOOK_MEETING_ROOM, store.snapshot(session))
        assert all(f.field != "date" for f in result.filled_slots)

    def test_low_confidence_values_are_only_candidates(
        self, engine: SlotFillingEngine, store: SessionContextStore, session: str
    ):
        result = engine.process_input(
            "a meeting about the budget", BOOK_MEETING_ROOM, store.snapshot(session)
        )
        assert "title" in [c.field for c in result.candidates]
        assert result.filled_slots == []
        assert "title" in result.remaining_fields

    def test_several_questions_per_turn(self, store: SessionContextStore, session: str):
        engine = SlotFillingEngine(max_questions_per_turn=2)
        result = engine.process_input("book a meeting", BOOK_MEETING_ROOM, store.snapshot(session))
        assert [q.field for q in result.questions] == ["title", "date"]
        assert result.next_question == (
            "What should the meeting be called?\nWhich date should I use for the date?"
        )

    def test_boolean_needs_a_hint_unless_asked(self, engine: SlotFillingEngine):
        schema = FieldSchema("need_hotel", FieldType.BOOLEAN)
        assert engine.extract("yes", schema, TODAY) is None
        assert engine.extract("yes", schema, TODAY, awaited=True).value is True
        assert engine.extract("no hotel needed", schema, TODAY).value is False

    def test_object_fields_take_json(self, engine: SlotFillingEngine):
        schema = FieldSchema("metadata", FieldType.OBJECT)
        assert engine.extract('{"cost_center": "R&D"}', schema, TODAY).value == {"cost_center": "R&D"}
        assert engine.extract("[1, 2]", schema, TODAY) is None
        assert engine.extract("{broken", schema, TODAY) is None

    def test_number_respects_validation(self, engine: SlotFillingEngine):
        schema = FieldSchema("budget", FieldType.NUMBER, validation=FieldValidation(min=100, max=2000))
        assert engine.extract("budget 1500", schema, TODAY).value == 1500
        assert engine.extract("budget 5000", schema, TODAY) is None
