"""Tests for progressive disclosure."""

import pytest

from concierge.skills.builtin import BOOK_MEETING_ROOM, SEND_NOTIFICATION
from concierge.skills.disclosure import (
    DisclosureLevel,
    DisclosureManager,
    estimate_tokens,
    render_instructions,
    render_resources,
    render_summary,
)
from concierge.skills.errors import InvalidTransitionError
from concierge.skills.types import ResourceType, SkillResource
from tests.conftest import make_spec


class TestRendering:
    """Tests for the three tier renderers."""

    def test_summary_lists_every_capability(self):
        text = render_summary([BOOK_MEETING_ROOM, SEND_NOTIFICATION])
        assert "- book_meeting_room: Book a meeting room" in text
        assert "- send_notification:" in text
        assert "tags: meeting, calendar, room, schedule" in text
        assert "do not use when:" in text
        # Summary never shows the schema
        assert "attendees" not in text

    def test_summary_of_nothing(self):
        assert render_summary([]) == "No capabilities are available."

    def test_instructions_show_schema_constraints_and_procedure(self):
        text = render_instructions(BOOK_MEETING_ROOM)
        assert "## Required fields" in text
        assert "## Optional fields" in text
        assert "attendees" in text
        assert "on violation: reject" in text
        assert "## Procedure: meeting booking" in text
        assert "Can be combined with: send_notification" in text

    def test_resources_never_expose_pointers(self):
        spec = make_spec(
            resources=(
                SkillResource(
                    "menu",
                    ResourceType.REFERENCE,
                    "Today's menu",
                    pointer="/secret/menu.md",
                ),
            )
        )
        text = render_resources(spec)
        assert "menu (reference): Today's menu" in text
        assert "/secret" not in text

    def test_token_estimates(self):
        assert estimate_tokens(DisclosureLevel.SUMMARY, [BOOK_MEETING_ROOM, SEND_NOTIFICATION]) == 200
        # 500 base + 6 steps * 30 + 2 constraints * 20
        assert estimate_tokens(DisclosureLevel.INSTRUCTIONS, [BOOK_MEETING_ROOM]) == 720
        assert estimate_tokens(DisclosureLevel.RESOURCES, [BOOK_MEETING_ROOM]) == 0


class TestDisclosureManager:
    """Tests for the per-session tier state machine."""

    def test_starts_at_summary(self):
        manager = DisclosureManager()
        assert manager.level("s1") == DisclosureLevel.SUMMARY

    def test_forward_transitions(self):
        manager = DisclosureManager()
        manager.load_summary("s1", [BOOK_MEETING_ROOM])
        manager.select("s1", BOOK_MEETING_ROOM)
        assert manager.level("s1") == DisclosureLevel.INSTRUCTIONS
        assert manager.state("s1").capability_name == "book_meeting_room"

        text = manager.confirm("s1", BOOK_MEETING_ROOM)
        assert manager.level("s1") == DisclosureLevel.RESOURCES
        assert "room_directory" in text

    def test_confirm_requires_instructions(self):
        manager = DisclosureManager()
        with pytest.raises(InvalidTransitionError):
            manager.confirm("s1", BOOK_MEETING_ROOM)

    def test_confirm_requires_same_capability(self):
        manager = DisclosureManager()
        manager.select("s1", BOOK_MEETING_ROOM)
        with pytest.raises(InvalidTransitionError):
            manager.confirm("s1", SEND_NOTIFICATION)

    def test_reselect_same_capability_is_noop(self):
        manager = DisclosureManager()
        manager.select("s1", BOOK_MEETING_ROOM)
        tokens = manager.state("s1").tokens
        manager.select("s1", BOOK_MEETING_ROOM)
        assert manager.state("s1").tokens == tokens
        assert len(manager.events) == 1

    def test_selecting_another_capability_restarts(self):
        manager = DisclosureManager()
        manager.select("s1", BOOK_MEETING_ROOM)
        manager.confirm("s1", BOOK_MEETING_ROOM)
        manager.select("s1", SEND_NOTIFICATION)
        assert manager.level("s1") == DisclosureLevel.INSTRUCTIONS
        assert manager.state("s1").capability_name == "send_notification"

    def test_reset_returns_to_summary(self):
        manager = DisclosureManager()
        manager.select("s1", BOOK_MEETING_ROOM)
        manager.reset("s1")
        assert manager.level("s1") == DisclosureLevel.SUMMARY
        assert manager.events[-1].level == DisclosureLevel.SUMMARY

    def test_sessions_are_independent(self):
        manager = DisclosureManager()
        manager.select("s1", BOOK_MEETING_ROOM)
        assert manager.level("s2") == DisclosureLevel.SUMMARY

    def test_load_resource(self):
        manager = DisclosureManager()
        manager.select("s1", BOOK_MEETING_ROOM)
        with pytest.raises(InvalidTransitionError):
            manager.load_resource("s1", BOOK_MEETING_ROOM, "room_directory")

        manager.confirm("s1", BOOK_MEETING_ROOM)
        view = manager.load_resource("s1", BOOK_MEETING_ROOM, "room_directory")
        assert view == {
            "id": "room_directory",
            "type": "reference",
            "description": "Meeting rooms by building and size",
        }
        assert manager.state("s1").loaded_resources == ["room_directory"]
        with pytest.raises(KeyError):
            manager.load_resource("s1", BOOK_MEETING_ROOM, "missing")

    def test_can_advance(self):
        manager = DisclosureManager()
        assert manager.can_advance("s1", "intent_matching")
        assert not manager.can_advance("s1", "slot_validation")
        manager.select("s1", BOOK_MEETING_ROOM)
        assert manager.can_advance("s1", "slot_validation")
        assert not manager.can_advance("s1", "execution")
        manager.confirm("s1", BOOK_MEETING_ROOM)
        assert manager.can_advance("s1", "execution")

    def test_forget_drops_state(self):
        manager = DisclosureManager()
        manager.select("s1", BOOK_MEETING_ROOM)
        manager.forget("s1")
        assert manager.level("s1") == DisclosureLevel.SUMMARY
