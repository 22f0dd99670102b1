"""Calendar boundary used by the built-in capabilities."""

from concierge.calendar.store import (
    CalendarStore,
    InMemoryCalendarStore,
    from_minutes,
    to_minutes,
)
from concierge.calendar.types import CalendarItem, CreateOutcome, ItemKind

__all__ = [
    "CalendarItem",
    "CalendarStore",
    "CreateOutcome",
    "InMemoryCalendarStore",
    "ItemKind",
    "from_minutes",
    "to_minutes",
]
