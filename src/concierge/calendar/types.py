"""Calendar item types."""

from dataclasses import dataclass, field
from enum import Enum


class ItemKind(str, Enum):
    MEETING = "meeting"
    TRIP = "trip"
    GENERAL = "general"


@dataclass(slots=True)
class CalendarItem:
    """One scheduled entry.

    Dates are ISO strings (YYYY-MM-DD) and times are HH:MM. An item without
    times, or with an ``end_date`` after ``date``, blocks whole days.
    """

    title: str
    date: str
    start_time: str | None = None
    end_time: str | None = None
    end_date: str | None = None
    kind: ItemKind = ItemKind.GENERAL
    location: str | None = None
    attendees: list[str] = field(default_factory=list)
    notes: str = ""
    id: str = ""

    @property
    def last_date(self) -> str:
        return self.end_date or self.date

    @property
    def all_day(self) -> bool:
        return self.start_time is None or self.last_date != self.date

    def covers(self, day: str) -> bool:
        return self.date <= day <= self.last_date


@dataclass(slots=True)
class CreateOutcome:
    ok: bool
    item: CalendarItem | None = None
    conflict: CalendarItem | None = None
