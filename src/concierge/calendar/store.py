"""Calendar store contract and the in-memory implementation."""

import logging
import uuid
from dataclasses import replace
from typing import Protocol

from concierge.calendar.types import CalendarItem, CreateOutcome

logger = logging.getLogger(__name__)

# Length assumed for an item with a start time but no end time
DEFAULT_DURATION_MINUTES = 60


def to_minutes(value: str) -> int:
    """Minutes since midnight for an HH:MM string."""
    hours, minutes = value.split(":", 1)
    return int(hours) * 60 + int(minutes)


def from_minutes(value: int) -> str:
    return f"{value // 60:02d}:{value % 60:02d}"


class CalendarStore(Protocol):
    """What capability handlers need from a calendar."""

    def query(self, date: str | None = None, keyword: str | None = None) -> list[CalendarItem]: ...

    def check_conflict(
        self,
        date: str,
        start: str | None,
        end: str | None,
        exclude_id: str | None = None,
    ) -> CalendarItem | None: ...

    def create(self, item: CalendarItem, *, force: bool = False) -> CreateOutcome: ...

    def update(self, item: CalendarItem) -> CalendarItem: ...


class InMemoryCalendarStore:
    """Calendar held in a dict, in creation order."""

    def __init__(self, items: list[CalendarItem] | None = None) -> None:
        self._items: dict[str, CalendarItem] = {}
        for item in items or []:
            self._insert(item)

    def _insert(self, item: CalendarItem) -> CalendarItem:
        stored = replace(item, id=item.id or uuid.uuid4().hex[:8])
        self._items[stored.id] = stored
        return stored

    def __len__(self) -> int:
        return len(self._items)

    def get(self, item_id: str) -> CalendarItem | None:
        return self._items.get(item_id)

    def query(self, date: str | None = None, keyword: str | None = None) -> list[CalendarItem]:
        """Items on ``date`` (multi-day items included) whose title or notes contain ``keyword``."""
        items = list(self._items.values())
        if date is not None:
            items = [i for i in items if i.covers(date)]
        if keyword:
            needle = keyword.lower()
            items = [i for i in items if needle in i.title.lower() or needle in i.notes.lower()]
        return sorted(items, key=lambda i: (i.date, i.start_time or ""))

    def check_conflict(
        self,
        date: str,
        start: str | None,
        end: str | None,
        exclude_id: str | None = None,
    ) -> CalendarItem | None:
        """First item overlapping ``start``-``end`` on ``date``.

        A request without a start time means the whole day. Ranges are
        half-open, so a meeting ending at 15:00 does not clash with one
        starting at 15:00.
        """
        for item in self._items.values():
            if item.id == exclude_id or not item.covers(date):
                continue
            if item.all_day or start is None:
                return item
            req_start = to_minutes(start)
            req_end = to_minutes(end) if end else req_start + DEFAULT_DURATION_MINUTES
            item_start = to_minutes(item.start_time)  # type: ignore[arg-type]
            item_end = (
                to_minutes(item.end_time)
                if item.end_time
                else item_start + DEFAULT_DURATION_MINUTES
            )
            if req_start < item_end and item_start < req_end:
                return item
        return None

    def _range_conflict(self, item: CalendarItem) -> CalendarItem | None:
        if not item.all_day:
            return self.check_conflict(item.date, item.start_time, item.end_time, item.id or None)
        for other in self._items.values():
            if other.id == item.id:
                continue
            if other.date <= item.last_date and item.date <= other.last_date:
                return other
        return None

    def create(self, item: CalendarItem, *, force: bool = False) -> CreateOutcome:
        """Store an item unless it clashes with an existing one (or ``force`` is set)."""
        conflict = self._range_conflict(item)
        if conflict is not None and not force:
            return CreateOutcome(ok=False, conflict=conflict)
        stored = self._insert(item)
        logger.debug(
            "calendar_item_created",
            extra={"calendar.item_id": stored.id, "calendar.kind": stored.kind.value},
        )
        return CreateOutcome(ok=True, item=stored, conflict=conflict)

    def update(self, item: CalendarItem) -> CalendarItem:
        """Replace an existing item.

        Raises:
            KeyError: If no item has ``item.id``.
        """
        if item.id not in self._items:
            raise KeyError(f"Calendar item '{item.id}' not found")
        self._items[item.id] = item
        return item

    def delete(self, item_id: str) -> bool:
        return self._items.pop(item_id, None) is not None
