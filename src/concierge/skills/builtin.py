"""Built-in capabilities: meeting rooms, business trips and notifications."""

import logging
from typing import Any

from concierge.calendar import (
    CalendarItem,
    CalendarStore,
    ItemKind,
    from_minutes,
    to_minutes,
)
from concierge.skills import errors
from concierge.skills.errors import CapabilityExecutionError
from concierge.skills.executor import CapabilityExecutor, ExecutionContext, HandlerResult
from concierge.skills.feedback import FeedbackAnalyzer
from concierge.skills.registry import CapabilityRegistry
from concierge.skills.types import (
    CapabilityExample,
    CapabilitySpec,
    ConstraintRule,
    FieldSchema,
    FieldType,
    FieldValidation,
    ProcedureStep,
    ResourceType,
    SkillResource,
    StandardProcedure,
    StepAction,
    StepFailurePolicy,
)

logger = logging.getLogger(__name__)

DEFAULT_MEETING_MINUTES = 60
SLOT_SEARCH_STEP_MINUTES = 30
LAST_MEETING_END = "20:00"

BOOK_MEETING_ROOM = CapabilitySpec(
    name="book_meeting_room",
    description="Book a meeting room and put the meeting on the calendar",
    when_to_use="The user wants to schedule a meeting or reserve a meeting room",
    when_not_to_use="The user only wants to message people without booking time",
    tags=("meeting", "calendar", "room", "schedule"),
    category="calendar",
    input_schema=(
        FieldSchema(
            "title",
            FieldType.STRING,
            "Meeting title",
            required=True,
            validation=FieldValidation(min_length=1, max_length=120),
            examples=("Quarterly review", "Design sync"),
            clarification_prompt="What should the meeting be called?",
        ),
        FieldSchema("date", FieldType.DATE, "Meeting date", required=True),
        FieldSchema(
            "start_time",
            FieldType.TIME,
            "Start time",
            required=True,
            clarification_prompt="What time should the meeting start?",
        ),
        FieldSchema("end_time", FieldType.TIME, "End time; one hour after the start if omitted"),
        FieldSchema(
            "attendees",
            FieldType.ARRAY,
            "People to invite",
            required=True,
            clarification_prompt="Who should attend the meeting?",
        ),
        FieldSchema(
            "location",
            FieldType.STRING,
            "Building",
            enum=("headquarters", "east campus", "online"),
        ),
        FieldSchema(
            "room_type",
            FieldType.STRING,
            "Kind of room",
            default="standard",
            enum=("standard", "large", "boardroom"),
        ),
        FieldSchema("description", FieldType.STRING, "Agenda or notes"),
    ),
    required_fields=("title", "date", "start_time", "attendees"),
    constraints=(
        ConstraintRule(
            "future_date",
            "date >= today",
            "Meetings cannot be booked in the past",
            message="the meeting date is in the past",
        ),
        ConstraintRule(
            "valid_time_range",
            "end_time > start_time",
            "The meeting must end after it starts",
            message="the end time must be after the start time",
        ),
    ),
    standard_procedure=StandardProcedure(
        "meeting booking",
        (
            ProcedureStep(1, "Collect the title, date and start time", StepAction.COLLECT, ("title", "date", "start_time")),
            ProcedureStep(2, "Collect the attendees", StepAction.COLLECT, ("attendees",)),
            ProcedureStep(3, "Check the date is not in the past and the end is after the start", StepAction.VALIDATE, ("date", "start_time", "end_time")),
            ProcedureStep(4, "Default the end time to one hour after the start", StepAction.TRANSFORM, ("end_time",), on_failure=StepFailurePolicy.SKIP),
            ProcedureStep(5, "Reserve the room and create the calendar entry", StepAction.EXECUTE, on_failure=StepFailurePolicy.RETRY),
            ProcedureStep(6, "Confirm the booking to the user", StepAction.CONFIRM),
        ),
    ),
    composable=True,
    composable_with=("send_notification",),
    resources=(
        SkillResource("room_directory", ResourceType.REFERENCE, "Meeting rooms by building and size", pointer="rooms/directory.md"),
        SkillResource(
            "invite_template",
            ResourceType.TEMPLATE,
            "Calendar invitation text",
            content="{{title}} on {{date}} from {{start_time}} to {{end_time}}, with {{attendees}}.",
        ),
    ),
    examples=(
        CapabilityExample("book a meeting tomorrow at 2pm with Alice", "clarify the title"),
        CapabilityExample("reserve the boardroom on friday from 10am to 11am for the budget review with Bob and Carol", "book"),
    ),
    priority=10,
)

APPLY_BUSINESS_TRIP = CapabilitySpec(
    name="apply_business_trip",
    description="Submit a business trip request and block the travel days",
    when_to_use="The user wants to apply for, request or plan a business trip",
    when_not_to_use="The user is asking about a meeting in their own office",
    tags=("travel", "trip", "business"),
    category="travel",
    input_schema=(
        FieldSchema(
            "destination",
            FieldType.STRING,
            "City to travel to",
            required=True,
            clarification_prompt="Where are you travelling to?",
        ),
        FieldSchema("departure", FieldType.STRING, "City to leave from", default="HQ"),
        FieldSchema("start_date", FieldType.DATE, "First day of the trip", required=True),
        FieldSchema("end_date", FieldType.DATE, "Last day of the trip", required=True),
        FieldSchema(
            "purpose",
            FieldType.STRING,
            "Reason for the trip",
            required=True,
            clarification_prompt="What is the purpose of the trip?",
        ),
        FieldSchema("transport", FieldType.STRING, "How to travel", enum=("flight", "train", "car")),
        FieldSchema("need_hotel", FieldType.BOOLEAN, "Whether a hotel is needed", default=False),
        FieldSchema("hotel_location", FieldType.STRING, "Preferred hotel area"),
        FieldSchema(
            "budget",
            FieldType.NUMBER,
            "Budget in USD",
            validation=FieldValidation(min=100, max=2000),
        ),
    ),
    required_fields=("destination", "start_date", "end_date", "purpose"),
    constraints=(
        ConstraintRule(
            "trip_order",
            "end_date >= start_date",
            "The trip must end on or after its first day",
            message="the trip ends before it starts",
        ),
        ConstraintRule(
            "trip_not_past",
            "start_date >= today",
            "Trips cannot start in the past",
            message="the trip would start in the past",
        ),
    ),
    deferred_allowed=True,
    deferred_timeout=24 * 3600,
    examples=(
        CapabilityExample("apply for a business trip to Berlin from next monday to next wednesday for a client visit", "apply"),
        CapabilityExample("once the budget is approved, request a trip to Paris", "defer"),
    ),
    priority=5,
)

SEND_NOTIFICATION = CapabilitySpec(
    name="send_notification",
    description="Send a notification message to one or more people",
    when_to_use="The user wants to notify, remind or message people",
    when_not_to_use="The user wants to book time on the calendar",
    tags=("notify", "message", "reminder"),
    category="communication",
    input_schema=(
        FieldSchema(
            "recipients",
            FieldType.ARRAY,
            "People to notify",
            required=True,
            clarification_prompt="Who should receive the notification?",
        ),
        FieldSchema(
            "message",
            FieldType.STRING,
            "Text to send",
            required=True,
            validation=FieldValidation(min_length=1, max_length=1000),
            clarification_prompt="What should the message say?",
        ),
        FieldSchema("channel", FieldType.STRING, "Delivery channel", default="email", enum=("email", "chat", "sms")),
        FieldSchema("priority", FieldType.STRING, "Urgency", default="normal", enum=("low", "normal", "high")),
        FieldSchema("schedule_time", FieldType.DATETIME, "When to send; now if omitted"),
    ),
    required_fields=("recipients", "message"),
    composable=True,
    composable_with=("book_meeting_room",),
    deferred_allowed=True,
    deferred_timeout=7 * 24 * 3600,
    examples=(CapabilityExample("notify Alice and Bob that the demo moved to 3pm", "send"),),
)

BUILTIN_CAPABILITIES = (BOOK_MEETING_ROOM, APPLY_BUSINESS_TRIP, SEND_NOTIFICATION)

SUCCESS_MESSAGES = {
    "book_meeting_room": "Booked '{title}' on {date} from {start_time} to {end_time}.",
    "apply_business_trip": "Submitted your trip to {destination} from {start_date} to {end_date}.",
    "send_notification": "Sent your {channel} notification to {recipient_list}.",
}


def _conflict_details(item: CalendarItem) -> dict[str, Any]:
    return {
        "id": item.id,
        "title": item.title,
        "date": item.date,
        "start_time": item.start_time,
        "end_time": item.end_time,
    }


def next_free_slot(
    calendar: CalendarStore, day: str, start: str, end: str
) -> dict[str, str] | None:
    """Nearest later slot of the same length that is free, or None."""
    duration = to_minutes(end) - to_minutes(start)
    candidate = to_minutes(start) + SLOT_SEARCH_STEP_MINUTES
    while candidate + duration <= to_minutes(LAST_MEETING_END):
        slot_start, slot_end = from_minutes(candidate), from_minutes(candidate + duration)
        if calendar.check_conflict(day, slot_start, slot_end) is None:
            return {"start_time": slot_start, "end_time": slot_end}
        candidate += SLOT_SEARCH_STEP_MINUTES
    return None


def make_meeting_handler(calendar: CalendarStore):
    async def book_meeting_room(params: dict[str, Any], context: ExecutionContext) -> dict[str, Any]:
        start = params["start_time"]
        end = params.get("end_time") or from_minutes(
            min(to_minutes(start) + DEFAULT_MEETING_MINUTES, 23 * 60 + 59)
        )
        item = CalendarItem(
            title=params["title"],
            date=params["date"],
            start_time=start,
            end_time=end,
            kind=ItemKind.MEETING,
            location=params.get("location"),
            attendees=list(params["attendees"]),
            notes=params.get("description") or "",
        )
        outcome = calendar.create(item, force=bool(params.get("force")))
        if not outcome.ok:
            assert outcome.conflict is not None
            raise CapabilityExecutionError(
                errors.TIME_CONFLICT,
                f"Overlaps with '{outcome.conflict.title}'",
                recoverable=True,
                fields=("start_time", "end_time"),
                details={
                    "conflict": _conflict_details(outcome.conflict),
                    "suggested": next_free_slot(calendar, item.date, start, end),
                },
            )
        assert outcome.item is not None
        data = {"item_id": outcome.item.id, "end_time": end, "room_type": params.get("room_type")}
        if context.resources is not None:
            data["invitation"] = await context.resources.render(
                "invite_template", {**params, "end_time": end}
            )
        return data

    return book_meeting_room


def make_trip_handler(calendar: CalendarStore):
    async def apply_business_trip(params: dict[str, Any], context: ExecutionContext) -> HandlerResult:
        item = CalendarItem(
            title=f"Trip to {params['destination']}",
            date=params["start_date"],
            end_date=params["end_date"],
            kind=ItemKind.TRIP,
            location=params["destination"],
            notes=params["purpose"],
        )
        outcome = calendar.create(item, force=bool(params.get("force")))
        if not outcome.ok:
            assert outcome.conflict is not None
            raise CapabilityExecutionError(
                errors.TIME_CONFLICT,
                f"Overlaps with '{outcome.conflict.title}'",
                recoverable=True,
                fields=("start_date", "end_date"),
                details={"conflict": _conflict_details(outcome.conflict)},
            )
        assert outcome.item is not None
        warnings = []
        if params.get("need_hotel") and not params.get("hotel_location"):
            warnings.append("no hotel area was given, so the travel desk will pick one")
        return HandlerResult(data={"request_id": outcome.item.id}, warnings=warnings)

    return apply_business_trip


def make_notification_handler(outbox: list[dict[str, Any]] | None):
    async def send_notification(params: dict[str, Any], context: ExecutionContext) -> dict[str, Any]:
        recipients = [str(r) for r in params["recipients"]]
        record = {
            "recipients": recipients,
            "message": params["message"],
            "channel": params.get("channel", "email"),
            "priority": params.get("priority", "normal"),
            "schedule_time": params.get("schedule_time"),
        }
        if outbox is not None:
            outbox.append(record)
        logger.info(
            "notification_sent",
            extra={"notification.channel": record["channel"], "notification.recipients": len(recipients)},
        )
        return {"recipient_list": ", ".join(recipients), "scheduled": record["schedule_time"] is not None}

    return send_notification


def register_builtin_capabilities(
    registry: CapabilityRegistry,
    executor: CapabilityExecutor,
    calendar: CalendarStore,
    *,
    analyzer: FeedbackAnalyzer | None = None,
    outbox: list[dict[str, Any]] | None = None,
) -> list[str]:
    """Register the built-in capabilities and their handlers.

    Returns:
        Names of the registered capabilities.
    """
    handlers = {
        BOOK_MEETING_ROOM.name: make_meeting_handler(calendar),
        APPLY_BUSINESS_TRIP.name: make_trip_handler(calendar),
        SEND_NOTIFICATION.name: make_notification_handler(outbox),
    }
    for spec in BUILTIN_CAPABILITIES:
        registry.register(spec)
        executor.register_handler(spec.name, handlers[spec.name])
        if analyzer is not None:
            analyzer.register_success_message(spec.name, SUCCESS_MESSAGES[spec.name])
    return [spec.name for spec in BUILTIN_CAPABILITIES]
