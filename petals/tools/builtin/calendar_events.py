"""Calendar tools: fetch and create events in the local calendar store."""
import logging
from typing import List, Optional

from pydantic import BaseModel, Field
from sqlalchemy import or_, select

from ...errors import ToolError
from ...models import CalendarEvent
from ..registry import Permission, ToolContext, tool
from .dates import date_window, format_when, parse_datetime

logger = logging.getLogger(__name__)


class FetchEventsInput(BaseModel):
    start_date: Optional[str] = Field(
        None, description="ISO date for the start of the range (defaults to today)", examples=["2025-03-20"])
    end_date: Optional[str] = Field(
        None, description="ISO date for the end of the range (defaults to one week after start)",
        examples=["2025-03-27"])
    calendar_names: Optional[List[str]] = Field(
        None, description="Calendars to read from; all calendars when omitted", examples=[["Work"]])
    search_text: Optional[str] = Field(
        None, description="Text to match in event titles and locations", examples=["EECS"])
    include_all_day: bool = Field(True, description="Whether to include all-day events")


class CreateEventInput(BaseModel):
    title: str = Field(..., description="The title of the event", examples=["EECS 449 Project"])
    start_date: str = Field(
        ..., description="Start date/time (ISO 8601, YYYY-MM-DD HH:MM:SS or YYYY-MM-DD)",
        examples=["2025-03-20T10:00:00"])
    end_date: str = Field(
        ..., description="End date/time (ISO 8601, YYYY-MM-DD HH:MM:SS or YYYY-MM-DD)",
        examples=["2025-03-20T11:30:00"])
    calendar_name: Optional[str] = Field(None, description="Calendar to create the event in", examples=["Work"])
    location: Optional[str] = Field(None, description="Location of the event", examples=["UGLI"])
    notes: Optional[str] = Field(None, description="Notes or description for the event")
    is_all_day: bool = Field(False, description="Whether this is an all-day event")


def _session_factory(context: ToolContext):
    if context.session_factory is None:
        raise ToolError("Calendar storage is not configured")
    return context.session_factory


@tool(
    "calendar_fetch_events",
    name="Calendar Fetch Events",
    description="Fetches calendar events with optional date range, calendar and text filters.",
    input_model=FetchEventsInput,
    domain="calendar",
    trigger_keywords=["calendar", "events", "fetch", "schedule"],
    permission=Permission.BASIC,
)
async def fetch_events(args: FetchEventsInput, context: ToolContext) -> str:
    start_at, end_at = date_window(args.start_date, args.end_date)

    query = (
        select(CalendarEvent)
        .where(CalendarEvent.start_at <= end_at, CalendarEvent.end_at >= start_at)
        .order_by(CalendarEvent.start_at)
    )
    if args.calendar_names:
        query = query.where(CalendarEvent.calendar_name.in_(args.calendar_names))
    if args.search_text:
        pattern = f"%{args.search_text}%"
        query = query.where(or_(CalendarEvent.title.ilike(pattern), CalendarEvent.location.ilike(pattern)))
    if not args.include_all_day:
        query = query.where(CalendarEvent.all_day.is_(False))

    async with _session_factory(context)() as db:
        events = (await db.execute(query)).scalars().all()

    span = f"{start_at:%Y-%m-%d} to {end_at:%Y-%m-%d}"
    if not events:
        return f"No events found from {span}."

    lines = [f"Events from {span}:"]
    for e in events:
        when = format_when(e.start_at, e.all_day)
        if not e.all_day:
            when += f" - {e.end_at:%H:%M}"
        line = f"• {e.title}: {when}"
        if e.location:
            line += f" at {e.location}"
        lines.append(f"{line} ({e.calendar_name})")
    return "\n".join(lines)


@tool(
    "calendar_create_event",
    name="Calendar Create Event",
    description="Creates a new calendar event.",
    input_model=CreateEventInput,
    domain="calendar",
    trigger_keywords=["calendar", "create", "event", "schedule"],
    permission=Permission.STANDARD,
)
async def create_event(args: CreateEventInput, context: ToolContext) -> str:
    start_at = parse_datetime(args.start_date, "start_date")
    end_at = parse_datetime(args.end_date, "end_date", end_of_day=args.is_all_day)
    if start_at is None or end_at is None:
        raise ToolError("start_date and end_date are required")
    if end_at <= start_at:
        raise ToolError("end_date must be after start_date")

    event = CalendarEvent(
        title=args.title,
        start_at=start_at,
        end_at=end_at,
        location=args.location or "",
        notes=args.notes or "",
        calendar_name=args.calendar_name or "Calendar",
        all_day=args.is_all_day,
    )
    async with _session_factory(context)() as db:
        db.add(event)
        await db.commit()
    logger.info(f"Calendar event saved: '{args.title}' at {start_at}")

    return f"Created event '{event.title}' on {format_when(start_at, event.all_day)} in {event.calendar_name}."
