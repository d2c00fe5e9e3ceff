"""Reminder tools: list and create reminders in the local store."""
import logging
from typing import List, Optional

from pydantic import BaseModel, Field
from sqlalchemy import select

from ...errors import ToolError
from ...models import Reminder
from ..registry import Permission, ToolContext, tool
from .dates import format_when, parse_datetime

logger = logging.getLogger(__name__)


class FetchRemindersInput(BaseModel):
    completed: Optional[bool] = Field(
        None, description="True for completed reminders, false for open ones, omit for all")
    start_date: Optional[str] = Field(
        None, description="Only reminders due on or after this ISO date", examples=["2025-03-10T00:00:00Z"])
    end_date: Optional[str] = Field(
        None, description="Only reminders due on or before this ISO date", examples=["2025-03-20T23:59:59Z"])
    list_names: Optional[List[str]] = Field(
        None, description="Reminder lists to read from", examples=[["Work", "Personal"]])
    search_text: Optional[str] = Field(
        None, description="Text to match in reminder titles", examples=["Doctor appointment"])


class CreateReminderInput(BaseModel):
    title: str = Field(..., description="What to be reminded about", examples=["Call John"])
    due_date: Optional[str] = Field(
        None, description="Due date/time in ISO format", examples=["2025-04-15T14:00:00Z"])
    notes: Optional[str] = Field(None, description="Notes for the reminder", examples=["Discuss project timeline"])
    list_name: Optional[str] = Field(None, description="Reminder list to add to", examples=["Groceries"])


@tool(
    "reminders_fetch",
    name="Fetch Reminders",
    description="Fetches reminders with optional completion, due date, list and text filters.",
    input_model=FetchRemindersInput,
    domain="reminders",
    trigger_keywords=["reminders", "tasks", "list reminders"],
    permission=Permission.BASIC,
)
async def fetch_reminders(args: FetchRemindersInput, context: ToolContext) -> str:
    if context.session_factory is None:
        raise ToolError("Reminder storage is not configured")

    start_at = parse_datetime(args.start_date, "start_date")
    end_at = parse_datetime(args.end_date, "end_date", end_of_day=True)

    query = select(Reminder).order_by(Reminder.due_at.is_(None), Reminder.due_at, Reminder.id)
    if args.completed is not None:
        query = query.where(Reminder.completed.is_(args.completed))
    if start_at is not None:
        query = query.where(Reminder.due_at >= start_at)
    if end_at is not None:
        query = query.where(Reminder.due_at <= end_at)
    if args.list_names:
        query = query.where(Reminder.list_name.in_(args.list_names))
    if args.search_text:
        query = query.where(Reminder.title.ilike(f"%{args.search_text}%"))

    async with context.session_factory() as db:
        reminders = (await db.execute(query.limit(50))).scalars().all()

    if not reminders:
        return "No reminders found."

    lines = [f"You have {len(reminders)} reminder{'s' if len(reminders) != 1 else ''}:"]
    for r in reminders:
        line = f"• {r.title}"
        if r.due_at:
            line += f" (Due: {format_when(r.due_at)})"
        if r.completed:
            line += " [done]"
        lines.append(f"{line} [{r.list_name}]")
    return "\n".join(lines)


@tool(
    "reminders_create",
    name="Create Reminder",
    description="Creates a reminder, optionally with a due date and list.",
    input_model=CreateReminderInput,
    domain="reminders",
    trigger_keywords=["reminder", "remind", "task", "todo"],
    permission=Permission.STANDARD,
)
async def create_reminder(args: CreateReminderInput, context: ToolContext) -> str:
    if context.session_factory is None:
        raise ToolError("Reminder storage is not configured")
    if not args.title.strip():
        raise ToolError("A reminder needs a title")

    due_at = parse_datetime(args.due_date, "due_date")
    reminder = Reminder(
        title=args.title.strip(),
        notes=args.notes or "",
        list_name=args.list_name or "Reminders",
        due_at=due_at,
    )
    async with context.session_factory() as db:
        db.add(reminder)
        await db.commit()
    logger.info(f"Reminder saved: '{reminder.title}' due {due_at}")

    text = f"Created reminder '{reminder.title}' in {reminder.list_name}"
    if due_at:
        text += f", due {format_when(due_at)}"
    return text + "."
