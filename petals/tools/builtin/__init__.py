"""Builtin tools shipped with the chat service."""
from typing import List

from ..registry import Tool
from .calendar_events import fetch_events, create_event
from .reminders import fetch_reminders, create_reminder
from .canvas import fetch_courses, fetch_assignments, fetch_grades


def default_tools() -> List[Tool]:
    """Tools loaded into the registry on first use."""
    return [
        fetch_events,
        create_event,
        fetch_reminders,
        create_reminder,
        fetch_courses,
        fetch_assignments,
        fetch_grades,
    ]
