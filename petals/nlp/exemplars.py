"""Exemplar phrases per tool and the cached prototype lookup built from them."""
import logging
from typing import Dict, List, Mapping, Optional, Sequence

import numpy as np

from ..errors import VectorizationMiss
from .evaluator import ToolTriggerEvaluator, cosine_similarity

logger = logging.getLogger(__name__)

TOOL_EXEMPLARS: Dict[str, List[str]] = {
    "calendar_fetch_events": [
        "Fetch calendar events for me",
        "Show calendar events",
        "List my events",
        "Get events from my calendar",
        "Retrieve calendar events",
    ],
    "calendar_create_event": [
        "Create a calendar event on Friday",
        "Schedule a new calendar event",
        "Add a calendar event to my schedule",
        "Book an event on my calendar",
        "Set up a calendar event",
    ],
    "reminders_fetch": [
        "Show me my reminders",
        "List my tasks for today",
        "Fetch completed reminders",
        "Get all my pending reminders",
        "Find reminders containing doctor",
    ],
    "reminders_create": [
        "Create a reminder to call John tomorrow",
        "Add a reminder to buy milk to my Groceries list",
        "Remind me to submit the form",
        "Set a reminder for my dentist appointment",
    ],
    "canvas_courses": [
        "Show me my Canvas courses",
        "List my classes on Canvas",
        "Display my Canvas courses",
        "What courses am I enrolled in?",
        "Fetch my Canvas classes",
    ],
    "canvas_assignments": [
        "Fetch assignments for my course",
        "Show my Canvas assignments",
        "Get assignments for my class",
        "Retrieve course assignments from Canvas",
        "List assignments for my course",
    ],
    "canvas_grades": [
        "Show me my grades",
        "Get my Canvas grades",
        "Fetch my course grades",
        "Display grades for my class",
        "Retrieve my grades from Canvas",
    ],
}


class ExemplarProvider:
    """Owns the exemplar set and a per-tool prototype cache.

    A prototype (hit or miss) is computed at most once per tool id for the
    lifetime of the provider.
    """

    def __init__(self, evaluator: ToolTriggerEvaluator, exemplars: Optional[Mapping[str, Sequence[str]]] = None):
        self.evaluator = evaluator
        self.exemplars: Dict[str, List[str]] = {
            tool_id: list(phrases) for tool_id, phrases in (exemplars if exemplars is not None else TOOL_EXEMPLARS).items()
        }
        self._prototypes: Dict[str, Optional[np.ndarray]] = {}

    @property
    def tool_ids(self) -> List[str]:
        return list(self.exemplars)

    def prototype(self, tool_id: str) -> Optional[np.ndarray]:
        if tool_id in self._prototypes:
            return self._prototypes[tool_id]
        phrases = self.exemplars.get(tool_id)
        proto = self.evaluator.prototype(phrases) if phrases else None
        if proto is None:
            logger.warning(f"No prototype for tool {tool_id}: no exemplar could be vectorized")
        self._prototypes[tool_id] = proto
        return proto

    def warm(self) -> int:
        """Build every prototype now; returns how many tools can trigger."""
        return sum(1 for tool_id in self.exemplars if self.prototype(tool_id) is not None)

    def matching_tools(self, message: str) -> List[str]:
        """Tool ids whose prototype the message is similar enough to."""
        try:
            vec = self.evaluator.vectorizer.encode(message)
        except VectorizationMiss as e:
            logger.debug(f"Tool trigger skipped: {e}")
            return []

        matches = []
        for tool_id in self.exemplars:
            proto = self.prototype(tool_id)
            if proto is None:
                continue
            score = cosine_similarity(vec, proto)
            if score >= self.evaluator.threshold:
                matches.append(tool_id)
                logger.info(f"Tool trigger: {tool_id} ({score:.3f})")
        return matches

    def should_use_tools(self, message: str) -> bool:
        return bool(self.matching_tools(message))

    def should_use_tool(self, message: str, tool_id: str) -> bool:
        proto = self.prototype(tool_id)
        if proto is None:
            return False
        return self.evaluator.should_trigger(message, proto)
