"""Canvas LMS tools: courses, assignments and grades via the Canvas REST API."""
import logging
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel, Field

from ...errors import ToolError
from ..registry import Permission, ToolContext, tool

logger = logging.getLogger(__name__)


class CanvasClient:
    def __init__(self, base_url: str, token: str, transport: Optional[httpx.AsyncBaseTransport] = None,
                 timeout: float = 10):
        if not token:
            raise ToolError("Canvas API token is not configured")
        self.base_url = base_url.rstrip("/") + "/"
        self.token = token
        self.transport = transport
        self.timeout = timeout

    @classmethod
    def from_context(cls, context: ToolContext) -> "CanvasClient":
        return cls(context.settings.canvas_base_url, context.settings.canvas_api_token,
                   transport=context.http_transport)

    async def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                headers={"Authorization": f"Bearer {self.token}"},
                timeout=self.timeout,
                transport=self.transport,
            ) as client:
                resp = await client.get(path, params={"per_page": 100, **(params or {})})
                resp.raise_for_status()
                return resp.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"Canvas API error: {e}")
            raise ToolError(f"Canvas API returned HTTP {e.response.status_code} for {path}") from e
        except httpx.HTTPError as e:
            logger.error(f"Canvas API error: {e}")
            raise ToolError(f"Could not reach Canvas: {e}") from e

    async def courses(self, completed: bool = False) -> List[Dict[str, Any]]:
        state = "completed" if completed else "active"
        data = await self.get("courses", {"enrollment_state": state})
        return [c for c in data if isinstance(c, dict) and c.get("name")]

    async def find_course_id(self, course_name: str) -> Optional[int]:
        """Id of the first course whose name contains ``course_name`` (case-insensitive)."""
        needle = course_name.strip().lower()
        for course in await self.courses():
            if needle in course["name"].lower():
                return course.get("id")
        return None


class CoursesInput(BaseModel):
    completed: bool = Field(False, description="Fetch completed courses instead of active ones")


class CourseNameInput(BaseModel):
    course_name: str = Field(..., description="Name (or part of the name) of the course", examples=["EECS 449"])


@tool(
    "canvas_courses",
    name="Fetch Canvas Courses",
    description="Fetches the user's Canvas courses.",
    input_model=CoursesInput,
    domain="education",
    trigger_keywords=["canvas", "courses", "classes"],
    permission=Permission.BASIC,
)
async def fetch_courses(args: CoursesInput, context: ToolContext) -> str:
    courses = await CanvasClient.from_context(context).courses(completed=args.completed)
    if not courses:
        return "No courses found."
    return "\n".join(f"• {c['name']}" for c in courses)


@tool(
    "canvas_assignments",
    name="Fetch Canvas Assignments",
    description="Fetches assignments for a specific Canvas course.",
    input_model=CourseNameInput,
    domain="education",
    trigger_keywords=["assignments", "classwork", "homework"],
    permission=Permission.BASIC,
)
async def fetch_assignments(args: CourseNameInput, context: ToolContext) -> str:
    client = CanvasClient.from_context(context)
    course_id = await client.find_course_id(args.course_name)
    if course_id is None:
        return "Course not found."

    assignments = await client.get(f"courses/{course_id}/assignments")
    if not assignments:
        return "No assignments found."
    lines = []
    for a in assignments:
        due = a.get("due_at") or "No due date"
        lines.append(f"• {a.get('name', 'Untitled')} (Due: {due})")
    return "\n".join(lines)


@tool(
    "canvas_grades",
    name="Fetch Canvas Grades",
    description="Fetches grades for a specific Canvas course.",
    input_model=CourseNameInput,
    domain="education",
    trigger_keywords=["grades", "performance"],
    permission=Permission.SENSITIVE,
)
async def fetch_grades(args: CourseNameInput, context: ToolContext) -> str:
    client = CanvasClient.from_context(context)
    course_id = await client.find_course_id(args.course_name)
    if course_id is None:
        return "Course not found."

    submissions = await client.get(f"courses/{course_id}/students/submissions", {"include[]": "assignment"})
    if not submissions:
        return "No grades available."
    lines = []
    for s in submissions:
        assignment = s.get("assignment") or {}
        name = assignment.get("name") or f"Assignment {s.get('assignment_id', '?')}"
        lines.append(f"• {name}: {s.get('grade') or 'Not graded'}")
    return "\n".join(lines)
