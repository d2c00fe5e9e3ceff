"""Shared fixtures: toy embedding table, scripted backends, temporary SQLite store."""
import asyncio

import pytest
import pytest_asyncio
from pydantic import BaseModel

from petals.config import Settings
from petals.database import create_engine, create_session_factory, init_db
from petals.llm import GenerateResult
from petals.nlp import EmbeddingTable, ExemplarProvider, ToolTriggerEvaluator, Vectorizer
from petals.tools.registry import Permission, ToolContext, tool

# One axis per concept; every known word is a unit vector on its axis.
_AXES = {
    "calendar": 0, "events": 0, "event": 0,
    "courses": 1, "classes": 1, "course": 1, "class": 1,
    "assignments": 2,
    "grades": 3,
    "reminders": 4, "reminder": 4, "tasks": 4,
    "canvas": 5,
    "weather": 6,
    "show": 7, "me": 7, "my": 7, "list": 7, "display": 7, "fetch": 7, "get": 7, "retrieve": 7,
}


def _one_hot(axis: int, dim: int = 8):
    vec = [0.0] * dim
    vec[axis] = 1.0
    return vec


def toy_table() -> EmbeddingTable:
    return EmbeddingTable({word: _one_hot(axis) for word, axis in _AXES.items()})


@pytest.fixture
def embedding_table():
    return toy_table()


@pytest.fixture
def evaluator(embedding_table):
    return ToolTriggerEvaluator(Vectorizer(embedding_table), threshold=0.75)


@pytest.fixture
def provider(evaluator):
    return ExemplarProvider(evaluator)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'petals-test.db'}",
        embeddings_path=str(tmp_path / "missing-embeddings.txt"),
        canvas_base_url="https://canvas.test/api/v1",
        canvas_api_token="test-token",
        openai_api_key="sk-test",
        default_backend="remote",
        tool_trigger_threshold=0.75,
        max_tool_permission="sensitive",
        tool_timeout_s=0,
        max_history=20,
    )


@pytest_asyncio.fixture
async def session_factory(settings):
    engine = create_engine(settings.database_url)
    await init_db(engine)
    yield create_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def tool_context(settings, session_factory):
    return ToolContext(settings=settings, session_factory=session_factory)


class FakeBackend:
    """Scripted backend: each generate() call consumes one response.

    A response is a list of text pieces streamed through ``on_progress``,
    or an exception instance to raise.
    """

    name = "fake"

    def __init__(self, *responses, progress_mode: str = "incremental"):
        self.responses = list(responses)
        self.progress_mode = progress_mode
        self.calls = []

    async def generate(self, messages, tools=None, on_progress=None):
        self.calls.append({"messages": messages, "tools": tools, "streamed": on_progress is not None})
        response = self.responses.pop(0) if self.responses else []
        if isinstance(response, BaseException):
            raise response
        text = ""
        for piece in response:
            await asyncio.sleep(0)
            text += piece
            if on_progress:
                on_progress(text if self.progress_mode == "cumulative" else piece)
        return GenerateResult(final_text=text)


@pytest.fixture
def fake_backend_cls():
    return FakeBackend


class NoInput(BaseModel):
    pass


class CourseInput(BaseModel):
    course_name: str


@tool(
    "canvas_courses",
    name="Fetch Canvas Courses",
    description="Fetches the user's Canvas courses.",
    input_model=NoInput,
    domain="education",
    trigger_keywords=["canvas", "courses"],
    permission=Permission.BASIC,
)
async def stub_courses(args, context):
    return "• EECS 449\n• MATH 217"


@tool(
    "canvas_grades",
    name="Fetch Canvas Grades",
    description="Fetches grades for a course.",
    input_model=CourseInput,
    domain="education",
    trigger_keywords=["grades"],
    permission=Permission.SENSITIVE,
)
async def stub_grades(args, context):
    return {"course": args.course_name, "grade": "A"}


@pytest.fixture
def stub_tools():
    return [stub_courses, stub_grades]
