"""Tests for petals/pipeline.py: streaming turn orchestration."""
import asyncio
from unittest.mock import AsyncMock

import pytest
from pydantic import BaseModel

from petals.errors import ArgumentDecodeError, BackendError, ToolExecutionError
from petals.llm import GenerateResult
from petals.pipeline import StreamBuffer, StreamOrchestrator, Turn, TurnState
from petals.tools.executor import ToolDispatcher
from petals.tools.registry import Permission, ToolContext, ToolFilter, ToolRegistry, tool


class NoArgs(BaseModel):
    pass


COURSES_CALL = '<tool_call>{"name": "canvas_courses", "arguments": {}}</tool_call>'


def _user(text):
    return [{"role": "user", "content": text}]


async def _collect(stream):
    return [chunk async for chunk in stream]


@pytest.fixture
def registry(stub_tools):
    return ToolRegistry(lambda: stub_tools)


@pytest.fixture
def dispatcher(registry):
    return ToolDispatcher(registry, ToolContext(settings=None))


@pytest.fixture
def orchestrator(registry, dispatcher, provider):
    return StreamOrchestrator(registry, dispatcher, provider)


class TestPlainTextTurn:
    @pytest.mark.asyncio
    async def test_weather_question_streams_plain_chunks(self, orchestrator, fake_backend_cls):
        backend = fake_backend_cls(["It's ", "sunny ", "today."])
        turn = Turn()
        chunks = await _collect(orchestrator.stream_turn(_user("What's the weather today"), backend, turn))

        assert len(chunks) >= 1
        assert "".join(c.message for c in chunks) == "It's sunny today."
        assert all(c.tool_call_name is None for c in chunks)
        assert backend.calls[0]["tools"] is None
        assert len(backend.calls) == 1
        assert turn.history == [
            TurnState.IDLE, TurnState.SENDING, TurnState.STREAMING, TurnState.PLAIN_TEXT_DONE, TurnState.DONE,
        ]

    @pytest.mark.asyncio
    async def test_chunks_forwarded_as_they_arrive(self, orchestrator, fake_backend_cls):
        backend = fake_backend_cls(["It's ", "sunny ", "today."])
        chunks = await _collect(orchestrator.stream_turn(_user("hello there"), backend))
        assert [c.message for c in chunks] == ["It's ", "sunny ", "today."]

    @pytest.mark.asyncio
    async def test_system_prompt_prepended(self, orchestrator, fake_backend_cls):
        backend = fake_backend_cls(["ok"])
        await _collect(orchestrator.stream_turn(_user("hello"), backend))
        sent = backend.calls[0]["messages"]
        assert sent[0]["role"] == "system"
        assert "Only use tools when explicitly requested" in sent[0]["content"]
        assert sent[1:] == _user("hello")

    @pytest.mark.asyncio
    async def test_partial_marker_never_forwarded(self, orchestrator, fake_backend_cls):
        backend = fake_backend_cls(["Hello <tool", "box> world"])
        chunks = await _collect(orchestrator.stream_turn(_user("hi"), backend))
        assert [c.message for c in chunks] == ["Hello ", "<toolbox> world"]

    @pytest.mark.asyncio
    async def test_cumulative_progress_is_diffed(self, orchestrator, fake_backend_cls):
        backend = fake_backend_cls(["Hel", "lo", " there"], progress_mode="cumulative")
        chunks = await _collect(orchestrator.stream_turn(_user("hi"), backend))
        assert [c.message for c in chunks] == ["Hel", "lo", " there"]

    @pytest.mark.asyncio
    async def test_non_streaming_backend(self, orchestrator):
        class Blocking:
            name = "blocking"
            progress_mode = "incremental"

            async def generate(self, messages, tools=None, on_progress=None):
                return GenerateResult(final_text="Whole answer.")

        turn = Turn()
        chunks = await _collect(orchestrator.stream_turn(_user("hi"), Blocking(), turn))
        assert [c.message for c in chunks] == ["Whole answer."]
        assert turn.state is TurnState.DONE

    @pytest.mark.asyncio
    async def test_progress_from_worker_thread(self, orchestrator):
        class Threaded:
            name = "threaded"
            progress_mode = "incremental"

            async def generate(self, messages, tools=None, on_progress=None):
                pieces = ["one ", "two ", "three"]

                def work():
                    for p in pieces:
                        on_progress(p)

                await asyncio.to_thread(work)
                return GenerateResult(final_text="".join(pieces))

        chunks = await _collect(orchestrator.stream_turn(_user("hi"), Threaded()))
        assert "".join(c.message for c in chunks) == "one two three"


class TestToolTurn:
    @pytest.mark.asyncio
    async def test_canvas_courses_end_to_end(self, orchestrator, fake_backend_cls):
        backend = fake_backend_cls(
            ['<tool_call>{"name": "canvas_', 'courses", "arguments": {}}</tool_call>'],
            ["You're enrolled in EECS 449 and MATH 217."],
        )
        turn = Turn()
        chunks = await _collect(orchestrator.stream_turn(_user("Show me my Canvas courses"), backend, turn))

        assert len(chunks) == 1
        assert chunks[0].tool_call_name == "canvas_courses"
        assert chunks[0].message == "You're enrolled in EECS 449 and MATH 217."

        first, summary = backend.calls
        assert first["tools"] is not None
        assert "canvas_courses" in [t["function"]["name"] for t in first["tools"]]
        assert summary["tools"] is None
        assert summary["streamed"] is False
        assert "• EECS 449\n• MATH 217" in summary["messages"][-1]["content"]
        assert summary["messages"][0]["content"] == "You are a helpful assistant that summarizes tool results."
        assert turn.history == [
            TurnState.IDLE, TurnState.SENDING, TurnState.STREAMING, TurnState.TOOL_CALL_ACCUMULATING,
            TurnState.DISPATCHING, TurnState.SUMMARIZING, TurnState.DONE,
        ]
        assert turn.tools_attached is True

    @pytest.mark.asyncio
    async def test_marker_split_across_chunks(self, orchestrator, fake_backend_cls):
        backend = fake_backend_cls(
            ["<tool", '_call>{"name": "canvas_courses", "arguments": {}}</tool_call>'],
            ["Two courses."],
        )
        chunks = await _collect(orchestrator.stream_turn(_user("Show me my Canvas courses"), backend))
        assert [(c.message, c.tool_call_name) for c in chunks] == [("Two courses.", "canvas_courses")]

    @pytest.mark.asyncio
    async def test_leading_json_call(self, orchestrator, fake_backend_cls):
        backend = fake_backend_cls(['{"name": "canvas_courses", ', '"arguments": {}}'], ["Two courses."])
        chunks = await _collect(orchestrator.stream_turn(_user("Show me my Canvas courses"), backend))
        assert [(c.message, c.tool_call_name) for c in chunks] == [("Two courses.", "canvas_courses")]

    @pytest.mark.asyncio
    async def test_arguments_reach_tool(self, orchestrator, fake_backend_cls):
        backend = fake_backend_cls(
            ['<tool_call>{"name": "canvas_grades", "arguments": {"course_name": "EECS 449"}}</tool_call>'],
            [""],
        )
        chunks = await _collect(orchestrator.stream_turn(_user("Show me my Canvas courses"), backend))
        # empty summary falls back to a plain rendering of the raw result
        assert chunks[0].tool_call_name == "canvas_grades"
        assert chunks[0].message == "course: EECS 449\ngrade: A"

    @pytest.mark.asyncio
    async def test_only_first_call_dispatched(self, registry, provider, fake_backend_cls):
        dispatcher = AsyncMock()
        dispatcher.dispatch.return_value = "raw"
        orch = StreamOrchestrator(registry, dispatcher, provider)
        backend = fake_backend_cls(
            [COURSES_CALL + '<tool_call>{"name": "canvas_grades", "arguments": {}}</tool_call>'],
            ["Summary."],
        )
        chunks = await _collect(orch.stream_turn(_user("Show me my Canvas courses"), backend))
        dispatcher.dispatch.assert_awaited_once_with("canvas_courses", {})
        assert chunks[0].tool_call_name == "canvas_courses"

    @pytest.mark.asyncio
    async def test_summary_tool_syntax_removed(self, orchestrator, fake_backend_cls):
        backend = fake_backend_cls([COURSES_CALL], [COURSES_CALL])
        chunks = await _collect(orchestrator.stream_turn(_user("Show me my Canvas courses"), backend))
        assert chunks[0].message == "• EECS 449\n• MATH 217"

    @pytest.mark.asyncio
    async def test_unknown_tool_falls_through_to_text(self, orchestrator, fake_backend_cls):
        backend = fake_backend_cls(['Sure thing. <tool_call>{"name": "launch_rockets", "arguments": {}}</tool_call>'])
        turn = Turn()
        chunks = await _collect(orchestrator.stream_turn(_user("Show me my Canvas courses"), backend, turn))
        assert [(c.message, c.tool_call_name) for c in chunks] == [("Sure thing.", None)]
        assert turn.state is TurnState.DONE
        assert len(backend.calls) == 1

    @pytest.mark.asyncio
    async def test_marker_without_name_is_an_error(self, orchestrator, fake_backend_cls):
        backend = fake_backend_cls(['<tool_call>{"arguments": {}}</tool_call>'])
        turn = Turn()
        with pytest.raises(ArgumentDecodeError):
            await _collect(orchestrator.stream_turn(_user("Show me my Canvas courses"), backend, turn))
        assert turn.state is TurnState.ERROR

    @pytest.mark.asyncio
    async def test_tool_failure_propagates(self, registry, provider, fake_backend_cls):
        @tool("canvas_courses", name="Broken", description="Fails.", input_model=NoArgs)
        async def broken(args, context):
            raise RuntimeError("Canvas is down")

        await registry.register(broken)
        orch = StreamOrchestrator(registry, ToolDispatcher(registry, ToolContext(settings=None)), provider)
        backend = fake_backend_cls([COURSES_CALL])
        chunks = []
        with pytest.raises(ToolExecutionError):
            async for c in orch.stream_turn(_user("Show me my Canvas courses"), backend):
                chunks.append(c)
        assert chunks == []


class TestToolSelection:
    @pytest.mark.asyncio
    async def test_no_trigger_means_no_tools(self, registry, dispatcher, fake_backend_cls):
        orch = StreamOrchestrator(registry, dispatcher, trigger=None)
        backend = fake_backend_cls(["ok"])
        await _collect(orch.stream_turn(_user("Show me my Canvas courses"), backend))
        assert backend.calls[0]["tools"] is None

    @pytest.mark.asyncio
    async def test_permission_ceiling_applied(self, registry, dispatcher, provider, fake_backend_cls):
        orch = StreamOrchestrator(registry, dispatcher, provider, ToolFilter(max_permission=Permission.BASIC))
        backend = fake_backend_cls(["ok"])
        await _collect(orch.stream_turn(_user("Show me my Canvas courses"), backend))
        names = [t["function"]["name"] for t in backend.calls[0]["tools"]]
        assert names == ["canvas_courses"]
        assert "canvas_courses" in backend.calls[0]["messages"][0]["content"]

    @pytest.mark.asyncio
    async def test_trigger_uses_last_user_message(self, orchestrator, fake_backend_cls):
        backend = fake_backend_cls(["ok"])
        history = [
            {"role": "user", "content": "Show me my Canvas courses"},
            {"role": "assistant", "content": "Here they are."},
            {"role": "user", "content": "What's the weather today"},
        ]
        await _collect(orchestrator.stream_turn(history, backend))
        assert backend.calls[0]["tools"] is None


class TestOfferedToolsOnly:
    @pytest.mark.asyncio
    async def test_tool_above_ceiling_not_dispatched(self, registry, provider, fake_backend_cls):
        dispatcher = AsyncMock()
        orch = StreamOrchestrator(registry, dispatcher, provider, ToolFilter(max_permission=Permission.BASIC))
        backend = fake_backend_cls(
            ['Let me check. <tool_call>{"name": "canvas_grades", "arguments": {"course_name": "EECS"}}</tool_call>'],
        )
        turn = Turn()
        chunks = await _collect(orch.stream_turn(_user("Show me my Canvas courses"), backend, turn))

        assert [(c.message, c.tool_call_name) for c in chunks] == [("Let me check.", None)]
        dispatcher.dispatch.assert_not_awaited()
        assert len(backend.calls) == 1
        assert turn.offered_tools == ["canvas_courses"]
        assert turn.tool_name is None
        assert turn.invocations == []
        assert turn.history[-2:] == [TurnState.PLAIN_TEXT_DONE, TurnState.DONE]

    @pytest.mark.asyncio
    async def test_no_dispatch_when_trigger_did_not_fire(self, registry, provider, fake_backend_cls):
        dispatcher = AsyncMock()
        orch = StreamOrchestrator(registry, dispatcher, provider)
        backend = fake_backend_cls([COURSES_CALL])
        turn = Turn()
        chunks = await _collect(orch.stream_turn(_user("What's the weather today"), backend, turn))

        assert chunks == []
        dispatcher.dispatch.assert_not_awaited()
        assert backend.calls[0]["tools"] is None
        assert len(backend.calls) == 1
        assert turn.offered_tools == []
        assert turn.state is TurnState.DONE


class TestJsonAnswers:
    @pytest.mark.asyncio
    async def test_json_answer_without_tools_streams_through(self, orchestrator, fake_backend_cls):
        backend = fake_backend_cls(['{"name": "Alice", ', '"age": 30}'])
        chunks = await _collect(orchestrator.stream_turn(_user("What's the weather today"), backend))
        assert [c.message for c in chunks] == ['{"name": "Alice", ', '"age": 30}']
        assert all(c.tool_call_name is None for c in chunks)

    @pytest.mark.asyncio
    async def test_json_naming_unknown_tool_kept_verbatim(self, orchestrator, fake_backend_cls):
        backend = fake_backend_cls(['{"name": "Alice", ', '"age": 30}'])
        turn = Turn()
        chunks = await _collect(orchestrator.stream_turn(_user("Show me my Canvas courses"), backend, turn))
        assert [(c.message, c.tool_call_name) for c in chunks] == [('{"name": "Alice", "age": 30}', None)]
        assert len(backend.calls) == 1
        assert turn.state is TurnState.DONE

    @pytest.mark.asyncio
    async def test_json_without_usable_name_kept_verbatim(self, orchestrator, fake_backend_cls):
        backend = fake_backend_cls(['{"name": 7, "age": 30}'])
        chunks = await _collect(orchestrator.stream_turn(_user("Show me my Canvas courses"), backend))
        assert [c.message for c in chunks] == ['{"name": 7, "age": 30}']


class TestTurnMetrics:
    @pytest.mark.asyncio
    async def test_tool_turn_recorded(self, orchestrator, fake_backend_cls):
        backend = fake_backend_cls([COURSES_CALL], ["You have two courses."])
        turn = Turn()
        await _collect(orchestrator.stream_turn(_user("Show me my Canvas courses"), backend, turn))

        assert turn.backend == "fake"
        assert turn.offered_tools == ["canvas_courses", "canvas_grades"]
        assert turn.tool_name == "canvas_courses"
        assert turn.first_token_at is not None
        assert turn.started_at <= turn.first_token_at <= turn.completed_at
        assert turn.initial_output == COURSES_CALL
        assert turn.tool_call_raw == COURSES_CALL
        assert turn.tool_raw_output == "• EECS 449\n• MATH 217"
        assert turn.response_length == len("You have two courses.")

        [invocation] = turn.invocations
        assert invocation.name == "canvas_courses"
        assert invocation.success is True
        assert invocation.error is None
        assert invocation.duration_ms >= 0

        metrics = turn.metrics()
        assert metrics["state"] == "done"
        assert metrics["time_to_first_token_ms"] >= 0
        assert metrics["total_latency_ms"] >= metrics["time_to_first_token_ms"]
        assert metrics["invocations"][0]["success"] is True
        assert metrics["error"] is None

    @pytest.mark.asyncio
    async def test_plain_turn_length_counts_forwarded_text(self, orchestrator, fake_backend_cls):
        backend = fake_backend_cls(["It's ", "sunny."])
        turn = Turn()
        await _collect(orchestrator.stream_turn(_user("What's the weather today"), backend, turn))
        assert turn.response_length == len("It's sunny.")
        assert turn.tool_call_raw is None
        assert turn.invocations == []
        assert turn.metrics()["generation_duration_ms"] >= 0

    @pytest.mark.asyncio
    async def test_failed_tool_invocation_recorded(self, registry, provider, fake_backend_cls):
        @tool("canvas_courses", name="Broken", description="Fails.", input_model=NoArgs)
        async def broken(args, context):
            raise RuntimeError("Canvas is down")

        await registry.register(broken)
        orch = StreamOrchestrator(registry, ToolDispatcher(registry, ToolContext(settings=None)), provider)
        turn = Turn()
        with pytest.raises(ToolExecutionError):
            await _collect(orch.stream_turn(_user("Show me my Canvas courses"), fake_backend_cls([COURSES_CALL]), turn))

        [invocation] = turn.invocations
        assert invocation.success is False
        assert "Canvas is down" in invocation.error
        assert "Canvas is down" in turn.metrics()["error"]
        assert turn.tool_raw_output is None

    @pytest.mark.asyncio
    async def test_backend_error_recorded(self, orchestrator, fake_backend_cls):
        turn = Turn()
        with pytest.raises(BackendError):
            await _collect(orchestrator.stream_turn(_user("hi"), fake_backend_cls(BackendError("connection refused")), turn))
        assert turn.metrics()["error"] == "connection refused"
        assert turn.first_token_at is None
        assert turn.completed_at is not None

class TestFailures:
    @pytest.mark.asyncio
    async def test_backend_error_propagates(self, orchestrator, fake_backend_cls):
        backend = fake_backend_cls(BackendError("connection refused"))
        turn = Turn()
        with pytest.raises(BackendError):
            await _collect(orchestrator.stream_turn(_user("hi"), backend, turn))
        assert turn.state is TurnState.ERROR

    @pytest.mark.asyncio
    async def test_unexpected_exception_wrapped(self, orchestrator, fake_backend_cls):
        backend = fake_backend_cls(KeyError("choices"))
        with pytest.raises(BackendError) as exc:
            await _collect(orchestrator.stream_turn(_user("hi"), backend))
        assert isinstance(exc.value.__cause__, KeyError)

    @pytest.mark.asyncio
    async def test_cancel_before_completion_never_dispatches(self, registry, provider):
        started = asyncio.Event()
        cancelled = asyncio.Event()

        class Hanging:
            name = "hanging"
            progress_mode = "incremental"

            async def generate(self, messages, tools=None, on_progress=None):
                on_progress('<tool_call>{"name": "canvas_courses"')
                started.set()
                try:
                    await asyncio.Event().wait()
                except asyncio.CancelledError:
                    cancelled.set()
                    raise

        dispatcher = AsyncMock()
        orch = StreamOrchestrator(registry, dispatcher, provider)
        turn = Turn()
        chunks = []

        async def consume():
            async for c in orch.stream_turn(_user("Show me my Canvas courses"), Hanging(), turn):
                chunks.append(c)

        task = asyncio.create_task(consume())
        await asyncio.wait_for(started.wait(), timeout=1)
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert cancelled.is_set()
        dispatcher.dispatch.assert_not_awaited()
        assert chunks == []
        assert turn.state is TurnState.ERROR


class TestStreamBuffer:
    def test_marker_stops_forwarding(self):
        buf = StreamBuffer()
        assert buf.feed("Hi ") == "Hi "
        assert buf.feed("<tool_call>{") == ""
        assert buf.marker == "tool_call"
        assert buf.feed("more") == ""
        assert buf.text == "Hi <tool_call>{more"

    def test_flush_releases_held_tail(self):
        buf = StreamBuffer()
        assert buf.feed("a <") == "a "
        assert buf.flush() == "<"

    def test_complete_reconciles_final_text(self):
        buf = StreamBuffer()
        buf.feed("Hello")
        assert buf.complete("Hello world") == " world"
        assert buf.complete("Hello world") == ""

    def test_json_opening_is_text_without_tools(self):
        buf = StreamBuffer(json_calls=False)
        assert buf.feed('{"name": ') == '{"name": '
        assert buf.marker is None

    def test_unsent_json_answer_unchanged(self):
        buf = StreamBuffer()
        buf.feed('{"name": "Alice"}')
        assert buf.marker == "json"
        assert buf.unsent_plain_text() == '{"name": "Alice"}'
