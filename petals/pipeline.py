"""Per-turn stream orchestration: trigger -> generate -> detect tool call -> dispatch -> summarize.

A turn streams plain text straight through to the caller until a tool-call
marker shows up. From then on the backend output is buffered silently; once
the backend completes, the first tool call is dispatched (only if that tool
was offered to the backend this turn) and a second, tool-free generation
phrases the result as one final chunk.
"""
import asyncio
import contextlib
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional

from .errors import ArgumentDecodeError, BackendError, PetalsError, ToolNotFound, UnexpectedBackendShape
from .llm import ChatBackend, GenerateResult, summary_messages, system_prompt
from .nlp.exemplars import ExemplarProvider
from .protocol import StreamChunk
from .tools.executor import ToolDispatcher, render_plain
from .tools.registry import ToolFilter, ToolRegistry
from .tools.router import ToolCall, find_marker, holdback_length, parse_tool_calls, select_tool_call, strip_tool_calls

logger = logging.getLogger(__name__)

_DONE = object()


class TurnState(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    PLAIN_TEXT_DONE = "plain_text_done"
    TOOL_CALL_ACCUMULATING = "tool_call_accumulating"
    DISPATCHING = "dispatching"
    SUMMARIZING = "summarizing"
    DONE = "done"
    ERROR = "error"


_TERMINAL = (TurnState.DONE, TurnState.ERROR)


def _ms(end: Optional[float], start: Optional[float]) -> Optional[float]:
    if end is None or start is None:
        return None
    return round((end - start) * 1000.0, 1)


@dataclass
class ToolInvocation:
    name: str
    started_at: float = field(default_factory=time.monotonic)
    ended_at: Optional[float] = None
    success: Optional[bool] = None
    error: Optional[str] = None

    @property
    def duration_ms(self) -> Optional[float]:
        return _ms(self.ended_at, self.started_at)

    def finish(self, error: Optional[BaseException] = None):
        self.ended_at = time.monotonic()
        self.success = error is None
        if error is not None:
            self.error = str(error) or type(error).__name__


@dataclass
class Turn:
    """State machine record and timing for one chat turn."""

    id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])
    state: TurnState = TurnState.IDLE
    history: List[TurnState] = field(default_factory=lambda: [TurnState.IDLE])
    backend: Optional[str] = None
    offered_tools: List[str] = field(default_factory=list)
    tool_name: Optional[str] = None

    # Timing uses time.monotonic()
    started_at: float = field(default_factory=time.monotonic)
    first_token_at: Optional[float] = None
    completed_at: Optional[float] = None

    response_length: int = 0
    initial_output: str = ""
    tool_call_raw: Optional[str] = None
    tool_raw_output: Optional[str] = None
    invocations: List[ToolInvocation] = field(default_factory=list)
    error: Optional[str] = None

    def transition(self, new: TurnState):
        logger.debug(f"[{self.id}] {self.state.value} -> {new.value}")
        self.state = new
        self.history.append(new)

    @property
    def finished(self) -> bool:
        return self.state in _TERMINAL

    @property
    def tools_attached(self) -> bool:
        return bool(self.offered_tools)

    def metrics(self) -> Dict[str, Any]:
        return {
            "turn_id": self.id,
            "state": self.state.value,
            "backend": self.backend,
            "offered_tools": list(self.offered_tools),
            "tool_name": self.tool_name,
            "time_to_first_token_ms": _ms(self.first_token_at, self.started_at),
            "total_latency_ms": _ms(self.completed_at, self.started_at),
            "generation_duration_ms": _ms(self.completed_at, self.first_token_at),
            "response_length": self.response_length,
            "initial_output": self.initial_output,
            "tool_call_raw": self.tool_call_raw,
            "tool_raw_output": self.tool_raw_output,
            "invocations": [
                {"name": i.name, "duration_ms": i.duration_ms, "success": i.success, "error": i.error}
                for i in self.invocations
            ],
            "error": self.error,
        }


class StreamBuffer:
    """Accumulates backend progress and decides how much of it may be shown.

    ``json_calls`` enables the bare-JSON tool-call marker; it is off when no
    tools were offered, so a plain JSON answer streams through as text.
    """

    def __init__(self, progress_mode: str = "incremental", json_calls: bool = True):
        self.cumulative = progress_mode == "cumulative"
        self.json_calls = json_calls
        self.text = ""
        self.forwarded = 0
        self.marker: Optional[str] = None
        self.marker_at: Optional[int] = None

    def feed(self, progress: str) -> str:
        """Merge one progress update; return the text that is now safe to forward."""
        if self.cumulative:
            if len(progress) >= len(self.text) or not self.text.startswith(progress):
                self.text = progress
        else:
            self.text += progress
        return self._release()

    def complete(self, final_text: str) -> str:
        """Reconcile with the backend's final text (non-streaming backends report only here)."""
        if len(final_text) > len(self.text) and final_text.startswith(self.text):
            return self.feed(final_text if self.cumulative else final_text[len(self.text):])
        return ""

    def _release(self) -> str:
        if self.marker is not None:
            return ""
        found = find_marker(self.text, json_calls=self.json_calls)
        if found is not None:
            self.marker, self.marker_at = found
            return ""
        safe = len(self.text) - holdback_length(self.text, json_calls=self.json_calls)
        if safe <= self.forwarded:
            return ""
        out = self.text[self.forwarded:safe]
        self.forwarded = safe
        return out

    def flush(self) -> str:
        out = self.text[self.forwarded:]
        self.forwarded = len(self.text)
        return out

    def unsent_plain_text(self) -> str:
        """Not-yet-forwarded text for a turn that falls back to plain text.

        Tool-call syntax is removed, except after a bare JSON marker: that
        text is an ordinary answer and passes through unchanged.
        """
        rest = self.flush()
        if self.marker == "json":
            return rest
        return strip_tool_calls(rest)

    @property
    def marked_text(self) -> Optional[str]:
        if self.marker_at is None:
            return None
        return self.text[self.marker_at:]


class StreamOrchestrator:
    def __init__(
        self,
        registry: ToolRegistry,
        dispatcher: ToolDispatcher,
        trigger: Optional[ExemplarProvider] = None,
        tool_filter: Optional[ToolFilter] = None,
    ):
        self.registry = registry
        self.dispatcher = dispatcher
        self.trigger = trigger
        self.tool_filter = tool_filter

    async def stream_turn(
        self,
        messages: List[dict],
        backend: ChatBackend,
        turn: Optional[Turn] = None,
    ) -> AsyncIterator[StreamChunk]:
        """Run one chat turn against ``backend`` and yield the chunks to show.

        ``messages`` is the conversation history (role/content dicts, no
        system prompt). Errors at any stage propagate after the turn is
        marked as failed. Timing and tool invocations are recorded on ``turn``.
        """
        turn = turn or Turn()
        tid = turn.id
        turn.started_at = time.monotonic()
        turn.backend = backend.name
        turn.transition(TurnState.SENDING)

        try:
            tools, tool_list = await self._select_tools(messages)
            turn.offered_tools = [t["function"]["name"] for t in tools]
            prompt = [{"role": "system", "content": system_prompt(tool_list)}] + list(messages)
            logger.info(f"[{tid}] Sending turn to {backend.name} ({len(messages)} messages, {len(tools)} tools)")

            buffer = StreamBuffer(backend.progress_mode, json_calls=bool(tools))
            result = None
            async with contextlib.aclosing(self._run_backend(backend, prompt, tools)) as events:
                async for event in events:
                    if isinstance(event, GenerateResult):
                        result = event
                        continue
                    out = self._advance(turn, buffer, buffer.feed(event))
                    if out:
                        yield self._chunk(turn, out)

            if not isinstance(result, GenerateResult):
                raise UnexpectedBackendShape(f"{backend.name} returned {type(result).__name__}")
            out = self._advance(turn, buffer, buffer.complete(result.final_text))
            if out:
                yield self._chunk(turn, out)
            if turn.state is TurnState.SENDING:
                turn.transition(TurnState.STREAMING)
            turn.initial_output = buffer.text

            if buffer.marker is None:
                turn.transition(TurnState.PLAIN_TEXT_DONE)
                tail = buffer.flush()
                if tail:
                    yield self._chunk(turn, tail)
                turn.transition(TurnState.DONE)
                return

            turn.tool_call_raw = buffer.marked_text
            call = select_tool_call(parse_tool_calls(buffer.text))
            if call is None and buffer.marker != "json":
                raise ArgumentDecodeError(None, "tool-call marker present but no tool name could be extracted")

            raw = None
            if call is None:
                logger.info(f"[{tid}] Leading JSON is not a tool call, answering with plain text")
            elif call.name in turn.offered_tools:
                raw = await self._dispatch(turn, call)
            else:
                logger.warning(f"[{tid}] Model called {call.name}, which was not offered this turn; "
                               f"answering with plain text")

            if raw is None:
                turn.tool_name = None
                turn.transition(TurnState.PLAIN_TEXT_DONE)
                plain = buffer.unsent_plain_text()
                if plain:
                    yield self._chunk(turn, plain)
                turn.transition(TurnState.DONE)
                return

            turn.transition(TurnState.SUMMARIZING)
            summary = await self._summarize(backend, raw)
            yield self._chunk(turn, summary, call.name)
            turn.transition(TurnState.DONE)

        except (asyncio.CancelledError, GeneratorExit):
            if not turn.finished:
                logger.info(f"[{tid}] Turn cancelled in state {turn.state.value}")
                turn.error = "cancelled"
                turn.transition(TurnState.ERROR)
            raise
        except PetalsError as e:
            logger.error(f"[{tid}] Turn failed in state {turn.state.value}: {e}")
            turn.error = str(e)
            turn.transition(TurnState.ERROR)
            raise
        except Exception as e:
            logger.error(f"[{tid}] Turn failed in state {turn.state.value}: {e}", exc_info=True)
            turn.error = f"{type(e).__name__}: {e}"
            turn.transition(TurnState.ERROR)
            raise BackendError(turn.error) from e
        finally:
            turn.completed_at = time.monotonic()
            elapsed = turn.completed_at - turn.started_at
            logger.info(f"[{tid}] Turn {turn.state.value}: {elapsed:.1f}s (tool={turn.tool_name or '-'}, "
                        f"{turn.response_length} chars)")

    def _chunk(self, turn: Turn, text: str, tool_name: Optional[str] = None) -> StreamChunk:
        turn.response_length += len(text)
        return StreamChunk(message=text, tool_call_name=tool_name)

    def _advance(self, turn: Turn, buffer: StreamBuffer, out: str) -> str:
        if turn.state is TurnState.SENDING and buffer.text:
            turn.first_token_at = time.monotonic()
            turn.transition(TurnState.STREAMING)
        if buffer.marker is not None and turn.state is TurnState.STREAMING:
            logger.info(f"[{turn.id}] Tool-call marker detected ({buffer.marker}), buffering")
            turn.transition(TurnState.TOOL_CALL_ACCUMULATING)
        return out

    async def _dispatch(self, turn: Turn, call: ToolCall) -> Optional[str]:
        """Run the chosen tool; None when the registry does not know it."""
        turn.tool_name = call.name
        turn.transition(TurnState.DISPATCHING)
        invocation = ToolInvocation(call.name)
        turn.invocations.append(invocation)
        try:
            raw = await self.dispatcher.dispatch(call.name, call.arguments)
        except ToolNotFound as e:
            invocation.finish(e)
            logger.warning(f"[{turn.id}] Model requested unknown tool {call.name}, answering with plain text")
            return None
        except (Exception, asyncio.CancelledError) as e:
            invocation.finish(e)
            raise
        invocation.finish()
        turn.tool_raw_output = raw
        return raw

    async def _select_tools(self, messages: List[dict]):
        """Tool definitions to attach, and their prompt listing; empty unless the trigger fires."""
        if self.trigger is None:
            return [], ""
        last_user = next((m.get("content", "") for m in reversed(messages) if m.get("role") == "user"), "")
        if not last_user or not self.trigger.should_use_tools(last_user):
            return [], ""
        definitions = await self.registry.definitions(self.tool_filter)
        listing = await self.registry.descriptions_for_llm(self.tool_filter)
        return definitions, listing

    async def _run_backend(self, backend: ChatBackend, messages: List[dict], tools: List[dict]):
        """Yield progress text as it arrives, then the GenerateResult.

        Progress may be reported from any thread; completion is signalled
        through the same queue so no progress is lost or reordered.
        """
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()

        def on_progress(text: str):
            loop.call_soon_threadsafe(queue.put_nowait, text)

        task = asyncio.create_task(backend.generate(messages, tools=tools or None, on_progress=on_progress))
        task.add_done_callback(lambda _: queue.put_nowait(_DONE))
        try:
            while True:
                item = await queue.get()
                if item is _DONE:
                    break
                yield item
            yield task.result()
        finally:
            if not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

    async def _summarize(self, backend: ChatBackend, raw: str) -> str:
        result = await backend.generate(summary_messages(raw), tools=None, on_progress=None)
        if not isinstance(result, GenerateResult):
            raise UnexpectedBackendShape(f"{backend.name} returned {type(result).__name__}")
        text = result.final_text.strip()
        if find_marker(text) is not None:
            text = strip_tool_calls(text)
        return text or render_plain(raw)
