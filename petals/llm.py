"""Generation backends: remote OpenAI-compatible API and a local Ollama server.

Both adapters stream text through ``on_progress`` and render native tool-call
deltas into the text stream as ``<tool_call>{...}</tool_call>`` so the
orchestrator sees one uniform format.
"""
import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Protocol

import httpx
import openai
from openai import AsyncOpenAI

from .errors import BackendError, UnexpectedBackendShape

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are Petal, a helpful assistant with access to tools: Calendar (create/fetch events), \
Canvas/LMS (courses, assignments, grades) and Reminders (create/search). Only use tools when explicitly requested. \
You will be passed in a set of tools for a query IF it is deemed to require tools.
Current date is {current_datetime}."""

TOOL_LIST_PROMPT = """

Available tools:
{tool_list}

To use a tool, reply with only <tool_call>{{"name": "<tool id>", "arguments": {{...}}}}</tool_call>."""

SUMMARY_SYSTEM_PROMPT = "You are a helpful assistant that summarizes tool results."

SUMMARY_PROMPT = """The tool returned the following raw output:

{raw}

Please summarize this result in a friendly, helpful way as if you're explaining it to a user."""

ProgressCallback = Callable[[str], None]


def system_prompt(tool_list: str = "") -> str:
    prompt = SYSTEM_PROMPT.format(current_datetime=datetime.now().strftime("%Y-%m-%d %H:%M (%A)"))
    if tool_list:
        prompt += TOOL_LIST_PROMPT.format(tool_list=tool_list)
    return prompt


def summary_messages(raw: str) -> List[dict]:
    return [
        {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
        {"role": "user", "content": SUMMARY_PROMPT.format(raw=raw)},
    ]


def render_tool_call(name: str, arguments: Any) -> str:
    if isinstance(arguments, str):
        try:
            arguments = json.loads(arguments) if arguments.strip() else {}
        except json.JSONDecodeError:
            pass
    return "<tool_call>" + json.dumps({"name": name, "arguments": arguments}, ensure_ascii=False) + "</tool_call>"


@dataclass
class GenerateResult:
    final_text: str


class ChatBackend(Protocol):
    name: str
    # "incremental": on_progress receives new text only; "cumulative": the whole response so far
    progress_mode: str

    async def generate(
        self,
        messages: List[dict],
        tools: Optional[List[dict]] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> GenerateResult:
        ...


def _emit(on_progress: Optional[ProgressCallback], text: str):
    if on_progress and text:
        on_progress(text)


class OpenAIBackend:
    """Remote hosted model via the OpenAI chat completions API (streaming)."""

    name = "remote"
    progress_mode = "incremental"

    def __init__(self, settings, client: Optional[AsyncOpenAI] = None):
        self.settings = settings
        self.model = settings.openai_chat_model
        self._client = client

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(
                api_key=self.settings.openai_api_key,
                base_url=self.settings.openai_base_url,
                timeout=self.settings.llm_timeout_s,
            )
        return self._client

    async def generate(self, messages, tools=None, on_progress=None) -> GenerateResult:
        kwargs: Dict[str, Any] = {"model": self.model, "messages": messages, "stream": True}
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"

        parts: List[str] = []
        calls: Dict[int, Dict[str, str]] = {}
        try:
            stream = await self._get_client().chat.completions.create(**kwargs)
            async for chunk in stream:
                if not hasattr(chunk, "choices"):
                    raise UnexpectedBackendShape(f"Remote backend sent {type(chunk).__name__}, expected a completion chunk")
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta
                if delta is None:
                    continue
                if delta.content:
                    parts.append(delta.content)
                    _emit(on_progress, delta.content)
                for tc in delta.tool_calls or []:
                    entry = calls.setdefault(tc.index, {"name": "", "arguments": ""})
                    if tc.function is not None:
                        entry["name"] += tc.function.name or ""
                        entry["arguments"] += tc.function.arguments or ""
        except openai.OpenAIError as e:
            logger.error(f"Remote backend failed: {e}")
            raise BackendError(f"Remote backend failed: {e}") from e

        for idx in sorted(calls):
            text = render_tool_call(calls[idx]["name"], calls[idx]["arguments"])
            parts.append(text)
            _emit(on_progress, text)
        return GenerateResult(final_text="".join(parts))


class OllamaBackend:
    """Locally resident model served by Ollama; one generation at a time."""

    name = "local"
    progress_mode = "incremental"

    def __init__(self, settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = settings.ollama_base_url.rstrip("/")
        self.model = settings.ollama_model
        self.num_ctx = settings.ollama_num_ctx
        self.timeout = settings.llm_timeout_s
        self.transport = transport
        self._lock = asyncio.Lock()

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self.transport)

    async def generate(self, messages, tools=None, on_progress=None) -> GenerateResult:
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "stream": True,
            "options": {"num_ctx": self.num_ctx},
        }
        if tools:
            payload["tools"] = tools

        parts: List[str] = []
        async with self._lock:
            try:
                async with self._client() as client:
                    async with client.stream("POST", "/api/chat", json=payload) as resp:
                        if resp.status_code >= 400:
                            body = await resp.aread()
                            raise BackendError(f"Ollama returned HTTP {resp.status_code}: {body[:200]!r}")
                        async for line in resp.aiter_lines():
                            if not line.strip():
                                continue
                            if self._handle_line(line, parts, on_progress):
                                break
            except httpx.HTTPError as e:
                logger.error(f"Local backend failed: {e}")
                raise BackendError(f"Local backend failed: {e}") from e
        return GenerateResult(final_text="".join(parts))

    def _handle_line(self, line: str, parts: List[str], on_progress) -> bool:
        """Consume one NDJSON line; True when the response is complete."""
        try:
            data = json.loads(line)
        except json.JSONDecodeError as e:
            raise UnexpectedBackendShape(f"Ollama sent a non-JSON line: {line[:80]!r}") from e
        if not isinstance(data, dict):
            raise UnexpectedBackendShape(f"Ollama sent {type(data).__name__}, expected an object")
        if data.get("error"):
            raise BackendError(f"Ollama error: {data['error']}")

        message = data.get("message") or {}
        content = message.get("content") or ""
        if content:
            parts.append(content)
            _emit(on_progress, content)
        for call in message.get("tool_calls") or []:
            fn = call.get("function") or {}
            text = render_tool_call(fn.get("name", ""), fn.get("arguments", {}))
            parts.append(text)
            _emit(on_progress, text)
        return bool(data.get("done"))

    async def list_models(self) -> List[str]:
        """Names of the models available on the Ollama server."""
        try:
            async with self._client() as client:
                resp = await client.get("/api/tags")
                resp.raise_for_status()
                data = resp.json()
        except httpx.HTTPError as e:
            raise BackendError(f"Local backend failed: {e}") from e
        return [m["name"] for m in data.get("models", []) if "name" in m]


def build_backends(settings) -> Dict[str, ChatBackend]:
    return {
        "remote": OpenAIBackend(settings),
        "local": OllamaBackend(settings),
    }
