"""Tool-call detection and parsing for streamed backend text.

Backends announce structured tool calls with textual markers. This module
finds them, tells the streamer how much trailing text could still grow into
a marker, and extracts ``ToolCall`` objects from the buffered response.
"""
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass
class ToolCall:
    name: str
    arguments: Any = field(default_factory=dict)


# Literal markers that may appear anywhere in a response
_LITERAL_MARKERS: List[Tuple[str, str]] = [
    ("tool_call", "<tool_call>"),
    ("python_tag", "<|python_tag|>"),
    ("tool_calls_token", "[TOOL_CALLS]"),
    ("function_tag", "<function="),
]

# A response that opens with a JSON object naming a function
_JSON_OPENING = re.compile(r'^\s*(?:```(?:json)?\s*)?\{\s*"(?:name|function|tool_calls)"\s*:')
_JSON_KEYS = ('name"', 'function"', 'tool_calls"')

_TOOL_CALL_BLOCK = re.compile(r"<tool_call>(.*?)(?:</tool_call>|$)", re.DOTALL)
_FUNCTION_TAG = re.compile(r"<function=([A-Za-z0-9_\-]+)>(.*?)(?:</function>|$)", re.DOTALL)
_NAME_FIELD = re.compile(r'"name"\s*:\s*"([^"]+)"')
_ARGS_FIELD = re.compile(r'"(?:arguments|parameters)"\s*:\s*')
_CODE_FENCE = re.compile(r"^\s*```(?:json)?\s*|\s*```\s*$")
_END_TOKENS = re.compile(r"<\|(?:eom_id|eot_id|end)\|>")


def find_marker(text: str, json_calls: bool = True) -> Optional[Tuple[str, int]]:
    """Return (marker name, start offset) of the earliest marker in ``text``.

    ``json_calls=False`` ignores a bare leading JSON object, which is only a
    tool call when tools were offered.
    """
    if json_calls and _JSON_OPENING.match(text):
        return "json", len(text) - len(text.lstrip())
    found = None
    for name, literal in _LITERAL_MARKERS:
        idx = text.find(literal)
        if idx != -1 and (found is None or idx < found[1]):
            found = (name, idx)
    return found


def holdback_length(text: str, json_calls: bool = True) -> int:
    """Number of trailing characters that could still become a marker."""
    if json_calls and _could_open_json_call(text.lstrip()):
        return len(text)
    longest = 0
    for _, literal in _LITERAL_MARKERS:
        for k in range(min(len(literal) - 1, len(text)), longest, -1):
            if text.endswith(literal[:k]):
                longest = k
                break
    return longest


def _could_open_json_call(s: str) -> bool:
    # True while ``s`` (left-stripped) is still a prefix of a JSON tool-call opening
    if s.startswith("```"):
        s = s[3:]
        if "json".startswith(s):
            return True
        if s.startswith("json"):
            s = s[4:]
        s = s.lstrip()
    elif "```".startswith(s):
        return True
    if not s:
        return True
    if not s.startswith("{"):
        return False
    s = s[1:].lstrip()
    if not s:
        return True
    if not s.startswith('"'):
        return False
    rest = s[1:]
    for key in _JSON_KEYS:
        if key.startswith(rest):
            return True
        if rest.startswith(key) and not rest[len(key):].strip():
            return True
    return False


def parse_tool_calls(text: str) -> List[ToolCall]:
    """Extract tool calls: strict JSON decoding first, then regex on the name field."""
    calls: List[ToolCall] = []
    for payload in _payloads(text, calls):
        decoded = _decode_json(payload)
        if decoded is not None:
            found = _calls_from_obj(decoded)
            if found:
                calls.extend(found)
                continue
        calls.extend(_regex_calls(payload))
    return calls


def select_tool_call(calls: List[ToolCall]) -> Optional[ToolCall]:
    """Only the first call of a response is dispatched."""
    if not calls:
        return None
    if len(calls) > 1:
        ignored = ", ".join(c.name for c in calls[1:])
        logger.warning(f"Response carried {len(calls)} tool calls, ignoring: {ignored}")
    return calls[0]


def strip_tool_calls(text: str) -> str:
    """Plain text of a response with all tool-call syntax removed."""
    text = _TOOL_CALL_BLOCK.sub("", text)
    marker = find_marker(text)
    if marker is not None:
        text = text[:marker[1]]
    return text.strip()


def _payloads(text: str, calls: List[ToolCall]) -> List[str]:
    payloads = [m.group(1) for m in _TOOL_CALL_BLOCK.finditer(text)]

    for m in _FUNCTION_TAG.finditer(text):
        calls.append(ToolCall(name=m.group(1), arguments=_decode_json(m.group(2)) or m.group(2).strip()))

    for _, literal in (("python_tag", "<|python_tag|>"), ("tool_calls_token", "[TOOL_CALLS]")):
        idx = text.find(literal)
        if idx != -1:
            payloads.append(_END_TOKENS.sub("", text[idx + len(literal):]))

    if not payloads and not calls and _JSON_OPENING.match(text):
        payloads.append(_CODE_FENCE.sub("", text))
    return payloads


def _decode_json(payload: str) -> Any:
    payload = payload.strip()
    if not payload:
        return None
    try:
        return json.loads(payload)
    except json.JSONDecodeError:
        pass
    start = payload.find("{")
    if start == -1:
        return None
    obj_text = _balanced_object(payload, start)
    if obj_text is None:
        return None
    try:
        return json.loads(obj_text)
    except json.JSONDecodeError:
        return None


def _balanced_object(text: str, start: int) -> Optional[str]:
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    return None


def _calls_from_obj(obj: Any) -> List[ToolCall]:
    if isinstance(obj, list):
        return [c for item in obj for c in _calls_from_obj(item)]
    if not isinstance(obj, dict):
        return []
    if isinstance(obj.get("tool_calls"), list):
        return _calls_from_obj(obj["tool_calls"])
    if isinstance(obj.get("function"), dict):
        obj = obj["function"]
    name = obj.get("name")
    if not isinstance(name, str) or not name:
        return []
    args = obj.get("arguments", obj.get("parameters", {}))
    return [ToolCall(name=name, arguments=args)]


def _regex_calls(payload: str) -> List[ToolCall]:
    calls = []
    for m in _NAME_FIELD.finditer(payload):
        args: Any = {}
        am = _ARGS_FIELD.search(payload, m.end())
        if am and payload[am.end():am.end() + 1] == "{":
            raw = _balanced_object(payload, am.end()) or payload[am.end():]
            decoded = _decode_json(raw)
            args = decoded if isinstance(decoded, dict) else raw
        calls.append(ToolCall(name=m.group(1), arguments=args))
        logger.info(f"Tool call recovered by pattern match: {m.group(1)}")
    return calls
