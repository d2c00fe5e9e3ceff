"""Tool dispatcher: decodes arguments, runs the tool and renders its output as text."""
import asyncio
import json
import logging
import time
from typing import Any, Optional

from pydantic import BaseModel

from ..errors import PetalsError, ToolExecutionError, ToolNotFound
from .registry import ToolContext, ToolRegistry

logger = logging.getLogger(__name__)


def render_output(output: Any) -> str:
    """Tool output as text: strings pass through, structures become JSON."""
    if output is None:
        return ""
    if isinstance(output, str):
        return output
    if isinstance(output, BaseModel):
        return output.model_dump_json(indent=2)
    if isinstance(output, (dict, list, tuple)):
        return json.dumps(output, ensure_ascii=False, indent=2, default=str)
    return str(output)


def render_plain(raw: str) -> str:
    """Readable text for a rendered tool result; JSON becomes indented ``key: value`` lines."""
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        return raw
    if not isinstance(data, (dict, list)):
        return raw
    return "\n".join(_plain_lines(data)) or raw


def _plain_lines(data: Any, indent: str = ""):
    if isinstance(data, dict):
        for key, value in data.items():
            if isinstance(value, (dict, list)):
                yield f"{indent}{key}:"
                yield from _plain_lines(value, indent + "  ")
            else:
                yield f"{indent}{key}: {_plain_scalar(value)}"
    elif isinstance(data, list):
        for item in data:
            if isinstance(item, dict) and not any(isinstance(v, (dict, list)) for v in item.values()):
                yield f"{indent}• " + ", ".join(f"{k}: {_plain_scalar(v)}" for k, v in item.items())
            elif isinstance(item, (dict, list)):
                yield f"{indent}•"
                yield from _plain_lines(item, indent + "  ")
            else:
                yield f"{indent}• {_plain_scalar(item)}"


def _plain_scalar(value: Any) -> str:
    if value is None:
        return "none"
    if isinstance(value, bool):
        return "yes" if value else "no"
    return str(value)


class ToolDispatcher:
    def __init__(self, registry: ToolRegistry, context: ToolContext, timeout_s: Optional[float] = None):
        self.registry = registry
        self.context = context
        self.timeout_s = timeout_s or None

    async def dispatch(self, tool_name: str, raw_arguments: Any) -> str:
        """Execute a registered tool by name and return its textual output.

        Raises ToolNotFound for an unknown name, ArgumentDecodeError for
        arguments that do not fit the tool's input model and
        ToolExecutionError for anything the tool itself raises.
        """
        tool = await self.registry.get(tool_name)
        if tool is None:
            logger.warning(f"Unknown tool: {tool_name}")
            raise ToolNotFound(tool_name)

        args = tool.decode(raw_arguments)

        arg_str = ", ".join(f"{k}={v!r}" for k, v in args.model_dump(exclude_none=True).items())
        logger.info(f"Executing tool: {tool_name}({arg_str})")
        t0 = time.monotonic()

        try:
            if self.timeout_s:
                output = await asyncio.wait_for(tool.execute(args, self.context), timeout=self.timeout_s)
            else:
                output = await tool.execute(args, self.context)
        except asyncio.TimeoutError as e:
            logger.error(f"Tool {tool_name} timed out after {self.timeout_s}s")
            raise ToolExecutionError(tool_name, f"timed out after {self.timeout_s}s") from e
        except PetalsError as e:
            logger.error(f"Tool {tool_name} failed: {e}")
            raise ToolExecutionError(tool_name, str(e)) from e
        except Exception as e:
            logger.error(f"Tool {tool_name} failed: {e}", exc_info=True)
            raise ToolExecutionError(tool_name, f"{type(e).__name__}: {e}") from e

        text = render_output(output)
        elapsed = time.monotonic() - t0
        logger.info(f"Tool {tool_name}: {elapsed:.1f}s -> {len(text)} chars")
        return text
