"""Tool system: registry, tool-call parsing and the dispatcher."""
from .registry import (
    Permission, Tool, ToolContext, ToolFilter, ToolParam, ToolRegistry, tool,
)
from .router import ToolCall, parse_tool_calls, select_tool_call
from .executor import ToolDispatcher
from .builtin import default_tools
