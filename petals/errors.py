"""Error hierarchy for the chat core.

Classifier misses degrade gracefully; dispatcher and backend errors
propagate to the caller and terminate the turn's stream.
"""
from typing import Optional


class PetalsError(Exception):
    """Base class for every error raised by the chat core."""


class VectorizationMiss(PetalsError):
    """Text could not be mapped to a vector."""


class ToolError(PetalsError):
    """Raised by a tool for a domain failure (bad input, missing config, denied access)."""


class ToolNotFound(PetalsError):
    def __init__(self, tool_name: str):
        super().__init__(f"Unknown tool: {tool_name}")
        self.tool_name = tool_name


class ArgumentDecodeError(PetalsError):
    def __init__(self, tool_name: Optional[str], detail: str):
        label = tool_name or "<unnamed>"
        super().__init__(f"Invalid arguments for {label}: {detail}")
        self.tool_name = tool_name
        self.detail = detail


class ToolExecutionError(PetalsError):
    """Wraps the failure of a tool; the original exception is kept as ``__cause__``."""

    def __init__(self, tool_name: str, detail: str):
        super().__init__(f"Tool {tool_name} failed: {detail}")
        self.tool_name = tool_name
        self.detail = detail


class BackendError(PetalsError):
    """Network or inference failure in a generation backend."""


class UnexpectedBackendShape(BackendError):
    """A backend returned a payload that is not the expected shape."""
