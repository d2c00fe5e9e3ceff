"""Tool registry: tool descriptors, filtering and exactly-once lazy registration."""
import asyncio
import inspect
import json
import logging
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Type, Union

from pydantic import BaseModel, ValidationError

from ..errors import ArgumentDecodeError

logger = logging.getLogger(__name__)


class Permission(IntEnum):
    BASIC = 0
    STANDARD = 1
    SENSITIVE = 2
    ADMINISTRATIVE = 3

    @classmethod
    def parse(cls, value: Union["Permission", int, str]) -> "Permission":
        if isinstance(value, str):
            try:
                return cls[value.strip().upper()]
            except KeyError:
                raise ValueError(f"Unknown permission level: {value!r}") from None
        return cls(value)


@dataclass(frozen=True)
class ToolParam:
    name: str
    type: str = "string"
    description: str = ""
    required: bool = True
    example: Any = None
    enum: Optional[Tuple[Any, ...]] = None
    items: Optional[Dict[str, Any]] = None

    def json_schema(self) -> Dict[str, Any]:
        schema: Dict[str, Any] = {"type": self.type}
        desc = self.description
        if self.example is not None:
            desc = f"{desc} (e.g. {self.example})" if desc else f"e.g. {self.example}"
        if desc:
            schema["description"] = desc
        if self.enum:
            schema["enum"] = list(self.enum)
        if self.type == "array":
            schema["items"] = self.items or {"type": "string"}
        return schema


@dataclass
class ToolContext:
    """Per-process resources handed to every tool execution."""
    settings: Any
    session_factory: Any = None  # async_sessionmaker for the SQLite store
    http_transport: Any = None   # httpx transport override (tests)


ToolHandler = Callable[[BaseModel, ToolContext], Awaitable[Any]]


def params_from_model(model: Type[BaseModel]) -> Tuple[ToolParam, ...]:
    """Derive the parameter schema from a pydantic input model."""
    schema = model.model_json_schema()
    required = set(schema.get("required", []))
    params = []
    for name, prop in schema.get("properties", {}).items():
        resolved = _non_null(prop)
        examples = prop.get("examples") or resolved.get("examples") or []
        enum = resolved.get("enum")
        params.append(ToolParam(
            name=name,
            type=resolved.get("type", "string"),
            description=prop.get("description", ""),
            required=name in required,
            example=examples[0] if examples else None,
            enum=tuple(enum) if enum else None,
            items=resolved.get("items"),
        ))
    return tuple(params)


def _non_null(prop: Dict[str, Any]) -> Dict[str, Any]:
    # Optional[X] renders as anyOf [X, null]
    if "type" in prop or "enum" in prop:
        return prop
    for sub in prop.get("anyOf", []):
        if sub.get("type") != "null":
            return sub
    return prop


@dataclass(frozen=True)
class Tool:
    id: str
    name: str
    description: str
    domain: str
    trigger_keywords: Tuple[str, ...]
    permission: Permission
    input_model: Type[BaseModel]
    handler: ToolHandler = field(repr=False, compare=False)
    params: Tuple[ToolParam, ...] = field(init=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "params", params_from_model(self.input_model))

    def parameters_schema(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {p.name: p.json_schema() for p in self.params},
            "required": [p.name for p in self.params if p.required],
        }

    def to_openai_format(self) -> Dict[str, Any]:
        """Function-calling definition accepted by OpenAI and Ollama chat APIs."""
        return {
            "type": "function",
            "function": {
                "name": self.id,
                "description": self.description,
                "parameters": self.parameters_schema(),
            },
        }

    def describe(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "domain": self.domain,
            "trigger_keywords": list(self.trigger_keywords),
            "permission": self.permission.name.lower(),
            "params": [
                {"name": p.name, "type": p.type, "required": p.required, "example": p.example}
                for p in self.params
            ],
        }

    def decode(self, raw: Any) -> BaseModel:
        """Decode raw arguments (JSON text or mapping) into the typed input model."""
        if raw is None or raw == "":
            data: Any = {}
        elif isinstance(raw, (str, bytes)):
            try:
                data = json.loads(raw)
            except json.JSONDecodeError as e:
                raise ArgumentDecodeError(self.id, f"invalid JSON: {e}") from e
        elif isinstance(raw, BaseModel):
            data = raw.model_dump()
        else:
            data = raw

        if not isinstance(data, dict):
            raise ArgumentDecodeError(self.id, f"expected a JSON object, got {type(data).__name__}")
        try:
            return self.input_model.model_validate(data)
        except ValidationError as e:
            raise ArgumentDecodeError(self.id, str(e)) from e

    async def execute(self, args: BaseModel, context: ToolContext) -> Any:
        return await self.handler(args, context)


def tool(
    id: str,
    name: str,
    description: str,
    input_model: Type[BaseModel],
    domain: str = "",
    trigger_keywords: Sequence[str] = (),
    permission: Permission = Permission.BASIC,
):
    """Decorator turning an async handler into a Tool descriptor."""
    def decorator(func: ToolHandler) -> Tool:
        return Tool(
            id=id,
            name=name,
            description=description or func.__doc__ or "",
            domain=domain,
            trigger_keywords=tuple(trigger_keywords),
            permission=permission,
            input_model=input_model,
            handler=func,
        )
    return decorator


@dataclass
class ToolFilter:
    domain: Optional[str] = None
    keyword: Optional[str] = None
    max_permission: Optional[Permission] = None

    def matches(self, t: Tool) -> bool:
        if self.domain and t.domain.lower() != self.domain.lower():
            return False
        if self.keyword:
            needle = self.keyword.lower()
            if not any(needle in kw.lower() for kw in t.trigger_keywords):
                return False
        if self.max_permission is not None and t.permission > self.max_permission:
            return False
        return True


ToolLoader = Callable[[], Union[Iterable[Tool], Awaitable[Iterable[Tool]]]]


class ToolRegistry:
    """Concurrency-safe tool table, populated once by ``loader`` on first use."""

    def __init__(self, loader: Optional[ToolLoader] = None):
        self._loader = loader
        self._tools: Dict[str, Tool] = {}
        self._lock = asyncio.Lock()
        self._ready = asyncio.Event()

    @property
    def initialized(self) -> bool:
        return self._ready.is_set()

    async def ensure_initialized(self):
        if self._ready.is_set():
            return
        async with self._lock:
            if self._ready.is_set():
                return
            loaded = self._loader() if self._loader else []
            if inspect.isawaitable(loaded):
                loaded = await loaded
            for t in loaded:
                self._tools[t.id] = t
                logger.info(f"Registered tool: {t.id}")
            self._ready.set()
            logger.info(f"Tool registry initialized with {len(self._tools)} tools")

    async def register(self, t: Tool):
        await self.ensure_initialized()
        async with self._lock:
            if t.id in self._tools:
                logger.info(f"Replacing tool: {t.id}")
            self._tools[t.id] = t
        logger.info(f"Registered tool: {t.id}")

    async def get(self, tool_id: str) -> Optional[Tool]:
        await self.ensure_initialized()
        return self._tools.get(tool_id)

    async def get_all(self) -> List[Tool]:
        await self.ensure_initialized()
        return [self._tools[k] for k in sorted(self._tools)]

    async def get_tools(self, criteria: Optional[ToolFilter] = None) -> List[Tool]:
        tools = await self.get_all()
        if criteria is None:
            return tools
        return [t for t in tools if criteria.matches(t)]

    async def definitions(self, criteria: Optional[ToolFilter] = None) -> List[Dict[str, Any]]:
        return [t.to_openai_format() for t in await self.get_tools(criteria)]

    async def descriptions_for_llm(self, criteria: Optional[ToolFilter] = None) -> str:
        """Generate tool list for LLM system prompt."""
        lines = []
        for t in await self.get_tools(criteria):
            params = []
            for p in t.params:
                req = "required" if p.required else "optional"
                params.append(f"{p.name}({req}): {p.description}")
            params_text = ", ".join(params) if params else "none"
            lines.append(f"- {t.id}: {t.description} | params: {params_text}")
        return "\n".join(lines)

    def clear(self):
        """Empty the registry and re-arm the initialization gate (tests)."""
        self._tools.clear()
        self._ready = asyncio.Event()
