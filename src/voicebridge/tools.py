from __future__ import annotations

import inspect
import json
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Union

import structlog

logger = structlog.get_logger(__name__)

ToolHandler = Callable[[dict[str, Any]], Union[str, Awaitable[str]]]


class ArgParseError(ValueError):
    """Raised when streamed tool-call arguments cannot be turned into a JSON object."""

    def __init__(self, message: str, raw: str):
        super().__init__(message)
        self.raw = raw


def _top_level_objects(raw: str) -> list[dict[str, Any]]:
    """Decode every well-formed top-level JSON object found in `raw`, in order."""
    spans: list[str] = []
    depth = 0
    start = 0
    in_string = False
    escaped = False

    for i, ch in enumerate(raw):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue

        if ch == '"':
            in_string = True
        elif ch == "{":
            if depth == 0:
                start = i
            depth += 1
        elif ch == "}" and depth > 0:
            depth -= 1
            if depth == 0:
                spans.append(raw[start:i + 1])

    objects: list[dict[str, Any]] = []
    for span in spans:
        try:
            value = json.loads(span)
        except json.JSONDecodeError:
            continue
        if isinstance(value, dict):
            objects.append(value)
    return objects


def parse_tool_arguments(raw: str) -> dict[str, Any]:
    """
    Parse the accumulated argument string of a streamed tool call.

    Models occasionally stream the same arguments twice (`{...}{...}`) or leave
    trailing garbage. One salvage pass keeps the last well-formed top-level
    object; anything else raises ArgParseError.
    """
    text = (raw or "").strip()
    if not text:
        return {}

    try:
        value = json.loads(text)
    except json.JSONDecodeError:
        logger.warning("Malformed tool arguments, attempting salvage", raw=text[:200])
    else:
        if isinstance(value, dict):
            return value
        raise ArgParseError("Tool arguments must be a JSON object", raw)

    objects = _top_level_objects(text)
    if not objects:
        raise ArgParseError("Unrecoverable tool arguments", raw)
    return objects[-1]


@dataclass
class ToolDefinition:
    """One callable function exposed to the model."""

    name: str
    description: str
    handler: ToolHandler
    say: str = ""
    parameters: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )

    def to_openai(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    async def invoke(self, args: dict[str, Any]) -> str:
        result = self.handler(args)
        if inspect.isawaitable(result):
            result = await result
        if isinstance(result, str):
            return result
        return safe_json_dumps(result)


@dataclass
class ToolInvocation:
    """A tool call collected from the completion stream."""

    name: str = ""
    raw_arguments: str = ""
    arguments: Optional[dict[str, Any]] = None
    result: Optional[str] = None

    def add_fragment(self, name: Optional[str], arguments: Optional[str]) -> None:
        if name:
            self.name = name
        if arguments:
            self.raw_arguments += arguments


class ToolCatalog:
    """Name-indexed set of tool definitions."""

    def __init__(self, tools: Optional[list[ToolDefinition]] = None):
        self._tools: dict[str, ToolDefinition] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: ToolDefinition) -> None:
        if tool.name in self._tools:
            raise ValueError(f"Duplicate tool name: {tool.name}")
        self._tools[tool.name] = tool

    def get(self, name: str) -> Optional[ToolDefinition]:
        return self._tools.get(name)

    def definitions(self) -> list[dict[str, Any]]:
        return [tool.to_openai() for tool in self._tools.values()]

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools


def safe_json_dumps(value: Any) -> str:
    try:
        return json.dumps(value, ensure_ascii=False)
    except (TypeError, ValueError):
        return json.dumps({"ok": False, "error": "json_encode_failed"})
