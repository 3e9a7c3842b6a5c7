"""
Tool registry and tool-choice policy.

Holds the callable tools a conversation may offer the model, the
choice policy that gates tool-call signals, and the invocation path
(argument parsing, handler call, result serialisation).
"""

import asyncio
import inspect
import json
import logging
from typing import Any, Callable, Optional, Union

from lmchat.errors import (
    ConfigurationError,
    DuplicateToolError,
    MalformedToolArguments,
    ToolExecutionError,
    ToolNotFoundError,
)
from lmchat.schemas import Tool, ToolChoice, ToolDescriptor

logger = logging.getLogger(__name__)

NULL_RESULT = "null"

_JSON_TYPES: dict[Any, str] = {
    str: "string",
    int: "integer",
    float: "number",
    bool: "boolean",
    list: "array",
    dict: "object",
}


# ─────────────────────────────────────────────────────────────────────
# TOOL CONSTRUCTION
# ─────────────────────────────────────────────────────────────────────


def _schema_for_signature(func: Callable[..., Any]) -> dict:
    properties = {}
    required = []
    for param in inspect.signature(func).parameters.values():
        if param.kind in (param.VAR_POSITIONAL, param.VAR_KEYWORD):
            continue
        annotation = param.annotation
        origin = getattr(annotation, "__origin__", annotation)
        prop = {}
        if origin in _JSON_TYPES:
            prop["type"] = _JSON_TYPES[origin]
        properties[param.name] = prop
        if param.default is param.empty:
            required.append(param.name)
    schema: dict[str, Any] = {"type": "object", "properties": properties}
    if required:
        schema["required"] = required
    return schema


def tool_from_function(
    func: Callable[..., Any],
    name: Optional[str] = None,
    description: Optional[str] = None,
    input_schema: Optional[dict] = None,
) -> Tool:
    """
    Build a Tool from a plain or async function.

    Name defaults to the function name, description to the first
    docstring paragraph, schema to one derived from the signature.
    """
    doc = inspect.getdoc(func) or ""
    return Tool(
        descriptor=ToolDescriptor(
            name=name or func.__name__,
            description=description if description is not None else doc.split("\n\n")[0].strip(),
            input_schema=input_schema or _schema_for_signature(func),
        ),
        handler=func,
    )


def tool(
    func: Optional[Callable[..., Any]] = None,
    *,
    name: Optional[str] = None,
    description: Optional[str] = None,
):
    """Decorator form of tool_from_function.

    Usage:
        @tool
        def get_weather(city: str) -> str:
            \"\"\"Current weather for a city.\"\"\"
    """
    def wrap(f: Callable[..., Any]) -> Tool:
        return tool_from_function(f, name=name, description=description)

    if func is not None:
        return wrap(func)
    return wrap


# ─────────────────────────────────────────────────────────────────────
# INVOCATION HELPERS
# ─────────────────────────────────────────────────────────────────────


def parse_arguments(tool_name: str, raw: Union[str, dict, None]) -> dict[str, Any]:
    """
    Parse a raw argument payload into keyword arguments.

    Malformed payloads degrade to an empty argument set; the turn goes on.
    """
    if raw is None:
        return {}
    if isinstance(raw, dict):
        return dict(raw)
    if not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
        if not isinstance(parsed, dict):
            raise MalformedToolArguments(
                tool_name, raw, f"expected object, got {type(parsed).__name__}"
            )
    except json.JSONDecodeError as e:
        error = MalformedToolArguments(tool_name, raw, str(e))
        logger.warning("%s; invoking with no arguments", error)
        return {}
    except MalformedToolArguments as e:
        logger.warning("%s; invoking with no arguments", e)
        return {}
    return parsed


def serialize_result(result: Any) -> str:
    """Tool result as text. None becomes "null" so it differs from an empty result."""
    if result is None:
        return NULL_RESULT
    if isinstance(result, str):
        return result
    if hasattr(result, "model_dump"):
        result = result.model_dump()
    return json.dumps(result, default=str, ensure_ascii=False)


def format_tool_error(error: ToolExecutionError) -> str:
    """Tool-role message body for a failed invocation."""
    return json.dumps({"error": f"{type(error.cause).__name__}: {error.cause}"}, ensure_ascii=False)


# ─────────────────────────────────────────────────────────────────────
# REGISTRY
# ─────────────────────────────────────────────────────────────────────


class ToolRegistry:
    """
    Name -> Tool mapping plus the choice policy.

    Policy semantics:
        auto     - the model picks freely among registered tools, or none
        none     - no tools offered; tool-call signals are suppressed
        required - at least one tool call before natural termination
        specific - only the named tool is offered, and it is called first
    """

    def __init__(self, tools: Optional[list[Tool]] = None, choice: Union[ToolChoice, str, dict, None] = None):
        self._tools: dict[str, Tool] = {}
        for t in tools or []:
            self.register(t)
        self._choice = ToolChoice.parse(choice)

    def register(self, tool: Union[Tool, Callable[..., Any]]) -> Tool:
        """
        Register a tool. Plain functions are wrapped with tool_from_function.

        Raises:
            DuplicateToolError: If the name is already registered (the first stays).
        """
        if not isinstance(tool, Tool):
            tool = tool_from_function(tool)
        if tool.name in self._tools:
            raise DuplicateToolError(tool.name)
        self._tools[tool.name] = tool
        logger.debug("Registered tool %s", tool.name)
        return tool

    def resolve(self, name: str) -> Tool:
        try:
            return self._tools[name]
        except KeyError:
            raise ToolNotFoundError(name) from None

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def names(self) -> list[str]:
        return list(self._tools)

    def tools(self) -> list[Tool]:
        return list(self._tools.values())

    # ── policy ──────────────────────────────────────────────────────

    def choice(self) -> ToolChoice:
        return self._choice

    def set_choice(self, choice: Union[ToolChoice, str, dict]) -> None:
        """
        Set the choice policy.

        Raises:
            ConfigurationError: Unknown mode, or specific tool not registered.
        """
        parsed = ToolChoice.parse(choice)
        self._check_choice(parsed)
        self._choice = parsed

    def validate(self) -> None:
        """
        Check the policy against the tools registered right now.

        Raises:
            ConfigurationError: Specific names an unregistered tool, or
                required has no tool to call.
        """
        self._check_choice(self._choice)
        if self._choice.mode == "required" and not self._tools:
            raise ConfigurationError("Tool choice 'required' needs at least one registered tool")

    def _check_choice(self, choice: ToolChoice) -> None:
        if choice.mode == "specific" and choice.name not in self._tools:
            raise ConfigurationError(
                f"Tool choice names unregistered tool {choice.name!r}; "
                f"registered: {', '.join(self._tools) or '(none)'}"
            )

    def offered(self) -> list[ToolDescriptor]:
        """Descriptors presented to the model under the current policy."""
        mode = self._choice.mode
        if mode == "none":
            return []
        if mode == "specific":
            return [self.resolve(self._choice.name).descriptor]
        return [t.descriptor for t in self._tools.values()]

    # ── invocation ──────────────────────────────────────────────────

    async def invoke(self, name: str, raw_arguments: Union[str, dict, None]) -> str:
        """
        Invoke a registered tool and return its result as text.

        Raises:
            ToolNotFoundError: No such tool
            ToolExecutionError: The handler raised
        """
        tool = self.resolve(name)
        arguments = parse_arguments(name, raw_arguments)
        handler = tool.handler

        try:
            if inspect.iscoroutinefunction(handler):
                result = await handler(**arguments)
            else:
                result = await asyncio.to_thread(handler, **arguments)
                if inspect.isawaitable(result):
                    result = await result
        except Exception as e:
            raise ToolExecutionError(name, e) from e

        return serialize_result(result)
