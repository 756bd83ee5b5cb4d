"""
Tool source contract, argument validation, and in-process tool metadata.
"""

from __future__ import annotations

import asyncio
import contextvars
import difflib
import functools
import inspect
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Optional,
    Protocol,
    Union,
    runtime_checkable,
)

from ..exceptions import ToolArgumentError, ToolInvocationError
from ..types import ToolDescriptor, ToolResult

JsonSchema = Dict[str, Any]
ParameterValue = Union[str, int, float, bool, dict, list, None]
ParamMetadata = Dict[str, Any]


class RegistryState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    TOOLS_LISTED = "tools_listed"


@runtime_checkable
class ToolSource(Protocol):
    """
    Interface every tool registry satisfies.

    ``call_tool`` reports tool-level failures inside the returned
    ``ToolResult``; it raises only ``NotConnectedError``.
    """

    identity: str

    @property
    def state(self) -> RegistryState: ...

    async def connect(self) -> None: ...

    async def list_tools(self) -> List[ToolDescriptor]: ...

    async def call_tool(
        self, name: str, arguments: Dict[str, Any], call_id: str = ""
    ) -> ToolResult: ...

    async def disconnect(self) -> None: ...


# ---------------------------------------------------------------------------
# JSON schema validation
# ---------------------------------------------------------------------------

_JSON_TYPES: Dict[str, tuple] = {
    "string": (str,),
    "integer": (int,),
    "number": (int, float),
    "boolean": (bool,),
    "array": (list, tuple),
    "object": (dict,),
    "null": (type(None),),
}


def _matches_type(value: Any, expected: Union[str, List[str]]) -> bool:
    names = expected if isinstance(expected, list) else [expected]
    for name in names:
        python_types = _JSON_TYPES.get(name)
        if python_types is None:
            return True
        # bool is an int subclass; JSON keeps them apart
        if isinstance(value, bool) and name in ("integer", "number"):
            continue
        if name == "integer" and isinstance(value, float) and value.is_integer():
            return True
        if isinstance(value, python_types):
            return True
    return False


def validate_arguments(tool_name: str, schema: JsonSchema, arguments: Dict[str, Any]) -> None:
    """
    Validate ``arguments`` against the top level of an object ``schema``.

    Checks required properties, declared property types, enums, and (when the
    schema sets ``additionalProperties: false``) unexpected names, with a
    did-you-mean suggestion for likely typos.

    Raises:
        ToolArgumentError: On the first violation found.
    """
    if not isinstance(arguments, dict):
        raise ToolArgumentError(
            tool_name, "", f"arguments must be an object, got {type(arguments).__name__}"
        )

    properties: Dict[str, JsonSchema] = schema.get("properties") or {}
    required: List[str] = list(schema.get("required") or [])

    if schema.get("additionalProperties") is False:
        extra = sorted(set(arguments) - set(properties))
        if extra:
            hints = []
            for name in extra:
                matches = difflib.get_close_matches(name, list(properties), n=1, cutoff=0.6)
                if matches:
                    hints.append(f"'{name}' -> Did you mean '{matches[0]}'?")
                else:
                    hints.append(f"'{name}' is not a valid parameter")
            raise ToolArgumentError(
                tool_name,
                ", ".join(extra),
                "Unexpected parameter(s)",
                "; ".join(hints),
            )

    for name in required:
        if name not in arguments:
            raise ToolArgumentError(
                tool_name,
                name,
                "Missing required parameter",
                f"Required parameters: {', '.join(repr(r) for r in required)}",
            )

    for name, value in arguments.items():
        prop = properties.get(name)
        if not isinstance(prop, dict):
            continue
        expected = prop.get("type")
        if expected and not _matches_type(value, expected):
            raise ToolArgumentError(
                tool_name,
                name,
                f"expected {expected}, got {type(value).__name__}",
            )
        allowed = prop.get("enum")
        if allowed and value not in allowed:
            raise ToolArgumentError(
                tool_name,
                name,
                f"value {value!r} is not one of {allowed!r}",
            )


# ---------------------------------------------------------------------------
# In-process tools
# ---------------------------------------------------------------------------


def _python_type_to_json(param_type: type) -> str:
    """Map a Python type to a JSON schema type string."""
    type_map = {
        str: "string",
        int: "integer",
        float: "number",
        bool: "boolean",
        list: "array",
        dict: "object",
    }
    return type_map.get(param_type, "string")


@dataclass
class ToolParameter:
    """
    Schema definition for a single tool parameter.

    Attributes:
        name: Parameter name (should match the function parameter name).
        param_type: Python type (str, int, float, bool, list, dict).
        description: Human-readable description explaining what the parameter does.
        required: Whether this parameter must be provided (default: True).
        enum: Optional list of allowed values.
    """

    name: str
    param_type: type
    description: str
    required: bool = True
    enum: Optional[List[Any]] = None

    def to_schema(self) -> JsonSchema:
        schema: JsonSchema = {
            "type": _python_type_to_json(self.param_type),
            "description": self.description,
        }
        if self.enum:
            schema["enum"] = self.enum
        return schema


class Tool:
    """
    A Python callable exposed as a tool.

    Sync functions run in a worker thread with the caller's context
    variables; async functions and async generators are awaited directly.
    Generator results are joined into one string.

    Attributes:
        name: Unique identifier for the tool.
        description: Description of what the tool does (shown to the model).
        parameters: ToolParameter definitions.
        function: The underlying callable.
        injected_kwargs: Extra kwargs passed at execution, hidden from the model.
    """

    def __init__(
        self,
        name: str,
        description: str,
        parameters: List[ToolParameter],
        function: Callable[..., Any],
        *,
        injected_kwargs: Optional[Dict[str, Any]] = None,
    ):
        self.name = name
        self.description = description
        self.parameters = parameters
        self.function = function
        self.injected_kwargs = injected_kwargs or {}
        self.is_async = inspect.iscoroutinefunction(function) or inspect.isasyncgenfunction(
            function
        )
        self._validate_tool_definition()

    def _validate_tool_definition(self) -> None:
        if not self.name or not self.name.strip():
            raise ToolArgumentError(
                "<unnamed>", "name", "Tool name cannot be empty", "Provide a descriptive name"
            )
        if not self.description or not self.description.strip():
            raise ToolArgumentError(
                self.name,
                "description",
                "Tool description cannot be empty",
                "Provide a clear description explaining what the tool does",
            )
        names = [p.name for p in self.parameters]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ToolArgumentError(
                self.name, ", ".join(duplicates), "Duplicate parameter name(s)"
            )

    def input_schema(self) -> JsonSchema:
        return {
            "type": "object",
            "properties": {param.name: param.to_schema() for param in self.parameters},
            "required": [param.name for param in self.parameters if param.required],
            "additionalProperties": False,
        }

    def descriptor(self, source: str = "") -> ToolDescriptor:
        return ToolDescriptor(
            name=self.name,
            description=self.description,
            input_schema=self.input_schema(),
            source=source,
        )

    def validate(self, params: Dict[str, ParameterValue]) -> None:
        validate_arguments(self.name, self.input_schema(), params)

    async def aexecute(self, params: Dict[str, ParameterValue]) -> Any:
        """
        Validate ``params`` then run the underlying callable.

        Raises:
            ToolArgumentError: If ``params`` do not match the schema.
            ToolInvocationError: If the callable raises.
        """
        self.validate(params)

        call_args: Dict[str, Any] = dict(params)
        call_args.update(self.injected_kwargs)

        try:
            if self.is_async:
                result = self.function(**call_args)
                if inspect.isasyncgen(result):
                    return "".join([str(chunk) async for chunk in result])
                return await result

            loop = asyncio.get_running_loop()
            context = contextvars.copy_context()
            func_with_args = functools.partial(self.function, **call_args)
            executor = ThreadPoolExecutor(max_workers=1)
            try:
                result = await loop.run_in_executor(executor, context.run, func_with_args)
            finally:
                # a timed-out call leaves its worker running; the loop must not wait for it
                executor.shutdown(wait=False)
            if inspect.isgenerator(result):
                return "".join(str(chunk) for chunk in result)
            return result
        except Exception as exc:
            raise ToolInvocationError(self.name, f"{type(exc).__name__}: {exc}", exc) from exc

    def __repr__(self) -> str:
        return f"Tool(name={self.name!r}, parameters={[p.name for p in self.parameters]})"


__all__ = [
    "RegistryState",
    "ToolSource",
    "Tool",
    "ToolParameter",
    "validate_arguments",
    "JsonSchema",
    "ParamMetadata",
]
