"""
Tests for in-process tools: the @tool decorator, argument validation and
LocalToolRegistry.

Tests cover:
- Schema inference (required/optional, injected kwargs hidden)
- Validation errors with did-you-mean suggestions
- Registry lifecycle and NotConnectedError
- Tool failures returned as data (not found, bad arguments, raised, timed out)
- Context variables reaching sync tools run in a worker thread
"""

from __future__ import annotations

import asyncio
import contextvars
from typing import List, Optional

import pytest

from convogate.exceptions import (
    NotConnectedError,
    ToolArgumentError,
    ToolInvocationError,
    ToolNotFoundError,
)
from convogate.tools import LocalToolRegistry, RegistryState, tool, validate_arguments

request_id: contextvars.ContextVar[str] = contextvars.ContextVar("request_id", default="none")


@tool(description="Add two integers")
def add(a: int, b: int) -> int:
    return a + b


@tool(
    description="Search documents",
    param_metadata={"mode": {"description": "Search mode", "enum": ["fast", "deep"]}},
    injected_kwargs={"db": "sqlite"},
)
def search(query: str, mode: str = "fast", tags: Optional[List[str]] = None, db: str = "") -> str:
    return f"{db}:{mode}:{query}:{tags}"


class TestToolDecorator:
    def test_schema_inference(self) -> None:
        schema = search.input_schema()
        assert set(schema["properties"]) == {"query", "mode", "tags"}
        assert schema["required"] == ["query"]
        assert schema["properties"]["tags"]["type"] == "array"
        assert schema["properties"]["mode"]["enum"] == ["fast", "deep"]
        assert schema["additionalProperties"] is False

    def test_descriptor(self) -> None:
        descriptor = add.descriptor(source="math")
        assert descriptor.name == "add"
        assert descriptor.source == "math"
        assert descriptor.input_schema["properties"]["a"]["type"] == "integer"

    def test_descriptions_from_docstring(self) -> None:
        @tool()
        def convert(amount: float, currency: str = "EUR") -> str:
            """
            Convert an amount of US dollars.

            Uses the daily reference rate.

            Args:
                amount (float): Amount in USD.
                currency: Target currency code, for example
                    EUR or GBP.

            Returns:
                The converted amount.
            """
            return f"{amount} {currency}"

        assert convert.description == "Convert an amount of US dollars."
        properties = convert.input_schema()["properties"]
        assert properties["amount"]["description"] == "Amount in USD."
        assert properties["currency"]["description"] == "Target currency code, for example EUR or GBP."

    def test_explicit_metadata_wins_over_docstring(self) -> None:
        @tool(description="Explicit", param_metadata={"x": {"description": "From metadata"}})
        def f(x: int) -> int:
            """Docstring summary.

            Args:
                x: From docstring.
            """
            return x

        assert f.description == "Explicit"
        assert f.input_schema()["properties"]["x"]["description"] == "From metadata"

    @pytest.mark.asyncio
    async def test_injected_kwargs_passed(self) -> None:
        assert await search.aexecute({"query": "x"}) == "sqlite:fast:x:None"


class TestValidateArguments:
    def test_typo_gets_suggestion(self) -> None:
        with pytest.raises(ToolArgumentError) as exc_info:
            add.validate({"a": 1, "bb": 2})
        assert "Did you mean 'b'?" in str(exc_info.value)

    def test_missing_required(self) -> None:
        with pytest.raises(ToolArgumentError) as exc_info:
            add.validate({"a": 1})
        assert exc_info.value.param_name == "b"

    def test_bool_is_not_an_integer(self) -> None:
        with pytest.raises(ToolArgumentError):
            add.validate({"a": True, "b": 1})

    def test_integral_float_accepted(self) -> None:
        add.validate({"a": 1.0, "b": 2})

    def test_enum_enforced(self) -> None:
        with pytest.raises(ToolArgumentError):
            search.validate({"query": "x", "mode": "slow"})

    def test_non_object_rejected(self) -> None:
        with pytest.raises(ToolArgumentError):
            validate_arguments("t", {"type": "object", "properties": {}}, ["a"])  # type: ignore[arg-type]

    def test_open_schema_allows_extra_names(self) -> None:
        validate_arguments("t", {"type": "object", "properties": {}}, {"anything": 1})


class TestLocalToolRegistry:
    @pytest.fixture
    def registry(self) -> LocalToolRegistry:
        registry = LocalToolRegistry("local", tools=[add], call_timeout=0.2)

        @registry.tool(description="Always fails")
        def explode() -> str:
            raise RuntimeError("boom")

        @registry.tool(description="Never finishes in time")
        async def stall() -> str:
            await asyncio.sleep(5)
            return "late"

        @registry.tool(description="Report the current request id")
        def whoami() -> str:
            return request_id.get()

        return registry

    @pytest.mark.asyncio
    async def test_requires_connect(self, registry: LocalToolRegistry) -> None:
        with pytest.raises(NotConnectedError):
            await registry.list_tools()
        with pytest.raises(NotConnectedError):
            await registry.call_tool("add", {"a": 1, "b": 2})

    @pytest.mark.asyncio
    async def test_list_and_call(self, registry: LocalToolRegistry) -> None:
        await registry.connect()
        names = [d.name for d in await registry.list_tools()]
        assert names == ["add", "explode", "stall", "whoami"]
        assert registry.state is RegistryState.TOOLS_LISTED

        result = await registry.call_tool("add", {"a": 2, "b": 3}, call_id="c1")
        assert result.ok
        assert result.output == 5
        assert result.call_id == "c1"
        assert result.duration > 0

        await registry.disconnect()
        assert registry.state is RegistryState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_failures_are_data(self, registry: LocalToolRegistry) -> None:
        await registry.connect()
        await registry.list_tools()

        unknown = await registry.call_tool("nope", {})
        assert isinstance(unknown.error, ToolNotFoundError)

        bad_args = await registry.call_tool("add", {"a": "one", "b": 2})
        assert isinstance(bad_args.error, ToolArgumentError)

        raised = await registry.call_tool("explode", {})
        assert isinstance(raised.error, ToolInvocationError)
        assert "boom" in raised.error.detail

        timed_out = await registry.call_tool("stall", {})
        assert isinstance(timed_out.error, ToolInvocationError)
        assert "timed out" in timed_out.error.detail

    @pytest.mark.asyncio
    async def test_unlisted_tool_is_not_callable(self, registry: LocalToolRegistry) -> None:
        await registry.connect()
        result = await registry.call_tool("add", {"a": 1, "b": 2})
        assert isinstance(result.error, ToolNotFoundError)

    @pytest.mark.asyncio
    async def test_context_reaches_sync_tool(self, registry: LocalToolRegistry) -> None:
        await registry.connect()
        await registry.list_tools()
        token = request_id.set("req-42")
        try:
            result = await registry.call_tool("whoami", {})
        finally:
            request_id.reset(token)
        assert result.output == "req-42"
