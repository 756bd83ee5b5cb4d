"""
In-process tool registry over Python callables.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Iterable, List, Optional

from ..exceptions import (
    NotConnectedError,
    ToolError,
    ToolInvocationError,
    ToolNotFoundError,
)
from ..types import ToolDescriptor, ToolResult
from .base import ParamMetadata, RegistryState, Tool
from .decorators import tool

logger = logging.getLogger(__name__)


class LocalToolRegistry:
    """
    Tool source backed by ``Tool`` objects living in this process.

    Honours the same contract as a remote registry: it must be connected
    before use, ``list_tools`` returns fresh descriptors, and ``call_tool``
    reports failures inside the returned ``ToolResult``.

    Example:
        >>> registry = LocalToolRegistry("math")
        >>> @registry.tool(description="Add two integers")
        ... def add(a: int, b: int) -> int:
        ...     return a + b
    """

    def __init__(
        self,
        identity: str = "local",
        tools: Optional[Iterable[Tool]] = None,
        call_timeout: Optional[float] = 30.0,
    ) -> None:
        self.identity = identity
        self.call_timeout = call_timeout
        self._tools: Dict[str, Tool] = {}
        self._state = RegistryState.DISCONNECTED
        self._listed: set = set()
        for item in tools or []:
            self.register(item)

    @property
    def state(self) -> RegistryState:
        return self._state

    def register(self, tool_instance: Tool) -> Tool:
        """Register a Tool; a later tool with the same name replaces the earlier one."""
        if tool_instance.name in self._tools:
            logger.warning(
                "Tool '%s' re-registered in registry '%s'", tool_instance.name, self.identity
            )
        self._tools[tool_instance.name] = tool_instance
        return tool_instance

    def tool(
        self,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
        param_metadata: Optional[Dict[str, ParamMetadata]] = None,
        injected_kwargs: Optional[Dict[str, Any]] = None,
    ) -> Callable[[Callable[..., Any]], Tool]:
        """Decorator registering a function as a tool in this registry."""

        def decorator(func: Callable[..., Any]) -> Tool:
            return self.register(
                tool(
                    name=name,
                    description=description,
                    param_metadata=param_metadata,
                    injected_kwargs=injected_kwargs,
                )(func)
            )

        return decorator

    async def connect(self) -> None:
        if self._state is RegistryState.DISCONNECTED:
            self._state = RegistryState.CONNECTED

    async def list_tools(self) -> List[ToolDescriptor]:
        if self._state is RegistryState.DISCONNECTED:
            raise NotConnectedError(self.identity, "list_tools")
        descriptors = [t.descriptor(source=self.identity) for t in self._tools.values()]
        self._listed = {d.name for d in descriptors}
        self._state = RegistryState.TOOLS_LISTED
        return descriptors

    async def call_tool(self, name: str, arguments: Dict[str, Any], call_id: str = "") -> ToolResult:
        if self._state is RegistryState.DISCONNECTED:
            raise NotConnectedError(self.identity, "call_tool")

        started = time.perf_counter()
        result = ToolResult(call_id=call_id, tool_name=name)
        target = self._tools.get(name) if name in self._listed else None
        if target is None:
            result.error = ToolNotFoundError(name, sorted(self._listed))
            return result

        try:
            result.output = await asyncio.wait_for(target.aexecute(arguments), self.call_timeout)
        except asyncio.TimeoutError:
            result.error = ToolInvocationError(
                name, f"Tool '{name}' timed out after {self.call_timeout}s"
            )
        except ToolError as exc:
            result.error = exc
        result.duration = time.perf_counter() - started
        logger.debug("Local tool %s finished in %.3fs (ok=%s)", name, result.duration, result.ok)
        return result

    async def disconnect(self) -> None:
        self._state = RegistryState.DISCONNECTED
        self._listed = set()


__all__ = ["LocalToolRegistry"]
