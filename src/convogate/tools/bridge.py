"""
Tool bridge: one merged, collision-free toolset over many registries.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..exceptions import ToolInvocationError, ToolNotFoundError
from ..types import ToolDescriptor, ToolInvocation, ToolResult
from .base import ToolSource

logger = logging.getLogger(__name__)

MAX_TOOL_NAME_LENGTH = 64
_INVALID_NAME_CHARS = re.compile(r"[^A-Za-z0-9_-]")


def sanitize_tool_name(name: str) -> str:
    """Restrict ``name`` to ``[A-Za-z0-9_-]{1,64}``, the set every vendor accepts."""
    cleaned = _INVALID_NAME_CHARS.sub("_", name)[:MAX_TOOL_NAME_LENGTH]
    return cleaned or "tool"


class ToolBridge:
    """
    Merges the toolsets of several registries and routes calls back to them.

    A tool name offered by more than one registry is exposed as
    ``<identity>__<name>`` for every owner, so the exposed names do not depend
    on registry order. Anything still clashing after that gets a numeric
    suffix. No tool is ever dropped.

    Args:
        registries: Tool sources, in priority order for listing.
        max_concurrency: Upper bound on tool calls running at once.
    """

    def __init__(self, registries: Sequence[ToolSource] = (), max_concurrency: int = 4) -> None:
        self.registries: List[ToolSource] = list(registries)
        self.max_concurrency = max(1, max_concurrency)
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._toolset: Optional[List[ToolDescriptor]] = None
        # exposed name -> (registry, original name)
        self._routes: Dict[str, Tuple[ToolSource, str]] = {}

    def add_registry(self, registry: ToolSource) -> None:
        self.registries.append(registry)
        self._toolset = None

    # -- lifecycle ---------------------------------------------------------

    async def connect_all(self) -> List[ToolSource]:
        """
        Connect every registry concurrently.

        Registries that fail to connect are logged and left out of the bridge.

        Returns:
            The registries that are now connected.
        """
        outcomes = await asyncio.gather(
            *(registry.connect() for registry in self.registries), return_exceptions=True
        )
        connected: List[ToolSource] = []
        for registry, outcome in zip(self.registries, outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                logger.warning(
                    "Skipping tool server '%s': connection failed: %s", registry.identity, outcome
                )
                continue
            connected.append(registry)
        self.registries = connected
        self._toolset = None
        return connected

    async def disconnect_all(self) -> None:
        await asyncio.gather(
            *(registry.disconnect() for registry in self.registries), return_exceptions=True
        )
        self._toolset = None
        self._routes = {}

    async def __aenter__(self) -> "ToolBridge":
        await self.connect_all()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.disconnect_all()

    # -- toolset -----------------------------------------------------------

    async def build_toolset(self, refresh: bool = False) -> List[ToolDescriptor]:
        """
        Return the merged toolset, listing every registry on first use.

        A registry whose listing fails is logged and contributes nothing to
        this toolset. The result is cached until ``refresh=True``.
        """
        if self._toolset is not None and not refresh:
            return list(self._toolset)

        listings = await asyncio.gather(
            *(registry.list_tools() for registry in self.registries), return_exceptions=True
        )
        owned: List[Tuple[ToolSource, ToolDescriptor]] = []
        for registry, listing in zip(self.registries, listings):
            if isinstance(listing, BaseException):
                if not isinstance(listing, Exception):
                    raise listing
                logger.warning(
                    "Skipping tools from '%s': listing failed: %s", registry.identity, listing
                )
                continue
            owned.extend((registry, descriptor) for descriptor in listing)

        owners: Dict[str, set] = {}
        for registry, descriptor in owned:
            owners.setdefault(descriptor.original_name, set()).add(registry.identity)

        toolset: List[ToolDescriptor] = []
        routes: Dict[str, Tuple[ToolSource, str]] = {}
        for registry, descriptor in owned:
            original = descriptor.original_name
            if len(owners[original]) > 1:
                candidate = sanitize_tool_name(f"{registry.identity}__{original}")
            else:
                candidate = sanitize_tool_name(original)
            exposed = candidate
            suffix = 2
            while exposed in routes:
                tail = f"_{suffix}"
                exposed = candidate[: MAX_TOOL_NAME_LENGTH - len(tail)] + tail
                suffix += 1
            routes[exposed] = (registry, original)
            toolset.append(
                ToolDescriptor(
                    name=exposed,
                    description=descriptor.description,
                    input_schema=descriptor.input_schema,
                    source=registry.identity,
                    original_name=original,
                )
            )

        self._toolset = toolset
        self._routes = routes
        logger.info(
            "Tool bridge built %d tools from %d registries", len(toolset), len(self.registries)
        )
        return list(toolset)

    def resolve(self, exposed_name: str) -> Optional[Tuple[ToolSource, str]]:
        """Map an exposed tool name back to ``(registry, original name)``."""
        return self._routes.get(exposed_name)

    # -- invocation --------------------------------------------------------

    async def invoke(
        self,
        call_id: str,
        tool_name: str,
        arguments: Dict[str, Any],
        timeout: Optional[float] = None,
    ) -> ToolResult:
        """
        Run one tool call. Never raises for tool-level failures.

        Args:
            timeout: Seconds allowed for the call on top of the registry's
                own timeout. Expiry yields a ToolInvocationError result.

        Returns:
            A ToolResult carrying ``call_id`` and the exposed ``tool_name``.
        """
        route = self._routes.get(tool_name)
        if route is None:
            return ToolResult(
                call_id=call_id,
                tool_name=tool_name,
                error=ToolNotFoundError(tool_name, sorted(self._routes)),
            )

        registry, original = route
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self.max_concurrency)
        started = time.perf_counter()
        async with self._semaphore:
            try:
                result = await asyncio.wait_for(
                    registry.call_tool(original, arguments, call_id=call_id), timeout
                )
            except asyncio.TimeoutError:
                result = ToolResult(
                    call_id=call_id,
                    tool_name=original,
                    error=ToolInvocationError(original, f"Tool '{original}' timed out after {timeout}s"),
                )
            except Exception as exc:
                logger.warning("Tool %s on '%s' raised: %s", original, registry.identity, exc)
                result = ToolResult(
                    call_id=call_id,
                    tool_name=original,
                    error=ToolInvocationError(original, f"{type(exc).__name__}: {exc}", exc),
                )
        result.call_id = call_id
        result.tool_name = tool_name
        if not result.duration:
            result.duration = time.perf_counter() - started
        return result

    async def invoke_all(
        self, invocations: Sequence[ToolInvocation], timeout: Optional[float] = None
    ) -> List[ToolResult]:
        """
        Run one round of tool calls concurrently.

        Returns:
            Exactly one ToolResult per invocation, in request order.
        """
        return list(
            await asyncio.gather(
                *(
                    self.invoke(inv.call_id, inv.tool_name, inv.arguments, timeout=timeout)
                    for inv in invocations
                )
            )
        )


__all__ = ["ToolBridge", "sanitize_tool_name", "MAX_TOOL_NAME_LENGTH"]
