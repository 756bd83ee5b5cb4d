"""
MCP tool registry: one long-lived client session to one tool server.

The session and its transport are entered and exited inside a dedicated
owner task; the registry only talks to the session object. Calls from
concurrent turns are multiplexed by the session's JSON-RPC request ids.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, AsyncContextManager, AsyncIterator, Callable, Dict, List, Mapping, Optional

from ..exceptions import (
    ConfigError,
    NotConnectedError,
    ToolArgumentError,
    ToolError,
    ToolInvocationError,
    ToolNotFoundError,
    TransportError,
)
from ..types import ToolDescriptor, ToolResult
from .base import RegistryState, validate_arguments

logger = logging.getLogger(__name__)

TRANSPORTS = ("streamable-http", "sse", "stdio")


@dataclass
class ToolServerConfig:
    """
    Connection settings for one MCP tool server.

    Attributes:
        name: Human-readable server name; also the registry identity unless
            ``id`` is set.
        url: Endpoint for the ``streamable-http`` and ``sse`` transports.
        transport: ``streamable-http`` (default), ``sse`` or ``stdio``.
        headers: Extra HTTP headers (auth tokens and the like).
        command: Executable for the ``stdio`` transport.
        args: Arguments for ``command``.
        env: Environment for ``command``.
        connect_timeout: Seconds to wait for the session to initialize.
        call_timeout: Seconds to wait for a single tool call or listing.
        id: Stable identity used for name disambiguation in a merged toolset.
    """

    name: str
    url: str = ""
    transport: str = "streamable-http"
    headers: Dict[str, str] = field(default_factory=dict)
    command: str = ""
    args: List[str] = field(default_factory=list)
    env: Optional[Dict[str, str]] = None
    connect_timeout: float = 10.0
    call_timeout: float = 30.0
    id: str = ""

    def __post_init__(self) -> None:
        if self.transport not in TRANSPORTS:
            raise ConfigError(
                component=f"ToolServerConfig({self.name})",
                missing_config=f"a transport from {', '.join(TRANSPORTS)} (got '{self.transport}')",
            )
        if self.transport == "stdio" and not self.command:
            raise ConfigError(f"ToolServerConfig({self.name})", "command for the stdio transport")
        if self.transport != "stdio" and not self.url:
            raise ConfigError(f"ToolServerConfig({self.name})", f"url for the {self.transport} transport")

    @property
    def identity(self) -> str:
        return self.id or self.name

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ToolServerConfig":
        """Build from a plain mapping, accepting camelCase keys from JSON stores."""
        transport = data.get("transport") or data.get("type") or "streamable-http"
        if transport in ("http", "streamableHttp", "streamable_http"):
            transport = "streamable-http"
        return cls(
            name=str(data.get("name") or data.get("id") or data.get("url") or "mcp"),
            url=data.get("url", ""),
            transport=transport,
            headers=dict(data.get("headers") or data.get("customHeaders") or {}),
            command=data.get("command", ""),
            args=list(data.get("args") or []),
            env=data.get("env"),
            connect_timeout=float(data.get("connect_timeout", 10.0)),
            call_timeout=float(data.get("call_timeout", 30.0)),
            id=str(data.get("id") or ""),
        )


SessionFactory = Callable[[ToolServerConfig], AsyncContextManager[Any]]


@asynccontextmanager
async def open_mcp_session(config: ToolServerConfig) -> AsyncIterator[Any]:
    """Open and initialize an ``mcp.ClientSession`` over the configured transport."""
    from mcp import ClientSession

    async with AsyncExitStack() as stack:
        if config.transport == "stdio":
            from mcp.client.stdio import StdioServerParameters, stdio_client

            params = StdioServerParameters(command=config.command, args=config.args, env=config.env)
            read_stream, write_stream = await stack.enter_async_context(stdio_client(params))
        elif config.transport == "sse":
            from mcp.client.sse import sse_client

            read_stream, write_stream = await stack.enter_async_context(
                sse_client(config.url, headers=config.headers or None, timeout=config.connect_timeout)
            )
        else:
            from mcp.client.streamable_http import streamablehttp_client

            read_stream, write_stream, _ = await stack.enter_async_context(
                streamablehttp_client(
                    config.url,
                    headers=config.headers or None,
                    timeout=timedelta(seconds=config.connect_timeout),
                )
            )
        session = await stack.enter_async_context(ClientSession(read_stream, write_stream))
        await session.initialize()
        yield session


def _is_invalid_params(exc: BaseException) -> bool:
    from mcp.shared.exceptions import McpError
    from mcp.types import INVALID_PARAMS

    return isinstance(exc, McpError) and getattr(exc.error, "code", None) == INVALID_PARAMS


def _render_content(response: Any) -> str:
    parts: List[str] = []
    for item in getattr(response, "content", None) or []:
        text = getattr(item, "text", None)
        if text is not None:
            parts.append(text)
        elif hasattr(item, "model_dump"):
            parts.append(json.dumps(item.model_dump(mode="json"), ensure_ascii=False))
        else:
            parts.append(str(item))
    return "\n".join(parts)


class MCPToolRegistry:
    """
    Tool source backed by one MCP server.

    Lifecycle: ``DISCONNECTED -> CONNECTING -> CONNECTED -> TOOLS_LISTED``,
    back to ``DISCONNECTED`` on ``disconnect()`` or when the server drops the
    session. ``connect()`` is idempotent and serialized; ``disconnect()``
    never raises and may be called any number of times.

    Args:
        config: Server connection settings.
        session_factory: Callable returning an async context manager that
            yields an initialized session. Defaults to ``open_mcp_session``.
    """

    def __init__(
        self,
        config: ToolServerConfig,
        session_factory: Optional[SessionFactory] = None,
    ) -> None:
        self.config = config
        self.identity = config.identity
        self._session_factory = session_factory or open_mcp_session
        self._state = RegistryState.DISCONNECTED
        self._lock = asyncio.Lock()
        self._session: Any = None
        self._owner: Optional[asyncio.Task] = None
        self._closing: Optional[asyncio.Event] = None
        self._schemas: Dict[str, Dict[str, Any]] = {}

    @property
    def state(self) -> RegistryState:
        return self._state

    def __repr__(self) -> str:
        return f"MCPToolRegistry(identity={self.identity!r}, state={self._state.value})"

    # -- lifecycle ---------------------------------------------------------

    async def connect(self) -> None:
        """
        Open the session if it is not already open.

        Raises:
            TransportError: If the server cannot be reached or does not
                initialize within ``connect_timeout``. The registry stays
                ``DISCONNECTED``.
        """
        async with self._lock:
            if self._state is not RegistryState.DISCONNECTED:
                return
            self._state = RegistryState.CONNECTING
            loop = asyncio.get_running_loop()
            ready: asyncio.Future = loop.create_future()
            self._closing = asyncio.Event()
            self._owner = loop.create_task(self._own_session(ready, self._closing))
            try:
                await asyncio.wait_for(asyncio.shield(ready), self.config.connect_timeout)
            except BaseException as exc:
                await self._stop_owner(graceful=False)
                self._state = RegistryState.DISCONNECTED
                if isinstance(exc, asyncio.TimeoutError):
                    raise TransportError(
                        f"Tool server '{self.identity}' did not initialize within "
                        f"{self.config.connect_timeout}s"
                    ) from exc
                if isinstance(exc, Exception):
                    raise TransportError(
                        f"Could not connect to tool server '{self.identity}': {exc}"
                    ) from exc
                raise
            self._state = RegistryState.CONNECTED
            logger.info("Connected to tool server '%s' (%s)", self.identity, self.config.transport)

    async def _own_session(self, ready: asyncio.Future, closing: asyncio.Event) -> None:
        try:
            async with self._session_factory(self.config) as session:
                self._session = session
                if not ready.done():
                    ready.set_result(None)
                await closing.wait()
        except Exception as exc:
            if not ready.done():
                ready.set_exception(exc)
            else:
                logger.warning("Session with tool server '%s' ended: %s", self.identity, exc)
        finally:
            self._session = None
            if closing is self._closing and not closing.is_set():
                # the server went away on its own
                self._state = RegistryState.DISCONNECTED
                self._schemas = {}

    async def _stop_owner(self, graceful: bool) -> None:
        task, self._owner = self._owner, None
        if self._closing is not None:
            self._closing.set()
        if task is None or task.done():
            return
        if not graceful:
            task.cancel()
        try:
            await asyncio.wait_for(task, self.config.connect_timeout)
        except asyncio.TimeoutError:
            logger.warning("Tool server '%s' did not close in time; cancelled", self.identity)
        except asyncio.CancelledError:
            if not task.cancelled():
                raise
        except Exception as exc:
            logger.debug("Error while closing tool server '%s': %s", self.identity, exc)

    async def disconnect(self) -> None:
        """Close the session. Safe from any state; never raises."""
        async with self._lock:
            if self._owner is not None:
                await self._stop_owner(graceful=True)
                logger.info("Disconnected from tool server '%s'", self.identity)
            self._session = None
            self._state = RegistryState.DISCONNECTED
            self._schemas = {}

    async def __aenter__(self) -> "MCPToolRegistry":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.disconnect()

    def _require_session(self, operation: str) -> Any:
        if self._state in (RegistryState.DISCONNECTED, RegistryState.CONNECTING) or self._session is None:
            raise NotConnectedError(self.identity, operation)
        return self._session

    # -- tools -------------------------------------------------------------

    async def list_tools(self) -> List[ToolDescriptor]:
        """
        Query the server for its current tools.

        Raises:
            NotConnectedError: If the registry is not connected.
            TransportError: If the listing fails or times out.
        """
        session = self._require_session("list_tools")
        tools: List[Any] = []
        try:
            result = await asyncio.wait_for(session.list_tools(), self.config.call_timeout)
            tools.extend(result.tools)
            cursor = getattr(result, "nextCursor", None)
            while cursor:
                result = await asyncio.wait_for(session.list_tools(cursor), self.config.call_timeout)
                tools.extend(result.tools)
                cursor = getattr(result, "nextCursor", None)
        except asyncio.TimeoutError as exc:
            raise TransportError(f"Listing tools on '{self.identity}' timed out") from exc
        except Exception as exc:
            raise TransportError(f"Listing tools on '{self.identity}' failed: {exc}") from exc

        descriptors = [
            ToolDescriptor(
                name=item.name,
                description=getattr(item, "description", None) or "",
                input_schema=getattr(item, "inputSchema", None) or {},
                source=self.identity,
            )
            for item in tools
        ]
        self._schemas = {d.name: d.input_schema for d in descriptors}
        self._state = RegistryState.TOOLS_LISTED
        logger.debug("Tool server '%s' listed %d tools", self.identity, len(descriptors))
        return descriptors

    async def call_tool(self, name: str, arguments: Dict[str, Any], call_id: str = "") -> ToolResult:
        """
        Invoke ``name`` on the server.

        Tool-level failures (unknown name, invalid arguments, server error,
        timeout, transport failure) are returned inside the ``ToolResult``.

        Raises:
            NotConnectedError: If the registry is not connected.
        """
        session = self._require_session("call_tool")
        started = time.perf_counter()
        result = ToolResult(call_id=call_id, tool_name=name)

        schema = self._schemas.get(name)
        if schema is None:
            result.error = ToolNotFoundError(name, sorted(self._schemas))
            return result

        try:
            validate_arguments(name, schema, arguments)
            response = await asyncio.wait_for(
                session.call_tool(name, arguments), self.config.call_timeout
            )
        except ToolError as exc:
            result.error = exc
        except asyncio.TimeoutError:
            result.error = ToolInvocationError(
                name, f"Tool '{name}' on '{self.identity}' timed out after {self.config.call_timeout}s"
            )
        except Exception as exc:
            if _is_invalid_params(exc):
                result.error = ToolArgumentError(name, "", str(exc))
            else:
                result.error = ToolInvocationError(
                    name, f"Tool '{name}' on '{self.identity}' failed: {exc}", exc
                )
        else:
            text = _render_content(response)
            if getattr(response, "isError", False):
                result.error = ToolInvocationError(name, text or f"Tool '{name}' reported an error")
            else:
                structured = getattr(response, "structuredContent", None)
                result.output = structured if structured is not None and not text else text

        result.duration = time.perf_counter() - started
        logger.debug(
            "Tool %s on '%s' finished in %.3fs (ok=%s)", name, self.identity, result.duration, result.ok
        )
        return result


__all__ = ["MCPToolRegistry", "ToolServerConfig", "SessionFactory", "open_mcp_session", "TRANSPORTS"]
