"""
Provider abstraction for model-agnostic streaming completions.

Every vendor adapter satisfies ``ProviderAdapter``: a blocking ``generate``
and a cancellable ``stream``. Streams are wrapped in ``CompletionStream``,
which runs the vendor generator in its own producer task so that the caller
can cancel at any point, including while the producer is waiting on the
network.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from dataclasses import dataclass, field
from typing import (
    Any,
    AsyncIterator,
    Dict,
    List,
    Optional,
    Protocol,
    runtime_checkable,
)

from ..exceptions import ProviderError
from ..types import Message, StreamEvent, ToolDescriptor
from ..usage import UsageStats

logger = logging.getLogger(__name__)


@dataclass
class CompletionRequest:
    """One provider call: the conversation so far plus generation parameters."""

    model: str
    messages: List[Message]
    tools: Optional[List[ToolDescriptor]] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    timeout: Optional[float] = None
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CompletionResult:
    """Whole (non-streamed) provider response."""

    message: Message
    usage: Optional[UsageStats] = None
    finish_reason: Optional[str] = None
    reasoning: str = ""


_END = object()


class _Failure:
    __slots__ = ("exc",)

    def __init__(self, exc: BaseException):
        self.exc = exc


class CompletionStream:
    """
    Cancellable async iterator over a provider's ``StreamEvent``s.

    The wrapped async generator is pumped into a queue by a producer task
    started on first iteration. ``cancel()`` may be called from any task at
    any time; afterwards the iterator is exhausted and the producer task is
    cancelled, which runs the generator's ``finally`` blocks (closing the
    vendor's HTTP response). Exceptions raised by the generator are re-raised
    to the consumer in order.

    A stream has a single consumer and cannot be iterated twice.
    """

    def __init__(self, source: AsyncIterator[StreamEvent], name: str = ""):
        self.name = name
        self._source = source
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None
        self._cancelled = False
        self._finished = False
        self._consumed = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def __aiter__(self) -> "CompletionStream":
        if self._consumed:
            raise ProviderError(
                f"Stream from '{self.name or 'provider'}' has already been consumed; "
                "request a new stream instead of iterating twice."
            )
        self._consumed = True
        return self

    async def __anext__(self) -> StreamEvent:
        if self._cancelled or self._finished:
            raise StopAsyncIteration
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._pump())
        item = await self._queue.get()
        if self._cancelled:
            raise StopAsyncIteration
        if item is _END:
            self._finished = True
            raise StopAsyncIteration
        if isinstance(item, _Failure):
            self._finished = True
            raise item.exc
        return item

    async def _pump(self) -> None:
        try:
            async for event in self._source:
                self._queue.put_nowait(event)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._queue.put_nowait(_Failure(exc))
            return
        finally:
            await _close_source(self._source)
        self._queue.put_nowait(_END)

    def cancel(self) -> None:
        """Stop the stream. Idempotent; safe before, during or after iteration."""
        if self._cancelled:
            return
        self._cancelled = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
        # wake a consumer blocked on get()
        self._queue.put_nowait(_END)
        logger.debug("Stream from %s cancelled", self.name or "provider")

    async def aclose(self) -> None:
        """Cancel and wait for the producer to release its resources."""
        self.cancel()
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)
        else:
            await _close_source(self._source)

    async def __aenter__(self) -> "CompletionStream":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()


async def _close_source(source: Any) -> None:
    aclose = getattr(source, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except RuntimeError as exc:
        # "asynchronous generator is already running": the generator is unwinding itself
        logger.debug("Stream source close skipped: %s", exc)


async def close_response(response: Any) -> None:
    """Close a vendor SDK stream response (sync or async ``close``)."""
    closer = getattr(response, "close", None) or getattr(response, "aclose", None)
    if closer is None:
        return
    result = closer()
    if inspect.isawaitable(result):
        await result


def parse_tool_arguments(raw: Any, tool_name: str = "") -> Dict[str, Any]:
    """
    Decode a tool call's JSON argument string.

    Malformed or non-object arguments become ``{}``; the owning registry's
    schema validation then reports the problem to the model.
    """
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning("Tool call %r carried malformed JSON arguments: %r", tool_name, raw)
        return {}
    if not isinstance(parsed, dict):
        logger.warning("Tool call %r carried non-object arguments: %r", tool_name, raw)
        return {}
    return parsed


@runtime_checkable
class ProviderAdapter(Protocol):
    """
    Interface every provider adapter must satisfy.

    Adapters are stateless per call and may be shared between concurrent
    turns. Vendor failures are raised as ``TransportError`` when retrying
    could help (connection loss, timeout, rate limit, 5xx) and as
    ``ProviderError`` otherwise. Usage is reported once near the end of a
    stream as a ``usage`` event; adapters never estimate it.
    """

    name: str

    async def generate(self, request: CompletionRequest) -> CompletionResult:
        """Return the whole assistant message for ``request``."""
        ...

    def stream(self, request: CompletionRequest) -> CompletionStream:
        """
        Return a lazy stream of events for ``request``.

        No network traffic happens until the stream is iterated.
        """
        ...


__all__ = [
    "ProviderAdapter",
    "CompletionRequest",
    "CompletionResult",
    "CompletionStream",
    "close_response",
    "parse_tool_arguments",
]
