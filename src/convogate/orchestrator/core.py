"""
Completion orchestrator: streams a model reply and runs the tool loop.

One ``TurnStream`` drives one request through
``INIT -> STREAMING -> (TOOL_ROUND)* -> FINALIZING -> COMPLETED``, or ends in
``CANCELLED`` / ``FAILED``. The caller iterates the stream for deltas and
progress events and reads ``outcome`` once it is exhausted.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, List, Optional, Sequence

from ..exceptions import GatewayError, ProviderError, ToolLoopExceeded, ToolNotFoundError, TransportError
from ..providers.base import CompletionRequest, CompletionStream, ProviderAdapter
from ..tools.bridge import ToolBridge
from ..types import (
    EventType,
    Message,
    Role,
    StreamEvent,
    ToolInvocation,
    ToolResult,
    TurnOutcome,
    TurnState,
    validate_conversation,
)
from ..usage import TurnUsage
from .config import OrchestratorConfig

logger = logging.getLogger(__name__)


@dataclass
class _Round:
    """What one provider round produced (the last attempt, after retries)."""

    text: str = ""
    calls: List[ToolInvocation] = field(default_factory=list)
    finish_reason: Optional[str] = None
    completed: bool = False

    def reset(self) -> None:
        self.text = ""
        self.calls = []
        self.finish_reason = None
        self.completed = False


class Orchestrator:
    """
    Runs multi-round tool-calling turns against one provider adapter.

    The orchestrator holds no per-turn state; concurrent turns get their own
    ``TurnStream``. It never looks at which vendor the adapter talks to.

    Args:
        provider: Adapter used for every round.
        bridge: Tool bridge whose merged toolset is offered to the model.
            Without a bridge the model is offered no tools.
        config: Defaults for every turn; ``run`` may override fields.
    """

    def __init__(
        self,
        provider: ProviderAdapter,
        bridge: Optional[ToolBridge] = None,
        config: Optional[OrchestratorConfig] = None,
    ) -> None:
        self.provider = provider
        self.bridge = bridge
        self.config = config or OrchestratorConfig()

    def run(
        self, messages: Sequence[Message], *, turn_id: Optional[str] = None, **overrides: Any
    ) -> "TurnStream":
        """
        Start a turn over ``messages``.

        Nothing is sent to the provider until the returned stream is iterated.

        Raises:
            ConversationError: If ``messages`` is not a valid conversation.
        """
        transcript = list(messages)
        validate_conversation(transcript)
        return TurnStream(
            self,
            transcript,
            self.config.merged(**overrides),
            turn_id or uuid.uuid4().hex,
        )

    async def complete(self, messages: Sequence[Message], **overrides: Any) -> TurnOutcome:
        """Run a turn to the end, discarding progress events."""
        return await self.run(messages, **overrides).collect()


class TurnStream:
    """
    Caller-facing stream of one turn.

    Yields ``delta``, ``reasoning``, ``tool_call`` and ``tool_result`` events
    and exactly one terminal ``done``, ``error`` or ``cancelled`` event.
    Provider ``usage`` events are folded into the turn's ``TurnUsage``,
    which the terminal event carries.
    """

    def __init__(
        self,
        orchestrator: Orchestrator,
        messages: List[Message],
        config: OrchestratorConfig,
        turn_id: str,
    ) -> None:
        self.turn_id = turn_id
        self.config = config
        self._provider = orchestrator.provider
        self._bridge = orchestrator.bridge
        self._input = messages
        self._transcript: List[Message] = list(messages)
        self._usage = TurnUsage()
        self._tool_results: List[ToolResult] = []
        self._rounds = 0
        self._state = TurnState.INIT
        self._outcome: Optional[TurnOutcome] = None
        self._cancel_requested = False
        self._active_stream: Optional[CompletionStream] = None
        self._events = self._drive()
        self._consumed = False

    # -- public surface ----------------------------------------------------

    @property
    def state(self) -> TurnState:
        return self._state

    @property
    def outcome(self) -> Optional[TurnOutcome]:
        """The turn's outcome; None until the stream has ended."""
        return self._outcome

    @property
    def usage(self) -> TurnUsage:
        return self._usage

    def cancel(self) -> None:
        """
        Request cancellation. Idempotent.

        The active provider stream is cancelled at once. Tool calls already
        running are allowed to finish and their results are kept; no new
        round starts.
        """
        if self._cancel_requested:
            return
        self._cancel_requested = True
        logger.info("Turn %s cancellation requested", self.turn_id)
        if self._active_stream is not None:
            self._active_stream.cancel()

    def __aiter__(self) -> "TurnStream":
        if self._consumed:
            raise RuntimeError(f"Turn {self.turn_id} is already being consumed")
        self._consumed = True
        return self

    async def __anext__(self) -> StreamEvent:
        return await self._events.__anext__()

    async def collect(self) -> TurnOutcome:
        """Drain the stream and return the outcome."""
        async for _ in self:
            pass
        assert self._outcome is not None
        return self._outcome

    async def aclose(self) -> None:
        """Abandon the turn, releasing the provider stream."""
        self.cancel()
        await self._events.aclose()

    # -- driver ------------------------------------------------------------

    def _call_hook(self, hook_name: str, *args: Any) -> None:
        hooks = self.config.hooks
        if not hooks or hook_name not in hooks:
            return
        try:
            hooks[hook_name](*args)
        except Exception as exc:
            logger.debug("Hook %s failed: %s", hook_name, exc)

    def _finish(self, status: TurnState, text: str, error: Optional[BaseException] = None) -> TurnOutcome:
        self._state = status
        self._outcome = TurnOutcome(
            turn_id=self.turn_id,
            status=status,
            messages=self._transcript,
            input_length=len(self._input),
            text=text,
            usage=self._usage,
            rounds=self._rounds,
            tool_results=self._tool_results,
            error=error,
        )
        self._call_hook("on_turn_end", self._outcome)
        logger.info(
            "Turn %s ended %s after %d tool rounds (%d tokens)",
            self.turn_id,
            status.value,
            self._rounds,
            self._usage.total_tokens,
        )
        return self._outcome

    def _keep_partial(self, rnd: _Round) -> None:
        if rnd.text:
            self._transcript.append(Message(role=Role.ASSISTANT, content=rnd.text))

    async def _drive(self) -> AsyncIterator[StreamEvent]:
        config = self.config
        rnd = _Round()
        self._call_hook("on_turn_start", self.turn_id, list(self._transcript))
        try:
            if self._cancel_requested:
                self._finish(TurnState.CANCELLED, "")
                yield StreamEvent(EventType.CANCELLED, usage=self._usage)
                return

            toolset = await self._bridge.build_toolset() if self._bridge is not None else []
            round_num = 0
            while True:
                round_num += 1
                self._state = TurnState.STREAMING
                self._call_hook("on_round_start", round_num, list(self._transcript))
                request = CompletionRequest(
                    model=config.model,
                    messages=list(self._transcript),
                    tools=toolset or None,
                    temperature=config.temperature,
                    max_tokens=config.max_tokens,
                    timeout=config.stream_timeout,
                    extra=dict(config.extra),
                )

                round_events = self._stream_round(request, rnd, round_num)
                try:
                    async for event in round_events:
                        yield event
                finally:
                    await round_events.aclose()
                self._call_hook("on_llm_end", rnd.text, self._usage)

                if self._cancel_requested:
                    self._keep_partial(rnd)
                    self._finish(TurnState.CANCELLED, rnd.text)
                    yield StreamEvent(EventType.CANCELLED, usage=self._usage)
                    return

                if not rnd.calls:
                    self._state = TurnState.FINALIZING
                    self._transcript.append(Message(role=Role.ASSISTANT, content=rnd.text))
                    self._finish(TurnState.COMPLETED, rnd.text)
                    yield StreamEvent.done(rnd.finish_reason, self._usage)
                    return

                if self._rounds >= config.max_tool_rounds:
                    raise ToolLoopExceeded(self._rounds + 1, config.max_tool_rounds)

                self._transcript.append(
                    Message(role=Role.ASSISTANT, content=rnd.text, tool_calls=list(rnd.calls))
                )
                self._state = TurnState.TOOL_ROUND
                self._rounds += 1
                logger.info(
                    "Turn %s tool round %d: %s",
                    self.turn_id,
                    self._rounds,
                    ", ".join(call.tool_name for call in rnd.calls),
                )
                results = await self._run_tools(rnd.calls)
                for result in results:
                    self._transcript.append(Message.tool(result))
                    self._tool_results.append(result)
                    if result.ok:
                        self._usage.tool_calls += 1
                for result in results:
                    yield StreamEvent.result(result)

                if self._cancel_requested:
                    self._finish(TurnState.CANCELLED, "")
                    yield StreamEvent(EventType.CANCELLED, usage=self._usage)
                    return
                rnd.reset()
        except GatewayError as exc:
            logger.warning("Turn %s failed: %s", self.turn_id, exc)
            self._call_hook("on_error", exc, {"turn_id": self.turn_id, "rounds": self._rounds})
            self._keep_partial(rnd)
            self._finish(TurnState.FAILED, rnd.text, exc)
            yield StreamEvent(EventType.ERROR, error=exc, usage=self._usage)
        except (GeneratorExit, asyncio.CancelledError):
            if self._outcome is None:
                self._keep_partial(rnd)
                self._finish(TurnState.CANCELLED, rnd.text)
            raise
        except Exception as exc:
            self._call_hook("on_error", exc, {"turn_id": self.turn_id, "rounds": self._rounds})
            self._finish(TurnState.FAILED, rnd.text, exc)
            raise

    async def _run_tools(self, calls: List[ToolInvocation]) -> List[ToolResult]:
        for call in calls:
            self._call_hook("on_tool_start", call)
        if self._bridge is None:
            results = [
                ToolResult(call_id=call.call_id, tool_name=call.tool_name, error=ToolNotFoundError(call.tool_name))
                for call in calls
            ]
        else:
            results = await self._bridge.invoke_all(calls, timeout=self.config.tool_timeout_seconds)
        for result in results:
            self._call_hook("on_tool_end", result)
        return results

    async def _stream_round(
        self, request: CompletionRequest, rnd: _Round, round_num: int
    ) -> AsyncIterator[StreamEvent]:
        """
        Stream one provider round into ``rnd``, retrying transport failures.

        On a retry the provider replays the round from the start; only text
        beyond what the caller already received is forwarded, and tool calls
        already announced are not announced again.
        """
        config = self.config
        forwarded_text = 0
        forwarded_reasoning = 0
        announced_calls = 0
        attempt = 0
        while True:
            attempt += 1
            rnd.reset()
            reasoning = ""
            self._call_hook("on_llm_start", request, attempt)
            stream = self._provider.stream(request)
            self._active_stream = stream
            if self._cancel_requested:
                stream.cancel()
            try:
                events = stream.__aiter__()
                while True:
                    try:
                        event = await asyncio.wait_for(events.__anext__(), config.stream_timeout)
                    except StopAsyncIteration:
                        break
                    except asyncio.TimeoutError as exc:
                        raise TransportError(
                            f"No event from provider '{self._provider.name}' within "
                            f"{config.stream_timeout}s"
                        ) from exc

                    if event.type is EventType.DELTA:
                        start = max(forwarded_text, len(rnd.text))
                        rnd.text += event.text
                        if len(rnd.text) > start:
                            yield StreamEvent.delta(rnd.text[start:])
                            forwarded_text = len(rnd.text)
                    elif event.type is EventType.REASONING:
                        start = max(forwarded_reasoning, len(reasoning))
                        reasoning += event.text
                        if len(reasoning) > start:
                            yield StreamEvent.reasoning(reasoning[start:])
                            forwarded_reasoning = len(reasoning)
                    elif event.type is EventType.TOOL_CALL and event.tool_call is not None:
                        rnd.calls.append(event.tool_call)
                        if len(rnd.calls) > announced_calls:
                            announced_calls = len(rnd.calls)
                            yield StreamEvent.call(event.tool_call)
                    elif event.type is EventType.USAGE and event.usage is not None:
                        self._usage.add_usage(event.usage)
                    elif event.type is EventType.ERROR:
                        error = event.error
                        if isinstance(error, GatewayError):
                            raise error
                        raise ProviderError(f"Provider '{self._provider.name}' reported: {error}")
                    elif event.type is EventType.DONE:
                        rnd.finish_reason = event.finish_reason
                        rnd.completed = True
                        break

                if not rnd.completed and not self._cancel_requested:
                    raise TransportError(
                        f"Stream from provider '{self._provider.name}' ended before completion"
                    )
                return
            except TransportError as exc:
                if self._cancel_requested:
                    return
                if attempt > config.max_stream_retries:
                    raise
                logger.warning(
                    "Turn %s round %d attempt %d failed, retrying: %s",
                    self.turn_id,
                    round_num,
                    attempt,
                    exc,
                )
                self._call_hook("on_retry", round_num, attempt, exc)
            finally:
                self._active_stream = None
                await stream.aclose()

            if config.retry_backoff_seconds:
                await asyncio.sleep(config.retry_backoff_seconds * attempt)


__all__ = ["Orchestrator", "TurnStream"]
