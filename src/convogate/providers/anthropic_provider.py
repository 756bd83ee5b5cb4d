"""
Anthropic Messages API adapter.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from ..env import api_key_from_env
from ..exceptions import ConfigError, GatewayError, ProviderError, TransportError
from ..types import Message, Role, StreamEvent, ToolInvocation
from ..usage import UsageStats
from .base import (
    CompletionRequest,
    CompletionResult,
    CompletionStream,
    close_response,
    parse_tool_arguments,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 1024


class AnthropicProvider:
    """Anthropic Messages API adapter."""

    name = "anthropic"

    def __init__(
        self,
        api_key: str | None = None,
        default_model: str = "claude-3-5-sonnet-20241022",
        base_url: str | None = None,
        timeout: float = 60.0,
        client: Any = None,
    ):
        self.default_model = default_model
        self.timeout = timeout

        if client is not None:
            self._client = client
            return

        self.api_key = api_key or api_key_from_env("anthropic")
        if not self.api_key:
            raise ConfigError(
                component="AnthropicProvider",
                missing_config="API key",
                env_var="ANTHROPIC_API_KEY",
            )

        try:
            from anthropic import AsyncAnthropic
        except ImportError as exc:
            raise ProviderError(
                "anthropic package not installed. Install with `pip install anthropic`."
            ) from exc

        self._client = AsyncAnthropic(api_key=self.api_key, base_url=base_url, timeout=timeout)

    async def generate(self, request: CompletionRequest) -> CompletionResult:
        """
        Call the Messages API for a non-streaming completion.

        Raises:
            TransportError: On connection loss, timeout, rate limit or 5xx.
            ProviderError: On any other API failure.
        """
        kwargs = self._request_kwargs(request)
        try:
            response = await self._client.messages.create(**kwargs)
        except Exception as exc:
            raise self._map_error(exc) from exc

        text_parts: List[str] = []
        reasoning_parts: List[str] = []
        tool_calls: List[ToolInvocation] = []
        for block in response.content:
            block_type = getattr(block, "type", None)
            if block_type == "text":
                text_parts.append(block.text)
            elif block_type == "thinking":
                reasoning_parts.append(getattr(block, "thinking", "") or "")
            elif block_type == "tool_use":
                tool_calls.append(
                    ToolInvocation(
                        call_id=block.id,
                        tool_name=block.name,
                        arguments=parse_tool_arguments(block.input, block.name),
                    )
                )

        usage = None
        if getattr(response, "usage", None) is not None:
            usage = UsageStats(
                prompt_tokens=response.usage.input_tokens or 0,
                completion_tokens=response.usage.output_tokens or 0,
                model=kwargs["model"],
                provider=self.name,
            )
        return CompletionResult(
            message=Message(
                role=Role.ASSISTANT,
                content="".join(text_parts),
                tool_calls=tool_calls or None,
            ),
            usage=usage,
            finish_reason=getattr(response, "stop_reason", None),
            reasoning="".join(reasoning_parts),
        )

    def stream(self, request: CompletionRequest) -> CompletionStream:
        return CompletionStream(self._stream_events(request), name=self.name)

    async def _stream_events(self, request: CompletionRequest) -> AsyncIterator[StreamEvent]:
        kwargs = self._request_kwargs(request)
        try:
            response = await self._client.messages.create(**kwargs, stream=True)
        except Exception as exc:
            raise self._map_error(exc) from exc

        # content block index -> [id, name, partial json]
        tool_blocks: Dict[int, List[str]] = {}
        input_tokens = 0
        output_tokens = 0
        usage_seen = False
        stop_reason: Optional[str] = None
        try:
            async for event in response:
                event_type = getattr(event, "type", None)
                if event_type == "message_start":
                    usage = getattr(event.message, "usage", None)
                    if usage is not None:
                        usage_seen = True
                        input_tokens = getattr(usage, "input_tokens", 0) or 0
                        output_tokens = getattr(usage, "output_tokens", 0) or 0
                elif event_type == "content_block_start":
                    block = event.content_block
                    if getattr(block, "type", None) == "tool_use":
                        tool_blocks[event.index] = [block.id, block.name, ""]
                elif event_type == "content_block_delta":
                    delta = event.delta
                    delta_type = getattr(delta, "type", None)
                    if delta_type == "text_delta" and delta.text:
                        yield StreamEvent.delta(delta.text)
                    elif delta_type == "thinking_delta" and delta.thinking:
                        yield StreamEvent.reasoning(delta.thinking)
                    elif delta_type == "input_json_delta" and event.index in tool_blocks:
                        tool_blocks[event.index][2] += delta.partial_json or ""
                elif event_type == "message_delta":
                    stop_reason = getattr(event.delta, "stop_reason", None) or stop_reason
                    usage = getattr(event, "usage", None)
                    if usage is not None:
                        usage_seen = True
                        # output_tokens here is cumulative for the message
                        output_tokens = getattr(usage, "output_tokens", 0) or output_tokens
        except GatewayError:
            raise
        except Exception as exc:
            raise self._map_error(exc) from exc
        finally:
            await close_response(response)

        for index in sorted(tool_blocks):
            call_id, name, raw_arguments = tool_blocks[index]
            yield StreamEvent.call(
                ToolInvocation(
                    call_id=call_id,
                    tool_name=name,
                    arguments=parse_tool_arguments(raw_arguments, name),
                )
            )
        if usage_seen:
            yield StreamEvent.usage_report(
                UsageStats(
                    prompt_tokens=input_tokens,
                    completion_tokens=output_tokens,
                    model=kwargs["model"],
                    provider=self.name,
                )
            )
        yield StreamEvent.done(stop_reason)

    def _request_kwargs(self, request: CompletionRequest) -> Dict[str, Any]:
        system_prompt, payload = self._format_messages(request.messages)
        kwargs: Dict[str, Any] = {
            "model": request.model or self.default_model,
            "messages": payload,
            "max_tokens": request.max_tokens or DEFAULT_MAX_TOKENS,
            "timeout": request.timeout or self.timeout,
        }
        if system_prompt:
            kwargs["system"] = system_prompt
        if request.tools:
            kwargs["tools"] = [tool.to_anthropic() for tool in request.tools]
        if request.temperature is not None:
            kwargs["temperature"] = request.temperature
        kwargs.update(request.extra)
        return kwargs

    def _format_messages(self, messages: List[Message]) -> Tuple[str, List[Dict[str, Any]]]:
        system_parts: List[str] = []
        payload: List[Dict[str, Any]] = []
        for message in messages:
            if message.role in (Role.SYSTEM, Role.DEVELOPER):
                system_parts.append(message.text)
                continue

            if message.role == Role.ASSISTANT:
                role = "assistant"
                blocks: List[Dict[str, Any]] = []
                if message.text:
                    blocks.append({"type": "text", "text": message.text})
                for call in message.tool_calls or []:
                    blocks.append(
                        {
                            "type": "tool_use",
                            "id": call.call_id,
                            "name": call.tool_name,
                            "input": call.arguments,
                        }
                    )
            elif message.role == Role.TOOL:
                role = "user"
                blocks = [
                    {
                        "type": "tool_result",
                        "tool_use_id": message.tool_call_id,
                        "content": message.text,
                    }
                ]
            else:
                role = "user"
                if isinstance(message.content, list):
                    blocks = list(message.content)
                else:
                    blocks = [{"type": "text", "text": message.text}]

            # the Messages API requires alternating roles; merge runs
            if payload and payload[-1]["role"] == role:
                payload[-1]["content"].extend(blocks)
            else:
                payload.append({"role": role, "content": blocks})
        return "\n\n".join(part for part in system_parts if part), payload

    def _map_error(self, exc: BaseException) -> GatewayError:
        if isinstance(exc, GatewayError):
            return exc
        if isinstance(exc, (asyncio.TimeoutError, ConnectionError)):
            return TransportError(f"anthropic request failed: {exc}")

        import anthropic

        if isinstance(
            exc,
            (
                anthropic.APIConnectionError,
                anthropic.RateLimitError,
                anthropic.InternalServerError,
            ),
        ):
            return TransportError(f"anthropic request failed: {exc}")
        if isinstance(exc, anthropic.APIStatusError) and exc.status_code >= 500:
            return TransportError(f"anthropic request failed: {exc}")
        return ProviderError(f"anthropic request failed: {exc}")


__all__ = ["AnthropicProvider"]
