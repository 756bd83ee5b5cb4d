"""
Adapter for any endpoint speaking the OpenAI Chat Completions protocol.

OpenAI itself, DeepSeek, Ollama, Qianfan and most self-hosted gateways are
served by this one class; only ``base_url`` and the API key differ.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

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


class OpenAICompatibleProvider:
    """Adapter that speaks the Chat Completions API through ``AsyncOpenAI``."""

    name = "openai"

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        default_model: str = "gpt-4o-mini",
        timeout: float = 60.0,
        name: str | None = None,
        client: Any = None,
    ):
        """
        Args:
            api_key: Vendor API key. Falls back to the provider's environment
                variable (``OPENAI_API_KEY`` for the default name).
            base_url: Endpoint root, e.g. ``https://api.deepseek.com/v1``.
            default_model: Model used when a request leaves ``model`` empty.
            timeout: Default request timeout in seconds.
            name: Adapter name reported in usage stats (``deepseek``, ``ollama``...).
            client: Pre-built ``AsyncOpenAI``-compatible client (tests, pooling).

        Raises:
            ConfigError: If no API key is available and no client was given.
        """
        if name:
            self.name = name
        self.base_url = base_url
        self.default_model = default_model
        self.timeout = timeout

        if client is not None:
            self._client = client
            return

        self.api_key = api_key or api_key_from_env(self.name) or api_key_from_env("openai")
        if not self.api_key:
            raise ConfigError(
                component=f"OpenAICompatibleProvider({self.name})",
                missing_config="API key",
                env_var="OPENAI_API_KEY",
            )

        try:
            from openai import AsyncOpenAI
        except ImportError as exc:
            raise ProviderError(
                "openai package not installed. Install with `pip install openai`."
            ) from exc

        self._client = AsyncOpenAI(api_key=self.api_key, base_url=base_url, timeout=timeout)

    # ------------------------------------------------------------------
    # ProviderAdapter
    # ------------------------------------------------------------------

    async def generate(self, request: CompletionRequest) -> CompletionResult:
        kwargs = self._request_kwargs(request)
        try:
            response = await self._client.chat.completions.create(**kwargs)
        except Exception as exc:
            raise self._map_error(exc) from exc

        choice = response.choices[0]
        message = choice.message
        tool_calls = [
            ToolInvocation(
                call_id=call.id,
                tool_name=call.function.name,
                arguments=parse_tool_arguments(call.function.arguments, call.function.name),
            )
            for call in (message.tool_calls or [])
        ]
        return CompletionResult(
            message=Message(
                role=Role.ASSISTANT,
                content=message.content or "",
                tool_calls=tool_calls or None,
            ),
            usage=self._usage(getattr(response, "usage", None), kwargs["model"]),
            finish_reason=choice.finish_reason,
            reasoning=getattr(message, "reasoning_content", None) or "",
        )

    def stream(self, request: CompletionRequest) -> CompletionStream:
        return CompletionStream(self._stream_events(request), name=self.name)

    async def _stream_events(self, request: CompletionRequest) -> AsyncIterator[StreamEvent]:
        kwargs = self._request_kwargs(request)
        try:
            response = await self._client.chat.completions.create(
                **kwargs, stream=True, stream_options={"include_usage": True}
            )
        except Exception as exc:
            raise self._map_error(exc) from exc

        # tool call fragments arrive keyed by index; id and name come first
        fragments: Dict[int, Dict[str, str]] = {}
        usage: Optional[UsageStats] = None
        finish_reason: Optional[str] = None
        try:
            async for chunk in response:
                if getattr(chunk, "usage", None):
                    usage = self._usage(chunk.usage, kwargs["model"])
                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                delta = choice.delta
                if delta is not None:
                    reasoning = getattr(delta, "reasoning_content", None)
                    if reasoning:
                        yield StreamEvent.reasoning(reasoning)
                    text = self._delta_text(delta.content)
                    if text:
                        yield StreamEvent.delta(text)
                    for fragment in getattr(delta, "tool_calls", None) or []:
                        slot = fragments.setdefault(
                            fragment.index, {"id": "", "name": "", "arguments": ""}
                        )
                        if fragment.id:
                            slot["id"] = fragment.id
                        function = fragment.function
                        if function is not None:
                            if function.name and not slot["name"]:
                                slot["name"] = function.name
                            if function.arguments:
                                slot["arguments"] += function.arguments
                if choice.finish_reason:
                    finish_reason = choice.finish_reason
        except GatewayError:
            raise
        except Exception as exc:
            raise self._map_error(exc) from exc
        finally:
            await close_response(response)

        for index in sorted(fragments):
            slot = fragments[index]
            yield StreamEvent.call(
                ToolInvocation(
                    call_id=slot["id"] or f"call_{index}",
                    tool_name=slot["name"],
                    arguments=parse_tool_arguments(slot["arguments"], slot["name"]),
                )
            )
        if usage is not None:
            yield StreamEvent.usage_report(usage)
        yield StreamEvent.done(finish_reason)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _request_kwargs(self, request: CompletionRequest) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {
            "model": request.model or self.default_model,
            "messages": self._format_messages(request.messages),
            "timeout": request.timeout or self.timeout,
        }
        if request.tools:
            kwargs["tools"] = [tool.to_openai() for tool in request.tools]
        if request.temperature is not None:
            kwargs["temperature"] = request.temperature
        if request.max_tokens is not None:
            kwargs["max_tokens"] = request.max_tokens
        kwargs.update(request.extra)
        return kwargs

    def _format_messages(self, messages: List[Message]) -> List[Dict[str, Any]]:
        payload: List[Dict[str, Any]] = []
        for message in messages:
            if message.role in (Role.SYSTEM, Role.DEVELOPER):
                # compatible endpoints rarely accept "developer"
                payload.append({"role": "system", "content": message.content})
            elif message.role == Role.ASSISTANT:
                entry: Dict[str, Any] = {"role": "assistant", "content": message.content or None}
                if message.tool_calls:
                    entry["tool_calls"] = [
                        {
                            "id": call.call_id,
                            "type": "function",
                            "function": {
                                "name": call.tool_name,
                                "arguments": json.dumps(call.arguments, ensure_ascii=False),
                            },
                        }
                        for call in message.tool_calls
                    ]
                payload.append(entry)
            elif message.role == Role.TOOL:
                payload.append(
                    {
                        "role": "tool",
                        "tool_call_id": message.tool_call_id,
                        "content": message.text,
                    }
                )
            else:
                payload.append({"role": "user", "content": message.content})
        return payload

    @staticmethod
    def _delta_text(content: Any) -> str:
        if not content:
            return ""
        if isinstance(content, list):
            return "".join(part.text for part in content if getattr(part, "text", None))
        return str(content)

    def _usage(self, raw: Any, model: str) -> Optional[UsageStats]:
        if raw is None:
            return None
        return UsageStats(
            prompt_tokens=getattr(raw, "prompt_tokens", 0) or 0,
            completion_tokens=getattr(raw, "completion_tokens", 0) or 0,
            total_tokens=getattr(raw, "total_tokens", 0) or 0,
            model=model,
            provider=self.name,
        )

    def _map_error(self, exc: BaseException) -> GatewayError:
        if isinstance(exc, GatewayError):
            return exc
        if isinstance(exc, (asyncio.TimeoutError, ConnectionError)):
            return TransportError(f"{self.name} request failed: {exc}")
        import openai

        if isinstance(
            exc,
            (
                openai.APIConnectionError,
                openai.RateLimitError,
                openai.InternalServerError,
            ),
        ):
            return TransportError(f"{self.name} request failed: {exc}")
        if isinstance(exc, openai.APIStatusError) and exc.status_code >= 500:
            return TransportError(f"{self.name} request failed: {exc}")
        return ProviderError(f"{self.name} request failed: {exc}")


__all__ = ["OpenAICompatibleProvider"]
