"""
Local provider for offline testing and development.

This provider doesn't call any external API and simply echoes user messages.
"""

from __future__ import annotations

import asyncio
from typing import AsyncIterator, List

from ..types import Message, Role, StreamEvent
from ..usage import UsageStats
from .base import CompletionRequest, CompletionResult, CompletionStream


class LocalProvider:
    """
    Local fallback provider.

    This does not call a model. It echoes the latest user content (or the
    latest tool results, after a tool round) and is useful for
    offline/manual testing or as a safe default. Each whitespace-separated
    word counts as one token.
    """

    name = "local"

    def __init__(self, default_model: str = "local-echo", delay: float = 0.0):
        self.default_model = default_model
        self.delay = delay

    def _reply(self, request: CompletionRequest) -> str:
        model = request.model or self.default_model
        last = request.messages[-1] if request.messages else None
        if last is not None and last.role == Role.TOOL:
            results = [m.text for m in request.messages if m.role == Role.TOOL]
            return f"[local provider: {model}] tool results: {'; '.join(results)}"
        last_user = next((m for m in reversed(request.messages) if m.role == Role.USER), None)
        user_text = last_user.text if last_user else ""
        return f"[local provider: {model}] {user_text or 'No user message provided.'}"

    def _usage(self, request: CompletionRequest, reply: str) -> UsageStats:
        prompt = sum(len(m.text.split()) for m in request.messages)
        return UsageStats(
            prompt_tokens=prompt,
            completion_tokens=len(reply.split()),
            model=request.model or self.default_model,
            provider=self.name,
        )

    async def generate(self, request: CompletionRequest) -> CompletionResult:
        reply = self._reply(request)
        return CompletionResult(
            message=Message(role=Role.ASSISTANT, content=reply),
            usage=self._usage(request, reply),
            finish_reason="stop",
        )

    def stream(self, request: CompletionRequest) -> CompletionStream:
        return CompletionStream(self._events(request), name=self.name)

    async def _events(self, request: CompletionRequest) -> AsyncIterator[StreamEvent]:
        reply = self._reply(request)
        words: List[str] = reply.split()
        for position, word in enumerate(words):
            if self.delay:
                await asyncio.sleep(self.delay)
            yield StreamEvent.delta(word if position == len(words) - 1 else word + " ")
        yield StreamEvent.usage_report(self._usage(request, reply))
        yield StreamEvent.done("stop")


__all__ = ["LocalProvider"]
