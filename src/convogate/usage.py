"""
Token usage tracking for provider calls and whole turns.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List


@dataclass
class UsageStats:
    """
    Provider-reported token usage for a single streamed or blocking call.

    Attributes:
        prompt_tokens: Number of tokens in the prompt/input.
        completion_tokens: Number of tokens in the completion/output.
        total_tokens: Total tokens used (prompt + completion).
        model: Model name used for this call.
        provider: Provider adapter name (openai, anthropic, ...).
    """

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    model: str = ""
    provider: str = ""

    def __post_init__(self):
        """Ensure total_tokens is consistent."""
        if self.total_tokens == 0 and (self.prompt_tokens or self.completion_tokens):
            self.total_tokens = self.prompt_tokens + self.completion_tokens

    def to_dict(self) -> Dict[str, Any]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
            "model": self.model,
            "provider": self.provider,
        }


@dataclass
class TurnUsage:
    """
    Aggregates usage across every provider call made during one turn.

    Failed stream attempts that reported usage before failing are included:
    tokens the provider counted are billable whether or not the round
    completed.

    Attributes:
        prompt_tokens: Cumulative prompt tokens.
        completion_tokens: Cumulative completion tokens.
        total_tokens: Cumulative total tokens.
        tool_calls: Number of tool calls that returned without error.
        calls: UsageStats for each provider call, in order.
    """

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    tool_calls: int = 0
    calls: List[UsageStats] = field(default_factory=list)

    def add_usage(self, stats: UsageStats) -> None:
        """Add the usage reported by one provider call."""
        self.prompt_tokens += stats.prompt_tokens
        self.completion_tokens += stats.completion_tokens
        self.total_tokens += stats.total_tokens
        self.calls.append(stats)

    @property
    def reported(self) -> bool:
        """Whether any provider call reported usage."""
        return bool(self.calls)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
            "tool_calls": self.tool_calls,
            "calls": len(self.calls),
        }

    def __str__(self) -> str:
        lines = [
            "\n" + "=" * 60,
            "📊 Usage Summary",
            "=" * 60,
            f"Total Tokens: {self.total_tokens:,}",
            f"  - Prompt: {self.prompt_tokens:,}",
            f"  - Completion: {self.completion_tokens:,}",
            f"Provider Calls: {len(self.calls)}",
            f"Tool Calls: {self.tool_calls}",
            "=" * 60 + "\n",
        ]
        return "\n".join(lines)


__all__ = ["UsageStats", "TurnUsage"]
