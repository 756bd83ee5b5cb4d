"""
Configuration options for the completion orchestrator.
"""

from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Optional

# Hook type definitions
HookCallable = Callable[..., None]
Hooks = Dict[str, HookCallable]


@dataclass
class OrchestratorConfig:
    """
    Configuration options for one orchestrated turn.

    Attributes:
        model: Model identifier passed to the adapter. Empty means the
            adapter's default model.
        temperature: Sampling temperature. None leaves it to the provider.
        max_tokens: Maximum tokens per provider call. None leaves it to the provider.
        max_tool_rounds: Tool rounds allowed per turn. A request for one more
            round fails the turn with ToolLoopExceeded. Default: 5.
        max_stream_retries: Retries of a round after a TransportError. Default: 1.
        retry_backoff_seconds: Seconds to wait before a retry (multiplied by
            the attempt number). Default: 0.5.
        stream_timeout: Seconds to wait for the next stream event before the
            round counts as a transport failure. Also sent as the provider
            request timeout. Default: 60.0.
        tool_timeout_seconds: Per-call tool timeout enforced by the bridge on top
            of each registry's own. A timed-out call becomes an error result.
            None = registry timeouts only. Default: 30.0.
        max_parallel_tools: Tool calls run at once within a round, used when the
            gateway builds the turn's ToolBridge. Default: 4.
        hooks: Optional dict of lifecycle hooks for observability. Default: None.
               Available hooks:
               - 'on_turn_start': Called when a turn starts with (turn_id, messages)
               - 'on_round_start': Called before each provider round with (round_num, messages)
               - 'on_llm_start': Called before each provider call with (request, attempt)
               - 'on_llm_end': Called after a provider stream finishes with (text, usage)
               - 'on_retry': Called before a retry with (round_num, attempt, error)
               - 'on_tool_start': Called before a tool call with (invocation,)
               - 'on_tool_end': Called after a tool call with (result,)
               - 'on_turn_end': Called once the turn ends with (outcome,)
               - 'on_error': Called on a failure with (error, context)
        extra: Opaque generation parameters passed through to the adapter.
    """

    model: str = ""
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    max_tool_rounds: int = 5
    max_stream_retries: int = 1
    retry_backoff_seconds: float = 0.5
    stream_timeout: Optional[float] = 60.0
    tool_timeout_seconds: Optional[float] = 30.0
    max_parallel_tools: int = 4
    hooks: Optional[Hooks] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def merged(self, **overrides: Any) -> "OrchestratorConfig":
        """Return a copy with ``overrides`` applied (None values are ignored)."""
        changes = {key: value for key, value in overrides.items() if value is not None}
        return replace(self, **changes) if changes else self
