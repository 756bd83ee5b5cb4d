"""
Custom exceptions with helpful error messages and suggestions.

Two families live here:

- Errors that end a turn (``ConfigError``, ``ProviderError``,
  ``TransportError``, ``ToolLoopExceeded``, ``InsufficientBalanceError``).
  These are raised, or surfaced to the caller as a terminal ``error`` event.
- Tool-level errors (``ToolNotFoundError``, ``ToolArgumentError``,
  ``ToolInvocationError``). These are carried as data inside a ``ToolResult``
  so the model can see them; they are never fatal to a turn.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


def _banner(title: str, body: str, suggestion: str = "") -> str:
    message = f"\n{'='*60}\n"
    message += f"❌ {title}\n"
    message += f"{'='*60}\n\n"
    message += body
    if suggestion:
        message += f"\n💡 Suggestion: {suggestion}\n"
    message += f"\n{'='*60}\n"
    return message


class GatewayError(Exception):
    """Base exception for all convogate errors."""

    pass


class ConfigError(GatewayError):
    """Raised when an adapter or registry is constructed without required configuration."""

    def __init__(self, component: str, missing_config: str, env_var: str = ""):
        self.component = component
        self.missing_config = missing_config
        self.env_var = env_var

        body = f"Missing: {missing_config}\n"
        if env_var:
            body += "\n💡 How to fix:\n"
            body += "  1. Set the environment variable:\n"
            body += f"     export {env_var}='your-api-key'\n"
            body += "  2. Or pass it in the provider config:\n"
            body += "     ProviderConfig(provider=..., api_key='your-api-key')\n"

        super().__init__(_banner(f"Configuration Error: '{component}'", body))


class ConversationError(GatewayError):
    """Raised when a conversation violates the role ordering a provider accepts."""

    def __init__(self, index: int, issue: str):
        self.index = index
        self.issue = issue
        super().__init__(f"Invalid conversation at message {index}: {issue}")


class ProviderError(GatewayError):
    """Raised when a provider adapter cannot complete a request."""


class TransportError(ProviderError):
    """Transient network failure talking to a provider or tool server.

    The orchestrator retries these once per round.
    """


class NotConnectedError(GatewayError):
    """Raised when a tool registry is used while disconnected."""

    def __init__(self, identity: str, operation: str):
        self.identity = identity
        self.operation = operation
        super().__init__(
            f"Tool server '{identity}' is not connected; call connect() before {operation}()."
        )


class ToolError(GatewayError):
    """Base class for tool-level failures that are reported back to the model."""

    kind = "tool_error"

    def __init__(self, tool_name: str, message: str):
        self.tool_name = tool_name
        self.detail = message
        super().__init__(message)

    def to_payload(self) -> Dict[str, Any]:
        """JSON-safe representation placed in the tool message the model reads."""
        return {"error": self.detail, "type": self.kind, "tool": self.tool_name}


class ToolNotFoundError(ToolError):
    """The requested tool name is not in the last listing of any registry."""

    kind = "tool_not_found"

    def __init__(self, tool_name: str, available: Optional[list] = None):
        self.available = list(available or [])
        message = f"Unknown tool '{tool_name}'."
        if self.available:
            message += f" Available tools: {', '.join(self.available)}"
        super().__init__(tool_name, message)


class ToolArgumentError(ToolError):
    """Tool arguments failed schema validation."""

    kind = "invalid_arguments"

    def __init__(self, tool_name: str, param_name: str, issue: str, suggestion: str = ""):
        self.param_name = param_name
        self.issue = issue
        self.suggestion = suggestion
        message = f"Invalid arguments for tool '{tool_name}': {issue}"
        if param_name:
            message += f" (parameter: {param_name})"
        if suggestion:
            message += f". {suggestion}"
        super().__init__(tool_name, message)


class ToolInvocationError(ToolError):
    """The tool call failed in transport, timed out, or the server reported an error."""

    kind = "invocation_failed"

    def __init__(self, tool_name: str, message: str, cause: Optional[BaseException] = None):
        self.cause = cause
        super().__init__(tool_name, message)


class ToolLoopExceeded(GatewayError):
    """Raised when the model keeps requesting tools past the configured round ceiling."""

    def __init__(self, rounds: int, limit: int):
        self.rounds = rounds
        self.limit = limit
        super().__init__(
            _banner(
                "Tool Loop Exceeded",
                f"Rounds executed: {rounds}\nLimit: {limit}\n",
                "Raise OrchestratorConfig(max_tool_rounds=...) or check the tools "
                "for responses that keep the model calling them.",
            )
        )


class UserNotFoundError(GatewayError):
    """Raised by a balance store when the user row does not exist."""

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"User '{user_id}' does not exist.")


class InsufficientBalanceError(GatewayError):
    """Raised when a user's balance cannot cover a charge."""

    def __init__(self, user_id: str, required: int, available: Optional[int] = None):
        self.user_id = user_id
        self.required = required
        self.available = available

        body = f"User: {user_id}\nRequired: {required}\n"
        if available is not None:
            body += f"Available: {available}\n"
        super().__init__(
            _banner("Insufficient Balance", body, "Top up the account or lower the request size.")
        )


__all__ = [
    "GatewayError",
    "ConfigError",
    "ConversationError",
    "ProviderError",
    "TransportError",
    "NotConnectedError",
    "ToolError",
    "ToolNotFoundError",
    "ToolArgumentError",
    "ToolInvocationError",
    "ToolLoopExceeded",
    "UserNotFoundError",
    "InsufficientBalanceError",
]
