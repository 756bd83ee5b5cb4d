"""Public exports for the convogate package."""

from .billing import SQLiteBalanceStore, UsageLedger, UsageRecord
from .exceptions import (
    ConfigError,
    ConversationError,
    GatewayError,
    InsufficientBalanceError,
    NotConnectedError,
    ProviderError,
    ToolArgumentError,
    ToolError,
    ToolInvocationError,
    ToolLoopExceeded,
    ToolNotFoundError,
    TransportError,
    UserNotFoundError,
)
from .gateway import (
    ChatTurn,
    CompletionGateway,
    ConversationStore,
    InMemoryConversationStore,
    ProviderConfigStore,
    StaticProviderConfigStore,
)
from .orchestrator import Orchestrator, OrchestratorConfig, TurnStream
from .pricing import BillingRule, calculate_power
from .providers import (
    AnthropicProvider,
    LocalProvider,
    OpenAICompatibleProvider,
    ProviderAdapter,
    ProviderCache,
    ProviderConfig,
)
from .tools import LocalToolRegistry, MCPToolRegistry, Tool, ToolBridge, ToolParameter, ToolServerConfig, tool
from .types import (
    EventType,
    Message,
    Role,
    StreamEvent,
    ToolDescriptor,
    ToolInvocation,
    ToolResult,
    TurnOutcome,
    TurnState,
)
from .usage import TurnUsage, UsageStats

__version__ = "0.1.0"

__all__ = [
    "CompletionGateway",
    "ChatTurn",
    "ConversationStore",
    "ProviderConfigStore",
    "StaticProviderConfigStore",
    "InMemoryConversationStore",
    "Orchestrator",
    "OrchestratorConfig",
    "TurnStream",
    "ProviderAdapter",
    "ProviderCache",
    "ProviderConfig",
    "OpenAICompatibleProvider",
    "AnthropicProvider",
    "LocalProvider",
    "Tool",
    "ToolParameter",
    "tool",
    "LocalToolRegistry",
    "MCPToolRegistry",
    "ToolServerConfig",
    "ToolBridge",
    "Message",
    "Role",
    "ToolDescriptor",
    "ToolInvocation",
    "ToolResult",
    "StreamEvent",
    "EventType",
    "TurnOutcome",
    "TurnState",
    # Usage and billing
    "UsageStats",
    "TurnUsage",
    "BillingRule",
    "calculate_power",
    "UsageLedger",
    "UsageRecord",
    "SQLiteBalanceStore",
    # Exceptions
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
