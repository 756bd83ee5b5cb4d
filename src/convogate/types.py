"""
Core message, tool and stream-event types for the completion gateway.

These primitives are provider-agnostic and are reused across adapters,
tool registries, the orchestrator loop, the usage ledger and tests.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Union

from .exceptions import ConversationError

if TYPE_CHECKING:
    from .exceptions import ToolError
    from .usage import TurnUsage, UsageStats


class Role(str, Enum):
    """Conversation role."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"
    DEVELOPER = "developer"


@dataclass
class ToolInvocation:
    """A tool call requested by the model mid-stream."""

    call_id: str
    tool_name: str
    arguments: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.call_id, "name": self.tool_name, "arguments": self.arguments}


@dataclass
class ToolResult:
    """
    Outcome of exactly one ToolInvocation.

    Tool failures are data: ``error`` holds the ToolError instance and the
    model receives its payload as the tool message content.
    """

    call_id: str
    tool_name: str
    output: Any = None
    error: Optional["ToolError"] = None
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_content(self) -> str:
        """Render the payload the model sees in the ``tool`` message."""
        if self.error is not None:
            return json.dumps(self.error.to_payload(), ensure_ascii=False)
        if isinstance(self.output, str):
            return self.output
        return json.dumps(self.output, ensure_ascii=False, default=str)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.call_id,
            "name": self.tool_name,
            "output": self.output,
            "error": self.error.to_payload() if self.error is not None else None,
            "status": "success" if self.ok else "error",
            "duration": round(self.duration, 4),
        }


@dataclass
class Message:
    """
    One conversation message.

    ``content`` is plain text for most roles; tool messages carry the rendered
    tool payload. Assistant messages that requested tools list them in
    ``tool_calls`` and tool messages point back with ``tool_call_id``.
    """

    role: Role
    content: Union[str, List[Any], Dict[str, Any]] = ""
    tool_calls: Optional[List[ToolInvocation]] = None
    tool_call_id: Optional[str] = None
    name: Optional[str] = None

    def __post_init__(self) -> None:
        if not isinstance(self.role, Role):
            self.role = Role(self.role)

    @classmethod
    def tool(cls, result: ToolResult) -> "Message":
        """Build the tool message answering ``result.call_id``."""
        return cls(
            role=Role.TOOL,
            content=result.to_content(),
            tool_call_id=result.call_id,
            name=result.tool_name,
        )

    @property
    def text(self) -> str:
        """Best-effort plain text view of ``content``."""
        if isinstance(self.content, str):
            return self.content
        if isinstance(self.content, list):
            parts = []
            for part in self.content:
                if isinstance(part, dict) and part.get("type") == "text":
                    parts.append(str(part.get("text", "")))
                elif isinstance(part, str):
                    parts.append(part)
            return "".join(parts)
        return json.dumps(self.content, ensure_ascii=False, default=str)

    def to_dict(self) -> Dict[str, Any]:
        """Return a plain-JSON-safe representation for logging or persistence."""
        data: Dict[str, Any] = {"role": self.role.value, "content": self.content}
        if self.tool_calls:
            data["tool_calls"] = [call.to_dict() for call in self.tool_calls]
        if self.tool_call_id:
            data["tool_call_id"] = self.tool_call_id
        if self.name:
            data["name"] = self.name
        return data


@dataclass
class ToolDescriptor:
    """
    A callable tool as exposed to a provider adapter.

    ``name`` is the name the model sees; it is unique within a merged toolset.
    ``original_name`` is the name on the owning server and ``source`` is the
    owning registry's identity.
    """

    name: str
    description: str = ""
    input_schema: Dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    source: str = ""
    original_name: str = ""

    def __post_init__(self) -> None:
        if not self.original_name:
            self.original_name = self.name
        schema = dict(self.input_schema or {})
        schema.setdefault("type", "object")
        if not isinstance(schema.get("properties"), dict):
            schema["properties"] = {}
        self.input_schema = schema

    def schema(self) -> Dict[str, Any]:
        """Return a JSON-schema style dict describing this tool."""
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.input_schema,
        }

    def to_openai(self) -> Dict[str, Any]:
        return {"type": "function", "function": self.schema()}

    def to_anthropic(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }


class EventType(str, Enum):
    DELTA = "delta"
    REASONING = "reasoning"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    USAGE = "usage"
    DONE = "done"
    ERROR = "error"
    CANCELLED = "cancelled"


@dataclass
class StreamEvent:
    """
    One element of a completion stream.

    Provider adapters produce ``delta``, ``reasoning``, ``tool_call``,
    ``usage``, ``done`` and ``error`` events. The orchestrator re-exposes
    deltas to the caller, adds ``tool_result`` progress events, and ends every
    turn with exactly one of ``done``, ``error`` or ``cancelled``.
    """

    type: EventType
    text: str = ""
    tool_call: Optional[ToolInvocation] = None
    tool_result: Optional[ToolResult] = None
    usage: Optional[Union["UsageStats", "TurnUsage"]] = None
    error: Optional[BaseException] = None
    finish_reason: Optional[str] = None

    @classmethod
    def delta(cls, text: str) -> "StreamEvent":
        return cls(EventType.DELTA, text=text)

    @classmethod
    def reasoning(cls, text: str) -> "StreamEvent":
        return cls(EventType.REASONING, text=text)

    @classmethod
    def call(cls, invocation: ToolInvocation) -> "StreamEvent":
        return cls(EventType.TOOL_CALL, tool_call=invocation)

    @classmethod
    def result(cls, result: ToolResult) -> "StreamEvent":
        return cls(EventType.TOOL_RESULT, tool_result=result)

    @classmethod
    def usage_report(cls, usage: "UsageStats") -> "StreamEvent":
        return cls(EventType.USAGE, usage=usage)

    @classmethod
    def done(
        cls, finish_reason: Optional[str] = None, usage: Optional["TurnUsage"] = None
    ) -> "StreamEvent":
        return cls(EventType.DONE, finish_reason=finish_reason, usage=usage)

    @classmethod
    def failure(cls, error: BaseException) -> "StreamEvent":
        return cls(EventType.ERROR, error=error)

    @classmethod
    def cancelled(cls) -> "StreamEvent":
        return cls(EventType.CANCELLED)

    @property
    def is_terminal(self) -> bool:
        return self.type in (EventType.DONE, EventType.ERROR, EventType.CANCELLED)

    def to_dict(self) -> Dict[str, Any]:
        """JSON-safe frame for an SSE or WebSocket delivery layer."""
        data: Dict[str, Any] = {"type": self.type.value}
        if self.type in (EventType.DELTA, EventType.REASONING):
            data["text"] = self.text
        elif self.type is EventType.TOOL_CALL and self.tool_call is not None:
            data["tool_call"] = self.tool_call.to_dict()
        elif self.type is EventType.TOOL_RESULT and self.tool_result is not None:
            data["tool_result"] = self.tool_result.to_dict()
        elif self.type is EventType.ERROR and self.error is not None:
            data["error"] = {"message": str(self.error), "code": type(self.error).__name__}
        if self.usage is not None:
            data["usage"] = self.usage.to_dict()
        if self.finish_reason:
            data["finish_reason"] = self.finish_reason
        return data


class TurnState(str, Enum):
    """Orchestrator state for one request."""

    INIT = "init"
    STREAMING = "streaming"
    TOOL_ROUND = "tool_round"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class TurnOutcome:
    """
    Everything the caller needs after a turn ends: transcript, usage, status.

    ``messages`` is the full transcript including the input conversation;
    ``new_messages`` is only what this turn appended (assistant and tool
    messages), which is what a conversation store should persist.
    """

    turn_id: str
    status: TurnState
    messages: List[Message]
    input_length: int
    text: str = ""
    usage: Optional["TurnUsage"] = None
    rounds: int = 0
    tool_results: List[ToolResult] = field(default_factory=list)
    error: Optional[BaseException] = None

    @property
    def new_messages(self) -> List[Message]:
        return self.messages[self.input_length :]

    @property
    def succeeded(self) -> bool:
        return self.status is TurnState.COMPLETED


def validate_conversation(messages: List[Message]) -> None:
    """
    Check that ``messages`` is a sequence a provider accepts.

    Raises:
        ConversationError: if a tool message answers an unknown call id, or
            two user messages follow each other without an assistant/tool
            message in between.
    """
    announced = set()
    previous: Optional[Role] = None
    for index, message in enumerate(messages):
        if message.role is Role.USER and previous is Role.USER:
            raise ConversationError(index, "two consecutive user messages")
        if message.role is Role.ASSISTANT and message.tool_calls:
            announced.update(call.call_id for call in message.tool_calls)
        if message.role is Role.TOOL:
            if not message.tool_call_id or message.tool_call_id not in announced:
                raise ConversationError(
                    index,
                    f"tool message references unknown tool call id {message.tool_call_id!r}",
                )
        if message.role in (Role.SYSTEM, Role.DEVELOPER):
            continue
        previous = message.role


__all__ = [
    "Role",
    "Message",
    "ToolInvocation",
    "ToolResult",
    "ToolDescriptor",
    "EventType",
    "StreamEvent",
    "TurnState",
    "TurnOutcome",
    "validate_conversation",
]
