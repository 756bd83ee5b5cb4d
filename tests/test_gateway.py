"""
Tests for CompletionGateway: pre-flight, streaming, commit and settlement.

The balance store is SQLite in a temporary directory. Most tests keep
messages in ``SQLiteConversationStore`` below, which writes through the same
transaction as the charge so rollbacks can be observed.
"""

from __future__ import annotations

import asyncio
import sqlite3
from pathlib import Path
from typing import List, Optional, Sequence

import pytest

from convogate.billing import SQLiteBalanceStore, UsageLedger
from convogate.billing.store import SQLiteTransaction
from convogate.exceptions import (
    ConfigError,
    ConversationError,
    InsufficientBalanceError,
    ProviderError,
)
from convogate.gateway import (
    CompletionGateway,
    InMemoryConversationStore,
    StaticProviderConfigStore,
)
from convogate.orchestrator import OrchestratorConfig
from convogate.pricing import BillingRule
from convogate.providers import ProviderCache
from convogate.providers.base import CompletionRequest, CompletionStream
from convogate.tools import LocalToolRegistry, RegistryState
from convogate.types import EventType, Message, Role, StreamEvent, ToolInvocation, TurnState
from convogate.usage import UsageStats


class SQLiteConversationStore:
    """Conversation store sharing the balance database and its transactions."""

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        conn = sqlite3.connect(db_path)
        try:
            conn.execute(
                "CREATE TABLE IF NOT EXISTS messages ("
                "id INTEGER PRIMARY KEY AUTOINCREMENT, conversation_id TEXT, role TEXT, content TEXT)"
            )
            conn.commit()
        finally:
            conn.close()

    def load_history(self, conversation_id: str) -> List[Message]:
        conn = sqlite3.connect(self.db_path)
        try:
            rows = conn.execute(
                "SELECT role, content FROM messages WHERE conversation_id = ? ORDER BY id",
                (conversation_id,),
            ).fetchall()
        finally:
            conn.close()
        return [Message(role=Role(role), content=content) for role, content in rows]

    def append_messages(
        self,
        conversation_id: str,
        messages: Sequence[Message],
        tx: Optional[SQLiteTransaction] = None,
    ) -> None:
        assert tx is not None
        tx.conn.executemany(
            "INSERT INTO messages (conversation_id, role, content) VALUES (?, ?, ?)",
            [(conversation_id, m.role.value, m.text) for m in messages if m.role is not Role.TOOL and not m.tool_calls],
        )


class FailingConversationStore(InMemoryConversationStore):
    def append_messages(self, conversation_id, messages, tx=None) -> None:
        raise ConversationError(0, "conversation is archived")


class ScriptedProvider:
    """Replays one scripted round per call; sleeps for float items."""

    name = "scripted"

    def __init__(self, *scripts: list) -> None:
        self.scripts = list(scripts)
        self.requests: List[CompletionRequest] = []

    def stream(self, request: CompletionRequest) -> CompletionStream:
        self.requests.append(request)
        script = self.scripts[min(len(self.requests), len(self.scripts)) - 1]
        return CompletionStream(self._play(script), name=self.name)

    async def _play(self, script: list):
        for item in script:
            if isinstance(item, float):
                await asyncio.sleep(item)
                continue
            yield item

    async def generate(self, request: CompletionRequest):
        raise NotImplementedError


def usage(prompt: int, completion: int = 0) -> StreamEvent:
    return StreamEvent.usage_report(UsageStats(prompt_tokens=prompt, completion_tokens=completion))


def user(text: str) -> List[Message]:
    return [Message(role=Role.USER, content=text)]


class CalcProvider(ScriptedProvider):
    """Asks for ``calc`` until a tool result is present, then answers."""

    def stream(self, request: CompletionRequest) -> CompletionStream:
        self.requests.append(request)
        if request.messages[-1].role is Role.TOOL:
            script = [StreamEvent.delta("3"), usage(10), StreamEvent.done("stop")]
        else:
            script = [
                StreamEvent.call(ToolInvocation("c1", "calc", {"a": 1, "b": 2})),
                usage(10),
                StreamEvent.done("tool_calls"),
            ]
        return CompletionStream(self._play(script), name=self.name)


def calc_registry() -> LocalToolRegistry:
    registry = LocalToolRegistry("calc")

    @registry.tool(description="Add two integers")
    def calc(a: int, b: int) -> int:
        return a + b

    return registry


@pytest.fixture
def db_path(tmp_path: Path) -> str:
    return str(tmp_path / "gateway.db")


@pytest.fixture
def balances(db_path: str) -> SQLiteBalanceStore:
    store = SQLiteBalanceStore(db_path)
    store.create_user("u1", power=100)
    store.create_user("broke", power=0)
    return store


@pytest.fixture
def conversations(db_path: str, balances: SQLiteBalanceStore) -> SQLiteConversationStore:
    return SQLiteConversationStore(db_path)


def make_gateway(
    balances: SQLiteBalanceStore,
    conversations,
    provider: Optional[ScriptedProvider] = None,
    **config_overrides,
) -> CompletionGateway:
    cache = ProviderCache()
    if provider is not None:
        cache.register("scripted", lambda config: provider)
    config_store = StaticProviderConfigStore(
        {
            # one power per token
            "echo": {"provider": "local", "model": "echo", "billing": {"power": 1, "tokens": 1}},
            "scripted": {
                "provider": "scripted",
                "billing": {"power": 1, "tokens": 10, "tool_call_power": 2},
            },
        }
    )
    return CompletionGateway(
        config_store,
        conversations,
        balances,
        UsageLedger(BillingRule(power=10, tokens=1000)),
        providers=cache,
        config=OrchestratorConfig(retry_backoff_seconds=0.0, **config_overrides),
    )


class TestGatewayTurns:
    @pytest.mark.asyncio
    async def test_turn_is_streamed_stored_and_charged(self, balances, conversations) -> None:
        gateway = make_gateway(balances, conversations)
        turn = gateway.chat("u1", "conv-1", "echo", user("hi there"), turn_id="t1")
        events = [event async for event in turn]

        assert [e.type for e in events] == [EventType.DELTA] * 5 + [EventType.DONE]
        assert "".join(e.text for e in events[:-1]) == "[local provider: echo] hi there"
        assert turn.outcome.status is TurnState.COMPLETED
        assert turn.error is None

        # 2 prompt words + 5 reply words at one power per token
        assert turn.record.amount == 7
        assert turn.record.association_no == "t1"
        assert balances.get_balance("u1") == 93

        history = conversations.load_history("conv-1")
        assert [m.role for m in history] == [Role.USER, Role.ASSISTANT]
        assert history[1].content == "[local provider: echo] hi there"

    @pytest.mark.asyncio
    async def test_history_prefixes_next_turn(self, balances, conversations) -> None:
        gateway = make_gateway(balances, conversations)
        await gateway.chat("u1", "conv-1", "echo", user("first")).collect()
        provider = ScriptedProvider([StreamEvent.delta("ok"), usage(1), StreamEvent.done("stop")])
        gateway = make_gateway(balances, conversations, provider)
        await gateway.chat("u1", "conv-1", "scripted", user("second")).collect()

        sent = provider.requests[0].messages
        assert [m.text for m in sent] == ["first", "[local provider: echo] first", "second"]
        assert len(conversations.load_history("conv-1")) == 4

    @pytest.mark.asyncio
    async def test_same_turn_id_charges_once(self, balances, conversations) -> None:
        gateway = make_gateway(balances, conversations)
        first = gateway.chat("u1", "conv-1", "echo", user("hi"), turn_id="t1")
        await first.collect()
        second = gateway.chat("u1", "conv-2", "echo", user("hi"), turn_id="t1")
        await second.collect()

        assert second.record.account_no == first.record.account_no
        assert len(balances.records("u1")) == 1

    @pytest.mark.asyncio
    async def test_tool_round_with_registry(self, balances, conversations) -> None:
        registry = LocalToolRegistry("calc")

        @registry.tool(description="Add two integers")
        def calc(a: int, b: int) -> int:
            return a + b

        provider = ScriptedProvider(
            [
                StreamEvent.call(ToolInvocation("c1", "calc", {"a": 2, "b": 2})),
                usage(20),
                StreamEvent.done("tool_calls"),
            ],
            [StreamEvent.delta("4"), usage(10), StreamEvent.done("stop")],
        )
        gateway = make_gateway(balances, conversations, provider)
        turn = gateway.chat("u1", "conv-1", "scripted", user("2+2?"), registries=[registry])
        events = [event async for event in turn]

        assert [e.type for e in events] == [
            EventType.TOOL_CALL,
            EventType.TOOL_RESULT,
            EventType.DELTA,
            EventType.DONE,
        ]
        assert events[1].tool_result.output == 4
        assert [d.name for d in provider.requests[0].tools] == ["calc"]
        assert registry.state is RegistryState.DISCONNECTED
        # 30 tokens at 1 per 10, plus 2 for the tool call
        assert turn.record.amount == 5
        assert balances.get_balance("u1") == 95

    def test_host_provider_cache_is_used(self, balances, conversations) -> None:
        cache = ProviderCache()
        gateway = CompletionGateway(
            StaticProviderConfigStore(), conversations, balances, UsageLedger(), providers=cache
        )
        assert len(cache) == 0
        assert gateway.providers is cache


class TestGatewayFailures:
    @pytest.mark.asyncio
    async def test_preflight_rejects_before_provider_call(self, balances, conversations) -> None:
        provider = ScriptedProvider([StreamEvent.done("stop")])
        gateway = make_gateway(balances, conversations, provider)
        turn = gateway.chat("broke", "conv-1", "scripted", user("hi"))
        events = [event async for event in turn]

        assert [e.type for e in events] == [EventType.ERROR]
        assert isinstance(events[0].error, InsufficientBalanceError)
        assert turn.outcome.status is TurnState.FAILED
        assert provider.requests == []
        assert conversations.load_history("conv-1") == []

    @pytest.mark.asyncio
    async def test_unknown_model(self, balances, conversations) -> None:
        turn = make_gateway(balances, conversations).chat("u1", "conv-1", "gpt-9", user("hi"))
        events = [event async for event in turn]
        assert isinstance(events[-1].error, ConfigError)
        assert isinstance(turn.error, ConfigError)

    @pytest.mark.asyncio
    async def test_invalid_history_rejected(self, balances, conversations) -> None:
        gateway = make_gateway(balances, conversations)
        await gateway.chat("u1", "conv-1", "echo", user("hi")).collect()
        # history ends with an assistant message; two user messages in a row are rejected
        turn = gateway.chat("u1", "conv-1", "echo", user("a") + user("b"))
        events = [event async for event in turn]
        assert isinstance(events[-1].error, ConversationError)

    @pytest.mark.asyncio
    async def test_settlement_failure_rolls_back_messages(self, balances, conversations) -> None:
        balances.create_user("low", power=3)
        gateway = make_gateway(balances, conversations)
        turn = gateway.chat("low", "conv-1", "echo", user("hi there"))
        events = [event async for event in turn]

        assert events[-1].type is EventType.ERROR
        assert isinstance(turn.error, InsufficientBalanceError)
        assert turn.record is None
        assert balances.get_balance("low") == 3
        assert conversations.load_history("conv-1") == []

    @pytest.mark.asyncio
    async def test_append_failure_leaves_balance_untouched(self, balances) -> None:
        gateway = make_gateway(balances, FailingConversationStore())
        turn = gateway.chat("u1", "conv-1", "echo", user("hi"))
        events = [event async for event in turn]

        assert events[-1].type is EventType.ERROR
        assert isinstance(events[-1].error, ConversationError)
        assert events[-1].usage.total_tokens > 0
        assert balances.get_balance("u1") == 100
        assert balances.records("u1") == []

    @pytest.mark.asyncio
    async def test_conversation_continues_after_failed_turn(self, balances, conversations) -> None:
        provider = ScriptedProvider(
            [StreamEvent.failure(ProviderError("boom"))],
            [StreamEvent.delta("hello"), usage(10), StreamEvent.done("stop")],
        )
        gateway = make_gateway(balances, conversations, provider)
        failed = gateway.chat("u1", "conv-1", "scripted", user("hi"))
        await failed.collect()

        assert failed.outcome.status is TurnState.FAILED
        assert isinstance(failed.error, ProviderError)
        assert failed.record is None
        assert conversations.load_history("conv-1") == []

        retry = gateway.chat("u1", "conv-1", "scripted", user("again"))
        events = [event async for event in retry]

        assert events[-1].type is EventType.DONE
        assert [m.content for m in conversations.load_history("conv-1")] == ["again", "hello"]


class TestGatewayRegistries:
    @pytest.mark.asyncio
    async def test_host_connected_registry_stays_connected(self, balances, conversations) -> None:
        registry = calc_registry()
        await registry.connect()
        gateway = make_gateway(balances, conversations, CalcProvider())
        await gateway.chat("u1", "conv-1", "scripted", user("1+2?"), registries=[registry]).collect()

        assert registry.state is not RegistryState.DISCONNECTED
        result = await registry.call_tool("calc", {"a": 2, "b": 2})
        assert result.output == 4

    @pytest.mark.asyncio
    async def test_shared_registry_outlives_the_first_turn(self, balances, conversations) -> None:
        registry = calc_registry()
        gateway = make_gateway(balances, conversations, CalcProvider())

        slow = gateway.chat("u1", "conv-a", "scripted", user("1+2?"), registries=[registry])
        first = await slow.__anext__()
        assert first.type is EventType.TOOL_CALL

        fast = gateway.chat("u1", "conv-b", "scripted", user("1+2?"), registries=[registry])
        fast_events = [event async for event in fast]
        assert [e.tool_result.ok for e in fast_events if e.type is EventType.TOOL_RESULT] == [True]
        assert registry.state is not RegistryState.DISCONNECTED

        rest = [event async for event in slow]
        results = [e.tool_result for e in rest if e.type is EventType.TOOL_RESULT]
        assert len(results) == 1
        assert results[0].ok
        assert results[0].output == 3
        assert rest[-1].type is EventType.DONE
        assert registry.state is RegistryState.DISCONNECTED


class TestGatewayCancellation:
    @pytest.mark.asyncio
    async def test_cancel_settles_reported_usage(self, balances, conversations) -> None:
        provider = ScriptedProvider(
            [
                usage(50),
                StreamEvent.delta("a"),
                StreamEvent.delta("b"),
                StreamEvent.delta("c"),
                30.0,
                StreamEvent.done("stop"),
            ]
        )
        gateway = make_gateway(balances, conversations, provider)
        turn = gateway.chat("u1", "conv-1", "scripted", user("tell me a story"))
        received = []
        async for event in turn:
            received.append(event.type)
            if len(received) == 3:
                turn.cancel()

        assert received == [EventType.DELTA] * 3 + [EventType.CANCELLED]
        assert turn.outcome.status is TurnState.CANCELLED
        assert turn.record.amount == 5
        assert balances.get_balance("u1") == 95
        history = conversations.load_history("conv-1")
        assert [m.content for m in history] == ["tell me a story", "abc"]

    @pytest.mark.asyncio
    async def test_cancel_before_start_charges_nothing(self, balances, conversations) -> None:
        provider = ScriptedProvider([StreamEvent.delta("x"), usage(5), StreamEvent.done("stop")])
        gateway = make_gateway(balances, conversations, provider)
        turn = gateway.chat("u1", "conv-1", "scripted", user("hi"))
        turn.cancel()
        outcome = await turn.collect()

        assert outcome.status is TurnState.CANCELLED
        assert provider.requests == []
        assert turn.record is None
        assert balances.get_balance("u1") == 100

    @pytest.mark.asyncio
    async def test_aclose_still_settles(self, balances, conversations) -> None:
        provider = ScriptedProvider([usage(40), StreamEvent.delta("partial"), 30.0, StreamEvent.done("stop")])
        gateway = make_gateway(balances, conversations, provider)
        turn = gateway.chat("u1", "conv-1", "scripted", user("hi"))
        first = await turn.__anext__()
        assert first.text == "partial"
        await turn.aclose()

        assert turn.outcome.status is TurnState.CANCELLED
        assert turn.record.amount == 4

    @pytest.mark.asyncio
    async def test_cancelled_consumer_task_still_settles(self, balances, conversations) -> None:
        provider = ScriptedProvider([usage(50), StreamEvent.delta("partial"), 30.0, StreamEvent.done("stop")])
        gateway = make_gateway(balances, conversations, provider)
        turn = gateway.chat("u1", "conv-1", "scripted", user("hi"))
        received: List[StreamEvent] = []

        async def consume() -> None:
            async for event in turn:
                received.append(event)

        task = asyncio.create_task(consume())
        while not received:
            await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        await turn.aclose()

        assert turn.outcome.status is TurnState.CANCELLED
        assert turn.record.amount == 5
        assert balances.get_balance("u1") == 95
        assert [m.content for m in conversations.load_history("conv-1")] == ["hi", "partial"]
