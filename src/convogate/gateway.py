"""
Completion gateway: one chat turn from pre-flight check to settled usage.

The gateway ties the pieces together for a host application:

1. pre-flight balance check (nothing is sent to a provider on failure)
2. conversation history load
3. adapter lookup through the provider cache
4. tool registries connected for the turn
5. orchestrator events forwarded to the caller
6. one host transaction that appends the new messages and settles usage
7. tool registries the gateway connected released once no turn uses them

Storage is reached only through the small protocols below, which the host
implements against its own database. Store calls are synchronous and run in
a worker thread.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import uuid
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Protocol, Sequence, Set, runtime_checkable

from .billing import BalanceStore, BalanceTransaction, UsageLedger, UsageRecord
from .exceptions import ConfigError, GatewayError
from .orchestrator import Orchestrator, OrchestratorConfig, TurnStream
from .pricing import BillingRule
from .providers import ProviderCache, ProviderConfig
from .tools import RegistryState, ToolBridge, ToolSource
from .types import EventType, Message, StreamEvent, TurnOutcome, TurnState, validate_conversation

logger = logging.getLogger(__name__)


@runtime_checkable
class ConversationStore(Protocol):
    """Host storage for conversation messages."""

    def load_history(self, conversation_id: str) -> List[Message]: ...

    def append_messages(
        self,
        conversation_id: str,
        messages: Sequence[Message],
        tx: Optional[BalanceTransaction] = None,
    ) -> None:
        """Persist ``messages``, joining ``tx`` when the store shares the host database."""
        ...


@runtime_checkable
class ProviderConfigStore(Protocol):
    """Host lookup from a model id to its provider configuration."""

    def get_provider_config(self, model_id: str) -> Mapping[str, Any]: ...


class StaticProviderConfigStore:
    """
    ``ProviderConfigStore`` over a fixed mapping.

    Each entry is a ``ProviderConfig`` mapping plus an optional ``billing``
    mapping for the model's ``BillingRule``.

    Example:
        >>> store = StaticProviderConfigStore({
        ...     "gpt-4o": {"provider": "openai", "model": "gpt-4o",
        ...                "billing": {"power": 10, "tokens": 1000}},
        ... })
    """

    def __init__(self, configs: Optional[Mapping[str, Mapping[str, Any]]] = None) -> None:
        self._configs: Dict[str, Mapping[str, Any]] = dict(configs or {})

    def add(self, model_id: str, config: Mapping[str, Any]) -> None:
        self._configs[model_id] = config

    def get_provider_config(self, model_id: str) -> Mapping[str, Any]:
        try:
            return self._configs[model_id]
        except KeyError:
            raise ConfigError(
                component=f"model '{model_id}'",
                missing_config=f"a provider configuration (known: {', '.join(sorted(self._configs)) or 'none'})",
            ) from None


class InMemoryConversationStore:
    """
    ``ConversationStore`` kept in process memory.

    It does not join the host transaction, so a rolled back settlement does
    not remove messages already appended. Meant for tests and the CLI.
    """

    def __init__(self) -> None:
        self._conversations: Dict[str, List[Message]] = {}
        self._lock = threading.Lock()

    def load_history(self, conversation_id: str) -> List[Message]:
        with self._lock:
            return list(self._conversations.get(conversation_id, []))

    def append_messages(
        self,
        conversation_id: str,
        messages: Sequence[Message],
        tx: Optional[BalanceTransaction] = None,
    ) -> None:
        with self._lock:
            self._conversations.setdefault(conversation_id, []).extend(messages)


class CompletionGateway:
    """
    Entry point for hosts: runs billed, tool-augmented chat turns.

    Args:
        config_store: Resolves a model id to its provider configuration.
        conversations: Conversation history storage.
        balances: Transactional host for balances and the account log.
        ledger: Charges finished turns. Its rule is the default when a model
            configuration carries no ``billing`` entry.
        providers: Adapter cache; a private one is created when omitted.
        config: Orchestrator defaults for every turn.
    """

    def __init__(
        self,
        config_store: ProviderConfigStore,
        conversations: ConversationStore,
        balances: BalanceStore,
        ledger: UsageLedger,
        providers: Optional[ProviderCache] = None,
        config: Optional[OrchestratorConfig] = None,
    ) -> None:
        self.config_store = config_store
        self.conversations = conversations
        self.balances = balances
        self.ledger = ledger
        self.providers = providers if providers is not None else ProviderCache()
        self.config = config or OrchestratorConfig()
        # registry id -> number of live turns using it
        self._leases: Dict[int, int] = {}
        self._owned: Set[int] = set()

    def chat(
        self,
        user_id: str,
        conversation_id: str,
        model_id: str,
        messages: Sequence[Message],
        registries: Sequence[ToolSource] = (),
        turn_id: Optional[str] = None,
        required_power: int = 1,
        **overrides: Any,
    ) -> "ChatTurn":
        """
        Start one chat turn. Nothing runs until the returned turn is iterated.

        Args:
            user_id: Account charged for the turn.
            conversation_id: Conversation whose history prefixes ``messages``.
            model_id: Key looked up in the provider config store.
            messages: New messages of this turn (usually one user message).
            registries: Tool sources offered for this turn. A registry that
                is disconnected when first leased is connected by the
                gateway and disconnected once no running turn uses it.
                Registries the host connected itself are left connected.
            turn_id: Idempotency key for the charge; generated when omitted.
            required_power: Minimum balance needed to start the turn.
            **overrides: OrchestratorConfig fields for this turn only.
        """
        return ChatTurn(
            self,
            user_id=user_id,
            conversation_id=conversation_id,
            model_id=model_id,
            messages=list(messages),
            registries=list(registries),
            turn_id=turn_id or uuid.uuid4().hex,
            required_power=required_power,
            config=self.config.merged(**overrides),
        )

    # -- registry leases -----------------------------------------------------

    def _lease(self, registries: Sequence[ToolSource]) -> None:
        for registry in registries:
            key = id(registry)
            count = self._leases.get(key, 0)
            if count == 0 and registry.state is RegistryState.DISCONNECTED:
                self._owned.add(key)
            self._leases[key] = count + 1

    def _release(self, registries: Sequence[ToolSource]) -> List[ToolSource]:
        """Drop one lease per registry; return those the gateway should now disconnect."""
        idle: List[ToolSource] = []
        for registry in registries:
            key = id(registry)
            count = self._leases.get(key, 0) - 1
            if count > 0:
                self._leases[key] = count
                continue
            self._leases.pop(key, None)
            if key in self._owned:
                self._owned.discard(key)
                idle.append(registry)
        return idle

    # -- units of work (run in a worker thread) ------------------------------

    def _preflight(self, user_id: str, required_power: int) -> int:
        with self.balances.transaction() as tx:
            return self.ledger.ensure_sufficient_power(tx, user_id, required_power)

    def _resolve_provider(self, model_id: str):
        raw = dict(self.config_store.get_provider_config(model_id))
        billing = raw.pop("billing", None)
        rule = BillingRule.from_mapping(billing) if billing else None
        provider_config = ProviderConfig.from_mapping(raw)
        return self.providers.get(provider_config), rule

    def _commit(
        self,
        user_id: str,
        conversation_id: str,
        new_messages: List[Message],
        outcome: TurnOutcome,
        rule: Optional[BillingRule],
    ) -> Optional[UsageRecord]:
        with self.balances.transaction() as tx:
            if new_messages:
                self.conversations.append_messages(conversation_id, new_messages, tx=tx)
            return self.ledger.settle(outcome, user_id=user_id, tx=tx, rule=rule)


class ChatTurn:
    """
    Caller-facing handle of one gateway turn.

    Iterate it for ``StreamEvent``s. The terminal event is delivered only
    after the messages are stored and the usage is settled, so ``record``
    is available as soon as the stream ends. A settlement failure replaces
    the terminal event with an ``error`` event.

    If the consuming task is cancelled mid-turn (a dropped SSE or WebSocket
    client), the usage reported so far is settled before the cancellation
    propagates. A turn that produced no assistant or tool message stores
    nothing, so the conversation can continue with a new user message.
    """

    def __init__(
        self,
        gateway: CompletionGateway,
        *,
        user_id: str,
        conversation_id: str,
        model_id: str,
        messages: List[Message],
        registries: List[ToolSource],
        turn_id: str,
        required_power: int,
        config: OrchestratorConfig,
    ) -> None:
        self.gateway = gateway
        self.user_id = user_id
        self.conversation_id = conversation_id
        self.model_id = model_id
        self.turn_id = turn_id
        self.required_power = required_power
        self.config = config
        self._messages = messages
        self._registries = registries
        self._stream: Optional[TurnStream] = None
        self._outcome: Optional[TurnOutcome] = None
        self._record: Optional[UsageRecord] = None
        self._error: Optional[BaseException] = None
        self._cancel_requested = False
        self._committing = False
        self._events = self._drive()

    @property
    def outcome(self) -> Optional[TurnOutcome]:
        return self._outcome

    @property
    def record(self) -> Optional[UsageRecord]:
        """The charge written for this turn, None when nothing was charged."""
        return self._record

    @property
    def error(self) -> Optional[BaseException]:
        return self._error

    def cancel(self) -> None:
        """Cancel the turn. Usage reported so far is still settled. Idempotent."""
        self._cancel_requested = True
        if self._stream is not None:
            self._stream.cancel()

    def __aiter__(self) -> "ChatTurn":
        return self

    async def __anext__(self) -> StreamEvent:
        return await self._events.__anext__()

    async def collect(self) -> Optional[TurnOutcome]:
        async for _ in self:
            pass
        return self._outcome

    async def aclose(self) -> None:
        """Cancel and run the turn to its end so usage is still settled."""
        self.cancel()
        async for _ in self._events:
            pass

    def _fail_early(self, exc: GatewayError) -> StreamEvent:
        logger.warning("Turn %s rejected before start: %s", self.turn_id, exc)
        self._error = exc
        self._outcome = TurnOutcome(
            turn_id=self.turn_id,
            status=TurnState.FAILED,
            messages=list(self._messages),
            input_length=len(self._messages),
            error=exc,
        )
        return StreamEvent.failure(exc)

    def _persisted(self, outcome: TurnOutcome) -> List[Message]:
        new_messages = outcome.new_messages
        if not new_messages:
            # stored history never ends in an unanswered user message
            return []
        return self._messages + new_messages

    async def _settle(self, outcome: TurnOutcome, rule: Optional[BillingRule]) -> bool:
        """Store the turn and charge its usage. Returns False when the commit failed."""
        self._outcome = outcome
        self._committing = True
        try:
            # the worker commits even if the awaiting task is cancelled meanwhile
            self._record = await asyncio.shield(
                asyncio.to_thread(
                    self.gateway._commit,
                    self.user_id,
                    self.conversation_id,
                    self._persisted(outcome),
                    outcome,
                    rule,
                )
            )
        except GatewayError as exc:
            logger.error("Turn %s could not be settled: %s", self.turn_id, exc)
            self._error = exc
            return False

        if self._record is not None:
            logger.info(
                "Turn %s charged %d to user %s (balance %d)",
                self.turn_id,
                self._record.amount,
                self.user_id,
                self._record.balance_after,
            )
        self._error = outcome.error
        return True

    async def _settle_abandoned(
        self, stream: Optional[TurnStream], rule: Optional[BillingRule]
    ) -> None:
        if stream is None or self._committing:
            return
        if stream.outcome is None:
            await stream.aclose()
        if stream.outcome is None:
            return
        logger.info("Turn %s abandoned by its consumer; settling usage so far", self.turn_id)
        await self._settle(stream.outcome, rule)

    async def _drive(self) -> AsyncIterator[StreamEvent]:
        gateway = self.gateway
        try:
            await asyncio.to_thread(gateway._preflight, self.user_id, self.required_power)
            provider, rule = await asyncio.to_thread(gateway._resolve_provider, self.model_id)
            history = await asyncio.to_thread(
                gateway.conversations.load_history, self.conversation_id
            )
            transcript = list(history) + self._messages
            validate_conversation(transcript)
        except GatewayError as exc:
            yield self._fail_early(exc)
            return

        stream: Optional[TurnStream] = None
        leased = False
        try:
            bridge: Optional[ToolBridge] = None
            if self._registries:
                gateway._lease(self._registries)
                leased = True
                bridge = ToolBridge(self._registries, max_concurrency=self.config.max_parallel_tools)
                await bridge.connect_all()
            stream = Orchestrator(provider, bridge, self.config).run(transcript, turn_id=self.turn_id)
            self._stream = stream
            if self._cancel_requested:
                stream.cancel()

            terminal: Optional[StreamEvent] = None
            async for event in stream:
                if event.is_terminal:
                    terminal = event
                    continue
                yield event

            outcome = stream.outcome
            assert outcome is not None
            if not await self._settle(outcome, rule):
                yield StreamEvent(EventType.ERROR, error=self._error, usage=outcome.usage)
                return
            if terminal is not None:
                yield terminal
        except (asyncio.CancelledError, GeneratorExit):
            await self._settle_abandoned(stream, rule)
            raise
        finally:
            if leased:
                idle = gateway._release(self._registries)
                await asyncio.gather(
                    *(registry.disconnect() for registry in idle), return_exceptions=True
                )


__all__ = [
    "CompletionGateway",
    "ChatTurn",
    "ConversationStore",
    "ProviderConfigStore",
    "StaticProviderConfigStore",
    "InMemoryConversationStore",
]
