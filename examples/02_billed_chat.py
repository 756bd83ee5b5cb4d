"""
Billed Chat: a gateway turn charged against a prepaid balance.

Shows the full gateway path: pre-flight balance check, streamed reply,
messages stored and usage settled in one SQLite transaction, plus
observability hooks and a refund.

Prerequisites: None (uses LocalProvider)
Run: python examples/02_billed_chat.py
"""

import asyncio
import tempfile
from pathlib import Path

from convogate import (
    BillingRule,
    CompletionGateway,
    EventType,
    InMemoryConversationStore,
    Message,
    OrchestratorConfig,
    Role,
    SQLiteBalanceStore,
    StaticProviderConfigStore,
    UsageLedger,
)


def print_turn_end(outcome) -> None:
    print(f"\n[hook] turn {outcome.turn_id[:8]} ended {outcome.status.value}, {outcome.usage.total_tokens} tokens")


async def main() -> None:
    db_path = Path(tempfile.mkdtemp()) / "billing.db"
    balances = SQLiteBalanceStore(str(db_path))
    balances.create_user("alice", power=50)

    gateway = CompletionGateway(
        config_store=StaticProviderConfigStore(
            {"echo": {"provider": "local", "model": "echo", "billing": {"power": 1, "tokens": 2}}}
        ),
        conversations=InMemoryConversationStore(),
        balances=balances,
        ledger=UsageLedger(BillingRule(power=1, tokens=1000)),
        config=OrchestratorConfig(hooks={"on_turn_end": print_turn_end}),
    )

    print(f"Balance before: {balances.get_balance('alice')}")
    turn = gateway.chat(
        "alice", "conv-1", "echo", [Message(role=Role.USER, content="Tell me about billing")]
    )
    async for event in turn:
        if event.type is EventType.DELTA:
            print(event.text, end="", flush=True)

    record = turn.record
    print(f"Charged: {record.amount} (account no {record.account_no})")
    print(f"Balance after: {balances.get_balance('alice')}")

    with balances.transaction() as tx:
        gateway.ledger.compensate(record, tx=tx, remark="goodwill refund")
    print(f"Balance after refund: {balances.get_balance('alice')}")

    print("\nAccount log:")
    for entry in balances.records("alice"):
        print(f"  {entry.action} {entry.amount:>3} -> {entry.balance_after:>3}  {entry.remark}")


if __name__ == "__main__":
    asyncio.run(main())
