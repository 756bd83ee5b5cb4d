"""
Tests for UsageLedger and the SQLite balance store.

Tests cover:
- Power calculation per turn status
- Settling, idempotent settling, zero-cost turns
- Insufficient balance, clamping
- Compensation and rollback
- Concurrent charges against one balance
"""

from __future__ import annotations

import threading
from pathlib import Path
from typing import List

import pytest

from convogate.billing import ACTION_DEC, ACTION_INC, SQLiteBalanceStore, UsageLedger
from convogate.exceptions import InsufficientBalanceError, UserNotFoundError
from convogate.pricing import BillingRule
from convogate.types import TurnOutcome, TurnState
from convogate.usage import TurnUsage, UsageStats

RULE = BillingRule(power=10, tokens=1000)


def make_outcome(
    turn_id: str = "turn-1",
    status: TurnState = TurnState.COMPLETED,
    tokens: int = 300,
    tool_calls: int = 0,
) -> TurnOutcome:
    usage = TurnUsage()
    if tokens:
        usage.add_usage(UsageStats(prompt_tokens=tokens - tokens // 3, completion_tokens=tokens // 3))
    usage.tool_calls = tool_calls
    return TurnOutcome(turn_id=turn_id, status=status, messages=[], input_length=0, usage=usage)


@pytest.fixture
def store(tmp_path: Path) -> SQLiteBalanceStore:
    store = SQLiteBalanceStore(str(tmp_path / "billing.db"))
    store.create_user("u1", power=100)
    return store


class TestCalculate:
    def test_completed_turn(self) -> None:
        assert UsageLedger(RULE).calculate(make_outcome(tokens=300)) == 3

    def test_tool_call_fee(self) -> None:
        ledger = UsageLedger(BillingRule(power=10, tokens=1000, tool_call_power=2))
        assert ledger.calculate(make_outcome(tokens=300, tool_calls=2)) == 3 + 4

    def test_cancelled_with_usage_is_charged(self) -> None:
        outcome = make_outcome(status=TurnState.CANCELLED, tokens=1500)
        assert UsageLedger(RULE).calculate(outcome) == 15

    def test_failed_without_usage_costs_nothing(self) -> None:
        outcome = make_outcome(status=TurnState.FAILED, tokens=0, tool_calls=1)
        assert UsageLedger(BillingRule(tool_call_power=5)).calculate(outcome) == 0

    def test_rule_override(self) -> None:
        ledger = UsageLedger(RULE)
        assert ledger.calculate(make_outcome(tokens=300), BillingRule(power=1, tokens=100)) == 3


class TestSettle:
    def test_settle_charges_and_records(self, store: SQLiteBalanceStore) -> None:
        ledger = UsageLedger(RULE)
        with store.transaction() as tx:
            record = ledger.settle(make_outcome(tokens=300), user_id="u1", tx=tx)

        assert record is not None
        assert record.amount == 3
        assert record.balance_after == 97
        assert record.action == ACTION_DEC
        assert record.association_no == "turn-1"
        assert record.total_tokens == 300
        assert record.source == "chat"
        assert "completed" in record.remark
        assert store.get_balance("u1") == 97

        [logged] = store.records("u1")
        assert logged.account_no == record.account_no
        assert logged.amount == 3
        assert logged.balance_after == 97

    def test_settle_twice_charges_once(self, store: SQLiteBalanceStore) -> None:
        ledger = UsageLedger(RULE)
        outcome = make_outcome(tokens=2000)
        with store.transaction() as tx:
            first = ledger.settle(outcome, user_id="u1", tx=tx)
        with store.transaction() as tx:
            second = ledger.settle(outcome, user_id="u1", tx=tx)

        assert second.account_no == first.account_no
        assert store.get_balance("u1") == 80
        assert len(store.records("u1")) == 1

    def test_zero_cost_turn_writes_nothing(self, store: SQLiteBalanceStore) -> None:
        outcome = make_outcome(status=TurnState.FAILED, tokens=0)
        with store.transaction() as tx:
            assert UsageLedger(RULE).settle(outcome, user_id="u1", tx=tx) is None
        assert store.get_balance("u1") == 100
        assert store.records("u1") == []

    def test_insufficient_balance(self, store: SQLiteBalanceStore) -> None:
        outcome = make_outcome(tokens=20_000)
        with pytest.raises(InsufficientBalanceError) as exc_info:
            with store.transaction() as tx:
                UsageLedger(RULE).settle(outcome, user_id="u1", tx=tx)
        assert exc_info.value.required == 200
        assert exc_info.value.available == 100
        assert store.get_balance("u1") == 100
        assert store.records("u1") == []

    def test_clamp_to_balance(self, store: SQLiteBalanceStore) -> None:
        ledger = UsageLedger(RULE, clamp_to_balance=True)
        with store.transaction() as tx:
            record = ledger.settle(make_outcome(tokens=20_000), user_id="u1", tx=tx)
        assert record.amount == 100
        assert record.balance_after == 0
        assert store.get_balance("u1") == 0

        with store.transaction() as tx:
            assert ledger.settle(make_outcome("turn-2", tokens=500), user_id="u1", tx=tx) is None

    def test_unknown_user(self, store: SQLiteBalanceStore) -> None:
        with pytest.raises(UserNotFoundError):
            with store.transaction() as tx:
                UsageLedger(RULE).settle(make_outcome(), user_id="ghost", tx=tx)

    def test_rollback_on_exception(self, store: SQLiteBalanceStore) -> None:
        with pytest.raises(RuntimeError):
            with store.transaction() as tx:
                UsageLedger(RULE).settle(make_outcome(), user_id="u1", tx=tx)
                raise RuntimeError("message insert failed")
        assert store.get_balance("u1") == 100
        assert store.records("u1") == []


class TestBalanceChecks:
    def test_sufficient_power(self, store: SQLiteBalanceStore) -> None:
        ledger = UsageLedger(RULE)
        with store.transaction() as tx:
            assert ledger.has_sufficient_power(tx, "u1", 100)
            assert not ledger.has_sufficient_power(tx, "u1", 101)
            assert ledger.ensure_sufficient_power(tx, "u1") == 100
            with pytest.raises(InsufficientBalanceError):
                ledger.ensure_sufficient_power(tx, "u1", 500)


class TestCompensate:
    def test_refund_is_idempotent(self, store: SQLiteBalanceStore) -> None:
        ledger = UsageLedger(RULE)
        with store.transaction() as tx:
            charge = ledger.settle(make_outcome(tokens=1000), user_id="u1", tx=tx)
        with store.transaction() as tx:
            refund = ledger.compensate(charge, tx=tx)
        with store.transaction() as tx:
            again = ledger.compensate(charge, tx=tx)

        assert refund.action == ACTION_INC
        assert refund.association_no == charge.account_no
        assert refund.balance_after == 100
        assert again.account_no == refund.account_no
        assert store.get_balance("u1") == 100
        assert [r.action for r in store.records("u1")] == [ACTION_DEC, ACTION_INC]

    def test_add_power(self, store: SQLiteBalanceStore) -> None:
        ledger = UsageLedger(RULE, source="topup")
        with store.transaction() as tx:
            record = ledger.add_power(tx, "u1", 50, association_no="order-7")
        assert record.source == "topup"
        assert store.get_balance("u1") == 150


class TestConcurrency:
    def test_concurrent_charges_never_overdraw(self, store: SQLiteBalanceStore) -> None:
        ledger = UsageLedger(RULE)
        failures: List[BaseException] = []
        lock = threading.Lock()

        def charge(index: int) -> None:
            try:
                with store.transaction() as tx:
                    ledger.deduct(tx, "u1", 10, association_no=f"turn-{index}")
            except InsufficientBalanceError as exc:
                with lock:
                    failures.append(exc)

        threads = [threading.Thread(target=charge, args=(i,)) for i in range(15)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert store.get_balance("u1") == 0
        assert len(failures) == 5
        assert len(store.records("u1")) == 10
