"""
Usage ledger: turns a finished turn into a power charge and records it.
"""

from __future__ import annotations

import logging
from typing import Optional

from ..exceptions import InsufficientBalanceError
from ..pricing import BillingRule, calculate_power
from ..types import TurnOutcome, TurnState
from .store import ACTION_DEC, ACTION_INC, BalanceTransaction, UsageRecord

logger = logging.getLogger(__name__)


class UsageLedger:
    """
    Charges turns against user balances.

    Every write happens inside the ``BalanceTransaction`` handed in by the
    caller. Charges are keyed by ``(user_id, association_no, action)``, so
    settling the same turn twice returns the first record instead of charging
    again.

    Args:
        rule: Pricing rule of the model that served the turn.
        source: Default ``source`` written on records.
        clamp_to_balance: Charge at most the remaining balance instead of
            failing with InsufficientBalanceError when a turn costs more
            than the user has left.

    Example:
        >>> ledger = UsageLedger(BillingRule(power=10, tokens=1000))
        >>> with store.transaction() as tx:
        ...     record = ledger.settle(outcome, user_id="u1", tx=tx)
    """

    def __init__(
        self,
        rule: Optional[BillingRule] = None,
        source: str = "chat",
        clamp_to_balance: bool = False,
    ) -> None:
        self.rule = rule or BillingRule()
        self.source = source
        self.clamp_to_balance = clamp_to_balance

    def calculate(self, outcome: TurnOutcome, rule: Optional[BillingRule] = None) -> int:
        """Power owed for ``outcome``. Turns that ended early with no reported tokens cost 0."""
        rule = rule or self.rule
        usage = outcome.usage
        tokens = usage.total_tokens if usage is not None else 0
        if outcome.status is not TurnState.COMPLETED and tokens <= 0:
            return 0
        tool_calls = usage.tool_calls if usage is not None else 0
        return calculate_power(tokens, rule) + rule.tool_call_power * tool_calls

    # -- balance checks ----------------------------------------------------

    def has_sufficient_power(self, tx: BalanceTransaction, user_id: str, required: int = 1) -> bool:
        return tx.get_balance(user_id) >= required

    def ensure_sufficient_power(self, tx: BalanceTransaction, user_id: str, required: int = 1) -> int:
        """Raise InsufficientBalanceError when ``user_id`` holds less than ``required``; return the balance."""
        balance = tx.get_balance(user_id)
        if balance < required:
            raise InsufficientBalanceError(user_id, required, balance)
        return balance

    # -- writes ------------------------------------------------------------

    def deduct(
        self,
        tx: BalanceTransaction,
        user_id: str,
        amount: int,
        *,
        association_no: Optional[str] = None,
        source: Optional[str] = None,
        remark: str = "",
        total_tokens: int = 0,
    ) -> Optional[UsageRecord]:
        """
        Decrement ``user_id`` by ``amount`` and write a ``dec`` record.

        Returns the existing record when ``association_no`` was already
        charged, and None when nothing was deducted.
        """
        if association_no:
            existing = tx.find_record(user_id, association_no, ACTION_DEC)
            if existing is not None:
                logger.info(
                    "Charge %s for user %s already recorded as %s",
                    association_no,
                    user_id,
                    existing.account_no,
                )
                return existing
        if amount <= 0:
            return None

        deducted, balance_after = tx.deduct(user_id, amount, clamp=self.clamp_to_balance)
        if deducted < amount:
            logger.warning(
                "Charge for user %s clamped from %d to %d (balance exhausted)",
                user_id,
                amount,
                deducted,
            )
        if deducted <= 0:
            return None

        record = UsageRecord(
            user_id=user_id,
            amount=deducted,
            action=ACTION_DEC,
            balance_after=balance_after,
            source=source or self.source,
            association_no=association_no,
            remark=remark,
            total_tokens=total_tokens,
        )
        return tx.insert_record(record)

    def add_power(
        self,
        tx: BalanceTransaction,
        user_id: str,
        amount: int,
        *,
        association_no: Optional[str] = None,
        source: Optional[str] = None,
        remark: str = "",
    ) -> Optional[UsageRecord]:
        """Credit ``user_id`` and write an ``inc`` record. Idempotent per ``association_no``."""
        if association_no:
            existing = tx.find_record(user_id, association_no, ACTION_INC)
            if existing is not None:
                return existing
        if amount <= 0:
            return None
        balance_after = tx.credit(user_id, amount)
        record = UsageRecord(
            user_id=user_id,
            amount=amount,
            action=ACTION_INC,
            balance_after=balance_after,
            source=source or self.source,
            association_no=association_no,
            remark=remark,
        )
        return tx.insert_record(record)

    def settle(
        self,
        outcome: TurnOutcome,
        *,
        user_id: str,
        tx: BalanceTransaction,
        association_no: Optional[str] = None,
        source: Optional[str] = None,
        remark: str = "",
        rule: Optional[BillingRule] = None,
    ) -> Optional[UsageRecord]:
        """
        Charge a finished turn.

        ``association_no`` defaults to the turn id, which makes a repeated
        settle of the same turn a no-op.

        Returns:
            The charge record, or None when the turn cost nothing.

        Raises:
            InsufficientBalanceError: Balance too low and clamping is off.
            UserNotFoundError: Unknown user.
        """
        amount = self.calculate(outcome, rule)
        usage = outcome.usage
        return self.deduct(
            tx,
            user_id,
            amount,
            association_no=association_no or outcome.turn_id,
            source=source,
            remark=remark or f"turn {outcome.turn_id} ({outcome.status.value})",
            total_tokens=usage.total_tokens if usage is not None else 0,
        )

    def compensate(
        self, record: UsageRecord, *, tx: BalanceTransaction, remark: str = ""
    ) -> Optional[UsageRecord]:
        """Refund a charge. Compensating the same record twice credits once."""
        return self.add_power(
            tx,
            record.user_id,
            record.amount,
            association_no=record.account_no,
            source=record.source,
            remark=remark or f"refund of {record.account_no}",
        )


__all__ = ["UsageLedger"]
