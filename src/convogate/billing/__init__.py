"""
Power accounting for completed turns.
"""

from .ledger import UsageLedger
from .store import (
    ACTION_DEC,
    ACTION_INC,
    BalanceStore,
    BalanceTransaction,
    SQLiteBalanceStore,
    SQLiteTransaction,
    UsageRecord,
    new_account_no,
)

__all__ = [
    "UsageLedger",
    "UsageRecord",
    "BalanceStore",
    "BalanceTransaction",
    "SQLiteBalanceStore",
    "SQLiteTransaction",
    "ACTION_DEC",
    "ACTION_INC",
    "new_account_no",
]
