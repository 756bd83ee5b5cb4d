"""
Balance persistence: the transactional host contract and a SQLite reference host.

The ledger never opens transactions itself. It receives a
``BalanceTransaction`` from the host, so the balance change and the
account log row commit (or roll back) together with whatever else the host
writes in the same unit of work, such as the conversation messages.
"""

from __future__ import annotations

import logging
import sqlite3
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, ContextManager, Dict, Iterator, List, Optional, Protocol, Tuple, runtime_checkable

from ..exceptions import InsufficientBalanceError, UserNotFoundError

logger = logging.getLogger(__name__)

ACTION_DEC = "dec"
ACTION_INC = "inc"


def new_account_no() -> str:
    """Time-ordered, unique account log number."""
    return time.strftime("%Y%m%d%H%M%S") + uuid.uuid4().hex[:12]


@dataclass
class UsageRecord:
    """
    One immutable account log row.

    Attributes:
        user_id: Account owner.
        amount: Units moved (always positive; ``action`` gives the direction).
        action: ``dec`` for a charge, ``inc`` for a credit or refund.
        balance_after: Balance once this record applied.
        source: Feature that caused the change (``chat``, ``draw``...).
        association_no: Business key the change belongs to (turn id, order no).
        account_no: Unique number of this record.
        remark: Free text for statements.
        total_tokens: Tokens behind a charge, when there were any.
        id: Storage id, set by the host on insert.
    """

    user_id: str
    amount: int
    action: str
    balance_after: int
    source: str = ""
    association_no: Optional[str] = None
    account_no: str = field(default_factory=new_account_no)
    remark: str = ""
    total_tokens: int = 0
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "account_no": self.account_no,
            "user_id": self.user_id,
            "action": self.action,
            "amount": self.amount,
            "balance_after": self.balance_after,
            "source": self.source,
            "association_no": self.association_no,
            "remark": self.remark,
            "total_tokens": self.total_tokens,
        }


@runtime_checkable
class BalanceTransaction(Protocol):
    """Operations the ledger needs inside one host transaction."""

    def get_balance(self, user_id: str) -> int:
        """Current balance. Raises UserNotFoundError."""
        ...

    def find_record(self, user_id: str, association_no: str, action: str) -> Optional[UsageRecord]:
        ...

    def deduct(self, user_id: str, amount: int, clamp: bool = False) -> Tuple[int, int]:
        """
        Atomically check and decrement. Returns ``(deducted, balance_after)``.

        Raises InsufficientBalanceError unless ``clamp``, in which case at
        most the remaining balance is deducted.
        """
        ...

    def credit(self, user_id: str, amount: int) -> int:
        """Increment and return the new balance."""
        ...

    def insert_record(self, record: UsageRecord) -> UsageRecord:
        ...


@runtime_checkable
class BalanceStore(Protocol):
    """A host able to open balance transactions."""

    def transaction(self) -> ContextManager[BalanceTransaction]: ...


_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        power INTEGER NOT NULL DEFAULT 0 CHECK (power >= 0),
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS account_log (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        account_no TEXT NOT NULL UNIQUE,
        user_id TEXT NOT NULL,
        action TEXT NOT NULL,
        change_amount INTEGER NOT NULL,
        left_amount INTEGER NOT NULL,
        association_no TEXT,
        source TEXT,
        remark TEXT,
        total_tokens INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        UNIQUE (user_id, association_no, action)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_account_log_user ON account_log(user_id)",
)


def _row_to_record(row: sqlite3.Row) -> UsageRecord:
    return UsageRecord(
        id=row["id"],
        account_no=row["account_no"],
        user_id=row["user_id"],
        action=row["action"],
        amount=row["change_amount"],
        balance_after=row["left_amount"],
        association_no=row["association_no"],
        source=row["source"] or "",
        remark=row["remark"] or "",
        total_tokens=row["total_tokens"],
    )


class SQLiteTransaction:
    """``BalanceTransaction`` over an open SQLite connection inside ``BEGIN IMMEDIATE``."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def get_balance(self, user_id: str) -> int:
        row = self.conn.execute("SELECT power FROM users WHERE id = ?", (user_id,)).fetchone()
        if row is None:
            raise UserNotFoundError(user_id)
        return int(row["power"])

    def find_record(self, user_id: str, association_no: str, action: str) -> Optional[UsageRecord]:
        row = self.conn.execute(
            "SELECT * FROM account_log WHERE user_id = ? AND association_no = ? AND action = ?",
            (user_id, association_no, action),
        ).fetchone()
        return _row_to_record(row) if row is not None else None

    def deduct(self, user_id: str, amount: int, clamp: bool = False) -> Tuple[int, int]:
        balance = self.get_balance(user_id)
        if amount <= 0:
            return 0, balance
        if balance < amount:
            if not clamp:
                raise InsufficientBalanceError(user_id, amount, balance)
            amount = balance
            if amount == 0:
                return 0, balance
        cursor = self.conn.execute(
            "UPDATE users SET power = power - ? WHERE id = ? AND power >= ?",
            (amount, user_id, amount),
        )
        if cursor.rowcount != 1:
            raise InsufficientBalanceError(user_id, amount, self.get_balance(user_id))
        return amount, balance - amount

    def credit(self, user_id: str, amount: int) -> int:
        cursor = self.conn.execute(
            "UPDATE users SET power = power + ? WHERE id = ?", (amount, user_id)
        )
        if cursor.rowcount != 1:
            raise UserNotFoundError(user_id)
        return self.get_balance(user_id)

    def insert_record(self, record: UsageRecord) -> UsageRecord:
        cursor = self.conn.execute(
            """
            INSERT INTO account_log (
                account_no, user_id, action, change_amount, left_amount,
                association_no, source, remark, total_tokens
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.account_no,
                record.user_id,
                record.action,
                record.amount,
                record.balance_after,
                record.association_no,
                record.source,
                record.remark,
                record.total_tokens,
            ),
        )
        record.id = cursor.lastrowid
        return record


class SQLiteBalanceStore:
    """
    Reference transactional host on stdlib ``sqlite3``.

    Each ``transaction()`` opens its own connection and takes the database
    write lock up front (``BEGIN IMMEDIATE``), so two concurrent turns for the
    same user serialize on the balance check. Any exception inside the block
    rolls back everything written in it.

    Example:
        >>> store = SQLiteBalanceStore("billing.db")
        >>> store.create_user("u1", power=100)
        >>> with store.transaction() as tx:
        ...     tx.deduct("u1", 10)
        (10, 90)
    """

    def __init__(self, db_path: str = "convogate.db", timeout: float = 30.0) -> None:
        self.db_path = db_path
        self.timeout = timeout
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        # autocommit mode: transactions are issued explicitly
        conn = sqlite3.connect(self.db_path, timeout=self.timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        conn = self._connect()
        try:
            for statement in _SCHEMA:
                conn.execute(statement)
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[SQLiteTransaction]:
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield SQLiteTransaction(conn)
            except BaseException:
                conn.execute("ROLLBACK")
                logger.debug("Balance transaction rolled back")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    def create_user(self, user_id: str, power: int = 0) -> None:
        with self.transaction() as tx:
            tx.conn.execute("INSERT INTO users (id, power) VALUES (?, ?)", (user_id, power))

    def get_balance(self, user_id: str) -> int:
        with self.transaction() as tx:
            return tx.get_balance(user_id)

    def records(self, user_id: str) -> List[UsageRecord]:
        """Account log of ``user_id``, oldest first."""
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT * FROM account_log WHERE user_id = ? ORDER BY id", (user_id,)
            ).fetchall()
        finally:
            conn.close()
        return [_row_to_record(row) for row in rows]


__all__ = [
    "ACTION_DEC",
    "ACTION_INC",
    "UsageRecord",
    "BalanceTransaction",
    "BalanceStore",
    "SQLiteTransaction",
    "SQLiteBalanceStore",
    "new_account_no",
]
