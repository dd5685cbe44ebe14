"""
Repository pattern for data access.

Handles the balance store, the append-only credit ledger, cached AI
responses and the AI usage log.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Union

import structlog

from ..core.errors import InsufficientCredits
from .db import DEFAULT_DB_PATH, get_connection, write_transaction
from .models import (
    GRANT_SOURCES,
    AIUsageLogEntry,
    CachedResponse,
    CreditTransaction,
    TransactionType,
)

logger = structlog.get_logger()

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _ts(value: datetime) -> str:
    # Fixed-width timestamps so string comparison in SQL matches time order
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create all tables if they don't exist.

    ``credit_transaction``, ``ai_generated_content`` and ``ai_usage_log`` are
    append-only. No UPDATE or DELETE is ever issued against them.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS account_balance (
                user_id TEXT PRIMARY KEY,
                balance INTEGER NOT NULL DEFAULT 0 CHECK (balance >= 0),
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS credit_transaction (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                amount INTEGER NOT NULL,
                type TEXT NOT NULL,
                description TEXT NOT NULL,
                idempotency_key TEXT,
                created_at TEXT NOT NULL,
                UNIQUE (user_id, idempotency_key)
            );
            CREATE INDEX IF NOT EXISTS idx_credit_transaction_user
                ON credit_transaction (user_id, type);

            CREATE TABLE IF NOT EXISTS ai_generated_content (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                feature TEXT NOT NULL,
                prompt_fingerprint TEXT NOT NULL,
                response TEXT NOT NULL,
                created_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_ai_generated_content_key
                ON ai_generated_content (user_id, feature, prompt_fingerprint, created_at);

            CREATE TABLE IF NOT EXISTS ai_usage_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT,
                endpoint TEXT NOT NULL,
                model TEXT NOT NULL,
                token_count INTEGER NOT NULL,
                cost_usd TEXT NOT NULL,
                created_at TEXT NOT NULL
            );
        """)
    finally:
        conn.close()


class BalanceStore:
    """Per-user credit balances plus the ledger that explains them.

    Every mutation writes the balance row and its ledger entry in a single
    ``BEGIN IMMEDIATE`` transaction, so the sum of a user's ledger always
    equals the balance.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH, clock: Optional[Clock] = None):
        """Initialize the store with a database path.

        Args:
            db_path: Path to SQLite database file
            clock: Returns the current time; defaults to UTC now
        """
        self.db_path = db_path
        self.clock = clock or utc_now

    def get_balance(self, user_id: str) -> int:
        """Current balance; a user without a row has zero credits."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT balance FROM account_balance WHERE user_id = ?", (user_id,)
            ).fetchone()
            return int(row[0]) if row else 0
        finally:
            conn.close()

    def grant(
        self,
        user_id: str,
        amount: int,
        source: Union[TransactionType, str],
        description: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> int:
        """Add credits, creating the balance row on first grant.

        Without an ``idempotency_key`` nothing stops a caller from granting
        twice; with one, a key already applied to the same user is a no-op.
        Keys are scoped per user, so two users may share a key.

        Args:
            user_id: Registered user receiving the credits
            amount: Positive number of credits
            source: purchase, signup_bonus, promotional or refund
            description: Ledger description; generated when omitted
            idempotency_key: Optional per-user key for at-most-once grants

        Returns:
            Balance after the grant

        Raises:
            ValueError: If amount is not positive or source is not a grant source
        """
        tx_type = TransactionType(source)
        if tx_type not in GRANT_SOURCES:
            raise ValueError(f"Invalid grant source: {tx_type.value}")
        if amount <= 0:
            raise ValueError("grant amount must be > 0")
        if description is None:
            description = f"Granted {amount} credits ({tx_type.value})"

        now = _ts(self.clock())
        conn = get_connection(self.db_path)
        try:
            with write_transaction(conn):
                if idempotency_key is not None:
                    seen = conn.execute(
                        "SELECT 1 FROM credit_transaction WHERE user_id = ? AND idempotency_key = ?",
                        (user_id, idempotency_key),
                    ).fetchone()
                    if seen:
                        logger.info(
                            "Duplicate grant ignored",
                            user_id=user_id,
                            idempotency_key=idempotency_key,
                        )
                        return self._read_balance(conn, user_id)

                conn.execute("""
                    INSERT INTO account_balance (user_id, balance, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT (user_id) DO UPDATE SET
                        balance = balance + excluded.balance,
                        updated_at = excluded.updated_at
                """, (user_id, amount, now))
                self._append(conn, user_id, amount, tx_type, description, now, idempotency_key)
                balance = self._read_balance(conn, user_id)
        finally:
            conn.close()

        logger.info(
            "Credits granted",
            user_id=user_id,
            amount=amount,
            source=tx_type.value,
            balance=balance,
        )
        return balance

    def debit(self, user_id: str, amount: int, description: str) -> int:
        """Atomically check and deduct credits, appending a usage entry.

        The balance read and both writes share one IMMEDIATE transaction, so
        two concurrent debits cannot both pass the check on a stale balance.

        Returns:
            Balance after the debit

        Raises:
            ValueError: If amount is not positive
            InsufficientCredits: If the balance is below amount; nothing is written
        """
        if amount <= 0:
            raise ValueError("debit amount must be > 0")

        now = _ts(self.clock())
        conn = get_connection(self.db_path)
        try:
            with write_transaction(conn):
                available = self._read_balance(conn, user_id)
                if available < amount:
                    raise InsufficientCredits(required=amount, available=available)
                conn.execute(
                    "UPDATE account_balance SET balance = balance - ?, updated_at = ? WHERE user_id = ?",
                    (amount, now, user_id),
                )
                self._append(conn, user_id, -amount, TransactionType.USAGE, description, now)
                return available - amount
        finally:
            conn.close()

    def has_received_signup_bonus(self, user_id: str) -> bool:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT 1 FROM credit_transaction WHERE user_id = ? AND type = ? LIMIT 1",
                (user_id, TransactionType.SIGNUP_BONUS.value),
            ).fetchone()
            return row is not None
        finally:
            conn.close()

    def list_transactions(self, user_id: str, limit: int = 100) -> List[CreditTransaction]:
        """Ledger entries for a user, newest first."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT id, user_id, amount, type, description, idempotency_key, created_at
                FROM credit_transaction
                WHERE user_id = ?
                ORDER BY id DESC
                LIMIT ?
            """, (user_id, limit))
            return [
                CreditTransaction(
                    id=row[0],
                    user_id=row[1],
                    amount=row[2],
                    type=TransactionType(row[3]),
                    description=row[4],
                    idempotency_key=row[5],
                    created_at=datetime.fromisoformat(row[6]),
                )
                for row in cursor.fetchall()
            ]
        finally:
            conn.close()

    def ledger_sum(self, user_id: str) -> int:
        """Sum of all ledger amounts; equals ``get_balance`` when consistent."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT COALESCE(SUM(amount), 0) FROM credit_transaction WHERE user_id = ?",
                (user_id,),
            ).fetchone()
            return int(row[0])
        finally:
            conn.close()

    @staticmethod
    def _read_balance(conn, user_id: str) -> int:
        row = conn.execute(
            "SELECT balance FROM account_balance WHERE user_id = ?", (user_id,)
        ).fetchone()
        return int(row[0]) if row else 0

    @staticmethod
    def _append(conn, user_id, amount, tx_type, description, created_at, idempotency_key=None) -> None:
        conn.execute("""
            INSERT INTO credit_transaction
            (user_id, amount, type, description, idempotency_key, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (user_id, amount, tx_type.value, description, idempotency_key, created_at))


def insert_cached_response(entry: CachedResponse, db_path: str = DEFAULT_DB_PATH) -> None:
    """Append a cached provider response. Earlier rows are left in place."""
    conn = get_connection(db_path)
    try:
        conn.execute("""
            INSERT INTO ai_generated_content
            (user_id, feature, prompt_fingerprint, response, created_at)
            VALUES (?, ?, ?, ?, ?)
        """, (
            entry.user_id,
            entry.feature,
            entry.prompt_fingerprint,
            entry.response,
            _ts(entry.created_at),
        ))
    finally:
        conn.close()


def fetch_cached_response(
    user_id: str,
    feature: str,
    prompt_fingerprint: str,
    since: datetime,
    db_path: str = DEFAULT_DB_PATH,
) -> Optional[CachedResponse]:
    """Newest cached response for the exact key created at or after ``since``."""
    conn = get_connection(db_path)
    try:
        row = conn.execute("""
            SELECT user_id, feature, prompt_fingerprint, response, created_at
            FROM ai_generated_content
            WHERE user_id = ? AND feature = ? AND prompt_fingerprint = ?
              AND created_at >= ?
            ORDER BY created_at DESC, id DESC
            LIMIT 1
        """, (user_id, feature, prompt_fingerprint, _ts(since))).fetchone()
        if row is None:
            return None
        return CachedResponse(
            user_id=row[0],
            feature=row[1],
            prompt_fingerprint=row[2],
            response=row[3],
            created_at=datetime.fromisoformat(row[4]),
        )
    finally:
        conn.close()


def insert_usage_log(entry: AIUsageLogEntry, db_path: str = DEFAULT_DB_PATH) -> None:
    """Append a usage log entry; cost is stored as exact decimal text."""
    conn = get_connection(db_path)
    try:
        conn.execute("""
            INSERT INTO ai_usage_log
            (user_id, endpoint, model, token_count, cost_usd, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (
            entry.user_id,
            entry.endpoint,
            entry.model,
            entry.token_count,
            str(entry.cost_usd),
            _ts(entry.created_at),
        ))
    finally:
        conn.close()


def fetch_recent_usage_logs(
    user_id: Optional[str] = None,
    endpoint: Optional[str] = None,
    since: Optional[datetime] = None,
    limit: int = 100,
    db_path: str = DEFAULT_DB_PATH,
) -> List[AIUsageLogEntry]:
    """Fetch usage log entries, newest first, optionally filtered.

    Args:
        user_id: Optional filter for a specific user
        endpoint: Optional filter for a specific feature endpoint
        since: Optional lower bound on created_at
        limit: Maximum number of entries to return
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        query = "SELECT user_id, endpoint, model, token_count, cost_usd, created_at FROM ai_usage_log"
        params: list = []
        conditions = []

        if user_id:
            conditions.append("user_id = ?")
            params.append(user_id)
        if endpoint:
            conditions.append("endpoint = ?")
            params.append(endpoint)
        if since is not None:
            conditions.append("created_at >= ?")
            params.append(_ts(since))

        if conditions:
            query += " WHERE " + " AND ".join(conditions)

        query += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(limit)

        return [
            AIUsageLogEntry(
                user_id=row[0],
                endpoint=row[1],
                model=row[2],
                token_count=row[3],
                cost_usd=Decimal(row[4]),
                created_at=datetime.fromisoformat(row[5]),
            )
            for row in conn.execute(query, params).fetchall()
        ]
    finally:
        conn.close()


def get_usage_stats(
    days: int = 30,
    endpoint: Optional[str] = None,
    db_path: str = DEFAULT_DB_PATH,
    now: Optional[datetime] = None,
) -> Dict[str, object]:
    """Aggregate usage log entries for the last ``days`` days.

    Costs are summed as Decimal so currency totals stay exact.

    Returns:
        Dictionary with total_requests, total_tokens and total_cost_usd
    """
    cutoff = (now or utc_now()) - timedelta(days=days)
    conn = get_connection(db_path)
    try:
        query = "SELECT token_count, cost_usd FROM ai_usage_log WHERE created_at >= ?"
        params: list = [_ts(cutoff)]
        if endpoint:
            query += " AND endpoint = ?"
            params.append(endpoint)

        total_requests = 0
        total_tokens = 0
        total_cost = Decimal("0")
        for token_count, cost in conn.execute(query, params):
            total_requests += 1
            total_tokens += token_count
            total_cost += Decimal(cost)

        return {
            "total_requests": total_requests,
            "total_tokens": total_tokens,
            "total_cost_usd": total_cost,
        }
    finally:
        conn.close()
