"""
Data models for storage layer.

Defines database entities and data structures.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional


class TransactionType(Enum):
    """Kinds of balance-affecting events recorded in the ledger."""
    USAGE = "usage"
    PURCHASE = "purchase"
    SIGNUP_BONUS = "signup_bonus"
    PROMOTIONAL = "promotional"
    REFUND = "refund"


# Sources allowed for positive ledger entries
GRANT_SOURCES = frozenset({
    TransactionType.PURCHASE,
    TransactionType.SIGNUP_BONUS,
    TransactionType.PROMOTIONAL,
    TransactionType.REFUND,
})


@dataclass(frozen=True)
class AccountBalance:
    """Current credit balance of a registered user."""
    user_id: str
    balance: int
    updated_at: datetime


@dataclass(frozen=True)
class CreditTransaction:
    """Immutable ledger entry for a balance change.

    Negative amounts are usage, positive amounts are purchases, bonuses,
    promotions and refunds. Once written, these records must never be
    modified.
    """
    user_id: str
    amount: int
    type: TransactionType
    description: str
    created_at: datetime
    idempotency_key: Optional[str] = None
    id: Optional[int] = None


@dataclass(frozen=True)
class CachedResponse:
    """Raw provider output stored for a (user, feature, prompt) key."""
    user_id: str
    feature: str
    prompt_fingerprint: str
    response: str
    created_at: datetime


@dataclass(frozen=True)
class AIUsageLogEntry:
    """Append-only telemetry for one provider call.

    ``cost_usd`` is currency and is kept apart from integer credits.
    """
    user_id: Optional[str]
    endpoint: str
    model: str
    token_count: int
    cost_usd: Decimal
    created_at: datetime
