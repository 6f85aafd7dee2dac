"""Domain models for lp_points: pure dataclasses, no SQLAlchemy dependency."""

from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class PointAccount:
    id: int                     # BIGSERIAL
    user_id: str
    balance: int                # points, never negative
    total_earned: int = 0
    total_redeemed: int = 0
    total_expired: int = 0
    expiry_days: int = 365      # default lifetime of EARN points
    is_active: bool = True
    version: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class PointTransaction:
    id: int                          # BIGSERIAL, newest-first ordering key
    account_id: int
    user_id: str
    type: str                        # PointTransactionType value
    status: str                      # PointTransactionStatus value
    amount: int                      # signed: credit > 0, debit < 0
    balance: int                     # account balance snapshot after this op
    description: str
    reference_type: str | None = None
    reference_id: str | None = None
    notes: str | None = None
    expires_at: datetime | None = None   # EARN only
    idempotency_key: str | None = None
    created_by: str | None = None
    created_at: datetime | None = None


@dataclass
class NewPointTransaction:
    """Row to append after a successful account mutation."""

    account_id: int
    user_id: str
    type: str
    status: str
    amount: int
    balance: int
    description: str
    created_at: datetime
    reference_type: str | None = None
    reference_id: str | None = None
    notes: str | None = None
    expires_at: datetime | None = None
    idempotency_key: str | None = None
    created_by: str | None = None


@dataclass
class TransactionFilter:
    type: str | None = None
    status: str | None = None
    reference_type: str | None = None
    reference_id: str | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None


@dataclass
class UserPointStats:
    user_id: str
    balance: int = 0
    total_earned: int = 0
    total_redeemed: int = 0
    total_expired: int = 0
    is_active: bool = False
    expiry_days: int | None = None
    recent_transactions: int = 0     # last 30 days
    expiring_transactions: int = 0   # EARN rows expiring in the next 7 days
    has_account: bool = False


@dataclass
class TopEarner:
    user_id: str
    total_earned: int
    balance: int


@dataclass
class GlobalPointStats:
    total_accounts: int = 0
    active_accounts: int = 0         # balance > 0 and is_active
    total_earned: int = 0
    total_redeemed: int = 0
    total_expired: int = 0
    total_balance: int = 0
    average_balance: float = 0.0
    top_earners: list[TopEarner] = field(default_factory=list)


@dataclass
class InvariantViolation:
    """Account whose balance disagrees with the sum of its transactions."""

    user_id: str
    balance: int
    ledger_sum: int

    @property
    def drift(self) -> int:
        return self.balance - self.ledger_sum
