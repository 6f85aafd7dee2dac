"""Pydantic schemas and cursor utilities for lp_points API."""

import base64
import json
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, field_validator

from src.lp_common.points import MAX_EXPIRY_DAYS, MIN_EXPIRY_DAYS, points_to_display
from src.lp_points.domain.models import (
    GlobalPointStats,
    InvariantViolation,
    PointAccount,
    PointTransaction,
    TopEarner,
    UserPointStats,
)

# ---------------------------------------------------------------------------
# Cursor-based pagination utilities
# ---------------------------------------------------------------------------


def cursor_encode(last_id: int) -> str:
    """Encode a BIGINT primary key into an opaque Base64 cursor string."""
    payload = json.dumps({"id": last_id})
    return base64.b64encode(payload.encode()).decode()


def cursor_decode(cursor: str | None) -> int | None:
    """Decode a cursor string back to the last seen id. Returns None on error."""
    if cursor is None:
        return None
    try:
        payload = json.loads(base64.b64decode(cursor.encode()).decode())
        return int(payload["id"])
    except Exception:
        return None


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

TransactionTypeParam = Literal["EARN", "REDEEM", "REFUND", "ADJUST", "EXPIRE"]
TransactionStatusParam = Literal["PENDING", "COMPLETED", "CANCELLED", "EXPIRED"]


class _LedgerRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=64)
    description: str = Field(..., min_length=5, max_length=255)
    notes: str | None = Field(None, max_length=500)


class EarnRequest(_LedgerRequest):
    amount: int = Field(..., ge=1, description="Points to credit")
    reference_type: str | None = Field(None, max_length=50)
    reference_id: str | None = Field(None, max_length=64)
    expiry_days: int | None = Field(None, ge=MIN_EXPIRY_DAYS, le=MAX_EXPIRY_DAYS)
    idempotency_key: str | None = Field(None, min_length=1, max_length=128)


class RedeemRequest(_LedgerRequest):
    amount: int = Field(..., ge=1, description="Points to debit")
    reference_type: str | None = Field(None, max_length=50)
    reference_id: str | None = Field(None, max_length=64)
    idempotency_key: str | None = Field(None, min_length=1, max_length=128)


class RefundRequest(_LedgerRequest):
    amount: int = Field(..., ge=1, description="Points to return")
    reference_type: str | None = Field(None, max_length=50)
    reference_id: str | None = Field(None, max_length=64)
    idempotency_key: str | None = Field(None, min_length=1, max_length=128)


class AdjustRequest(_LedgerRequest):
    amount: int = Field(..., description="Signed correction, non-zero")

    @field_validator("amount")
    @classmethod
    def non_zero(cls, v: int) -> int:
        if v == 0:
            raise ValueError("amount must be non-zero")
        return v


class ExpireRequest(_LedgerRequest):
    amount: int = Field(..., ge=1, description="Upper bound; clamped to the balance")
    description: str = Field("Points expired", min_length=5, max_length=255)
    reference_id: str | None = Field(None, max_length=64)


class ExpiryDaysRequest(BaseModel):
    expiry_days: int = Field(..., ge=MIN_EXPIRY_DAYS, le=MAX_EXPIRY_DAYS)


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------


def _iso(moment: datetime | None) -> str | None:
    return moment.isoformat() if moment else None


class PointTransactionItem(BaseModel):
    id: int
    user_id: str
    type: str
    status: str
    amount: int
    amount_display: str
    balance: int
    balance_display: str
    reference_type: str | None
    reference_id: str | None
    description: str
    notes: str | None
    expires_at: str | None  # ISO8601 string
    idempotency_key: str | None
    created_by: str | None
    created_at: str | None

    @classmethod
    def from_domain(cls, tx: PointTransaction) -> "PointTransactionItem":
        return cls(
            id=tx.id,
            user_id=tx.user_id,
            type=tx.type,
            status=tx.status,
            amount=tx.amount,
            amount_display=points_to_display(tx.amount),
            balance=tx.balance,
            balance_display=points_to_display(tx.balance),
            reference_type=tx.reference_type,
            reference_id=tx.reference_id,
            description=tx.description,
            notes=tx.notes,
            expires_at=_iso(tx.expires_at),
            idempotency_key=tx.idempotency_key,
            created_by=tx.created_by,
            created_at=_iso(tx.created_at),
        )


class BalanceResponse(BaseModel):
    user_id: str
    balance: int
    balance_display: str

    @classmethod
    def from_points(cls, user_id: str, balance: int) -> "BalanceResponse":
        return cls(user_id=user_id, balance=balance, balance_display=points_to_display(balance))


class AccountResponse(BaseModel):
    user_id: str
    balance: int
    balance_display: str
    total_earned: int
    total_redeemed: int
    total_expired: int
    expiry_days: int
    is_active: bool
    version: int
    created_at: str | None
    updated_at: str | None

    @classmethod
    def from_domain(cls, account: PointAccount) -> "AccountResponse":
        return cls(
            user_id=account.user_id,
            balance=account.balance,
            balance_display=points_to_display(account.balance),
            total_earned=account.total_earned,
            total_redeemed=account.total_redeemed,
            total_expired=account.total_expired,
            expiry_days=account.expiry_days,
            is_active=account.is_active,
            version=account.version,
            created_at=_iso(account.created_at),
            updated_at=_iso(account.updated_at),
        )


class TransactionListResponse(BaseModel):
    items: list[PointTransactionItem]
    next_cursor: str | None
    has_more: bool


class TransactionsResponse(BaseModel):
    """Unpaginated list (expired / expiring EARN rows)."""

    user_id: str
    items: list[PointTransactionItem]
    total_points: int

    @classmethod
    def from_domain(
        cls, user_id: str, txs: list[PointTransaction]
    ) -> "TransactionsResponse":
        return cls(
            user_id=user_id,
            items=[PointTransactionItem.from_domain(t) for t in txs],
            total_points=sum(t.amount for t in txs),
        )


class UserStatsResponse(BaseModel):
    user_id: str
    balance: int
    total_earned: int
    total_redeemed: int
    total_expired: int
    is_active: bool
    expiry_days: int | None
    recent_transactions: int
    expiring_transactions: int
    has_account: bool

    @classmethod
    def from_domain(cls, stats: UserPointStats) -> "UserStatsResponse":
        return cls(
            user_id=stats.user_id,
            balance=stats.balance,
            total_earned=stats.total_earned,
            total_redeemed=stats.total_redeemed,
            total_expired=stats.total_expired,
            is_active=stats.is_active,
            expiry_days=stats.expiry_days,
            recent_transactions=stats.recent_transactions,
            expiring_transactions=stats.expiring_transactions,
            has_account=stats.has_account,
        )


class TopEarnerItem(BaseModel):
    user_id: str
    total_earned: int
    balance: int

    @classmethod
    def from_domain(cls, earner: TopEarner) -> "TopEarnerItem":
        return cls(user_id=earner.user_id, total_earned=earner.total_earned, balance=earner.balance)


class GlobalStatsResponse(BaseModel):
    total_accounts: int
    active_accounts: int
    total_earned: int
    total_redeemed: int
    total_expired: int
    total_balance: int
    average_balance: float
    top_earners: list[TopEarnerItem]

    @classmethod
    def from_domain(cls, stats: GlobalPointStats) -> "GlobalStatsResponse":
        return cls(
            total_accounts=stats.total_accounts,
            active_accounts=stats.active_accounts,
            total_earned=stats.total_earned,
            total_redeemed=stats.total_redeemed,
            total_expired=stats.total_expired,
            total_balance=stats.total_balance,
            average_balance=round(stats.average_balance, 2),
            top_earners=[TopEarnerItem.from_domain(e) for e in stats.top_earners],
        )


class InvariantViolationItem(BaseModel):
    user_id: str
    balance: int
    ledger_sum: int
    drift: int


class InvariantReportResponse(BaseModel):
    ok: bool
    violations: list[InvariantViolationItem]

    @classmethod
    def from_domain(cls, violations: list[InvariantViolation]) -> "InvariantReportResponse":
        return cls(
            ok=not violations,
            violations=[
                InvariantViolationItem(
                    user_id=v.user_id, balance=v.balance, ledger_sum=v.ledger_sum, drift=v.drift
                )
                for v in violations
            ],
        )


class ExpirySweepResponse(BaseModel):
    users_scanned: int = 0
    users_expired: int = 0
    points_expired: int = 0
    failures: int = 0
    skipped: bool = False  # another process holds the sweep lock


class ExpiringUserItem(BaseModel):
    user_id: str
    transactions: int
    points: int
    earliest_expires_at: str | None


class ExpiringReportResponse(BaseModel):
    days: int
    users: list[ExpiringUserItem]
    total_points: int
