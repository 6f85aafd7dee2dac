"""Ledger enums: must match DB CHECK constraints exactly.

See alembic/versions/003_create_point_transactions.py
"""

from enum import Enum


class PointTransactionType(str, Enum):
    EARN = "EARN"
    REDEEM = "REDEEM"
    REFUND = "REFUND"
    ADJUST = "ADJUST"
    EXPIRE = "EXPIRE"

    @property
    def is_credit(self) -> bool:
        """True for types whose amount is always positive."""
        return self in (PointTransactionType.EARN, PointTransactionType.REFUND)

    @property
    def is_debit(self) -> bool:
        """True for types whose amount is always negative."""
        return self in (PointTransactionType.REDEEM, PointTransactionType.EXPIRE)


class PointTransactionStatus(str, Enum):
    # Only COMPLETED is written today; the rest are reserved
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


class ReferenceType(str, Enum):
    """Reference types the ledger itself assigns.

    Callers may pass any other string (e.g. "ORDER"); the ledger never
    interprets it.
    """
    MANUAL = "MANUAL"
    EXPIRY = "EXPIRY"


class PrincipalRole(str, Enum):
    USER = "user"
    ADMIN = "admin"
