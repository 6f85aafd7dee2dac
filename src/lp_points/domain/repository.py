"""Repository Protocol: dependency inversion for testability.

Unit tests inject a mock (or the in-memory double in tests/fakes.py) that
conforms to this Protocol. Infrastructure layer provides the real implementation.

Mutation contract: every `apply_*` method performs the balance check and the
write as ONE conditional statement on the account row and returns the updated
account, or None when the condition failed (missing, inactive, or the balance
rule rejected it). The caller classifies the rejection and owns commit/rollback.
"""

from datetime import datetime
from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from src.lp_points.domain.models import (
    GlobalPointStats,
    InvariantViolation,
    NewPointTransaction,
    PointAccount,
    PointTransaction,
    TopEarner,
    TransactionFilter,
)


class PointsRepositoryProtocol(Protocol):
    # --- accounts ---

    async def get_account_by_user_id(
        self, db: AsyncSession, user_id: str
    ) -> PointAccount | None: ...

    async def lock_account(
        self, db: AsyncSession, user_id: str
    ) -> PointAccount | None: ...

    async def set_active(
        self, db: AsyncSession, user_id: str, is_active: bool
    ) -> PointAccount | None: ...

    async def set_expiry_days(
        self, db: AsyncSession, user_id: str, expiry_days: int
    ) -> PointAccount | None: ...

    # --- balance mutations ---

    async def apply_earn(
        self, db: AsyncSession, user_id: str, amount: int, default_expiry_days: int
    ) -> PointAccount | None: ...

    async def apply_redeem(
        self, db: AsyncSession, user_id: str, amount: int
    ) -> PointAccount | None: ...

    async def apply_refund(
        self, db: AsyncSession, user_id: str, amount: int
    ) -> PointAccount | None: ...

    async def apply_adjust(
        self, db: AsyncSession, user_id: str, amount: int
    ) -> PointAccount | None: ...

    async def apply_expire(
        self, db: AsyncSession, user_id: str, amount: int
    ) -> tuple[PointAccount, int] | None: ...

    async def insert_transaction(
        self, db: AsyncSession, tx: NewPointTransaction
    ) -> PointTransaction: ...

    # --- transactions ---

    async def get_transaction_by_id(
        self, db: AsyncSession, transaction_id: int
    ) -> PointTransaction | None: ...

    async def get_transaction_by_idempotency_key(
        self, db: AsyncSession, user_id: str, idempotency_key: str
    ) -> PointTransaction | None: ...

    async def list_transactions(
        self,
        db: AsyncSession,
        user_id: str,
        filters: TransactionFilter,
        cursor_id: int | None,
        limit: int,
    ) -> list[PointTransaction]: ...

    async def list_expired_earns(
        self, db: AsyncSession, user_id: str, now: datetime
    ) -> list[PointTransaction]: ...

    async def list_expiring_earns(
        self, db: AsyncSession, user_id: str, now: datetime, until: datetime
    ) -> list[PointTransaction]: ...

    async def list_account_history(
        self, db: AsyncSession, user_id: str
    ) -> list[PointTransaction]: ...

    # --- statistics ---

    async def count_recent_transactions(
        self, db: AsyncSession, user_id: str, since: datetime
    ) -> int: ...

    async def count_expiring_earns(
        self, db: AsyncSession, user_id: str, now: datetime, until: datetime
    ) -> int: ...

    async def get_global_stats(self, db: AsyncSession) -> GlobalPointStats: ...

    async def list_top_earners(
        self, db: AsyncSession, limit: int
    ) -> list[TopEarner]: ...

    async def find_invariant_violations(
        self, db: AsyncSession
    ) -> list[InvariantViolation]: ...

    # --- expiry sweep ---

    async def list_expiry_candidates(
        self,
        db: AsyncSession,
        now: datetime,
        after_user_id: str | None,
        limit: int,
    ) -> list[str]: ...

    async def list_expiring_across_users(
        self, db: AsyncSession, now: datetime, until: datetime
    ) -> list[PointTransaction]: ...
