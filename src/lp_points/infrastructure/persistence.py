"""PointsRepository: concrete implementation of PointsRepositoryProtocol.

All balance-mutating operations use atomic PostgreSQL UPDATE ... RETURNING
(or INSERT ... ON CONFLICT for Earn's lazy account creation). The condition
and the write are one statement, so the row lock taken by the UPDATE
serializes concurrent check-and-write on the same account.
A result of 0 rows means a business constraint was violated; the service
classifies which one.

Transaction ownership: the CALLER (PointsLedgerService) commits or rolls back.
"""

from datetime import datetime

from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession

from src.lp_common.enums import PointTransactionStatus, PointTransactionType
from src.lp_common.errors import InternalError
from src.lp_points.domain.models import (
    GlobalPointStats,
    InvariantViolation,
    NewPointTransaction,
    PointAccount,
    PointTransaction,
    TopEarner,
    TransactionFilter,
)
from src.lp_points.infrastructure.db_models import PointTransactionORM

_ACCOUNT_COLUMNS = """id, user_id, balance, total_earned, total_redeemed, total_expired,
              expiry_days, is_active, version, created_at, updated_at"""

_TX_COLUMNS = """id, account_id, user_id, type, status, amount, balance,
              reference_type, reference_id, description, notes, expires_at,
              idempotency_key, created_by, created_at"""

_EARN = PointTransactionType.EARN.value
_COMPLETED = PointTransactionStatus.COMPLETED.value

# ---------------------------------------------------------------------------
# SQL: point_accounts mutations
# ---------------------------------------------------------------------------

# Lazy account creation and the credit happen in one statement.
# An inactive account matches the conflict but fails the DO UPDATE WHERE -> 0 rows.
_EARN_SQL = text(f"""
    INSERT INTO point_accounts (user_id, balance, total_earned, expiry_days)
    VALUES (:user_id, :amount, :amount, :expiry_days)
    ON CONFLICT (user_id) DO UPDATE
        SET balance      = point_accounts.balance + EXCLUDED.balance,
            total_earned = point_accounts.total_earned + EXCLUDED.total_earned,
            version      = point_accounts.version + 1,
            updated_at   = NOW()
        WHERE point_accounts.is_active
    RETURNING {_ACCOUNT_COLUMNS}
""")

_REDEEM_SQL = text(f"""
    UPDATE point_accounts
    SET balance        = balance - :amount,
        total_redeemed = total_redeemed + :amount,
        version = version + 1,
        updated_at = NOW()
    WHERE user_id = :user_id AND is_active AND balance >= :amount
    RETURNING {_ACCOUNT_COLUMNS}
""")

_REFUND_SQL = text(f"""
    UPDATE point_accounts
    SET balance = balance + :amount,
        version = version + 1,
        updated_at = NOW()
    WHERE user_id = :user_id AND is_active
    RETURNING {_ACCOUNT_COLUMNS}
""")

_ADJUST_SQL = text(f"""
    UPDATE point_accounts
    SET balance        = balance + :amount,
        total_earned   = total_earned + :earned_delta,
        total_redeemed = total_redeemed + :redeemed_delta,
        version = version + 1,
        updated_at = NOW()
    WHERE user_id = :user_id AND is_active AND balance + :amount >= 0
    RETURNING {_ACCOUNT_COLUMNS}
""")

# Clamp to the balance re-read under the row lock (FOR UPDATE re-evaluates
# against the latest committed version in READ COMMITTED).
_EXPIRE_SQL = text("""
    WITH target AS (
        SELECT id, LEAST(CAST(:amount AS BIGINT), balance) AS expired
        FROM point_accounts
        WHERE user_id = :user_id AND is_active
        FOR UPDATE
    )
    UPDATE point_accounts AS a
    SET balance       = a.balance - t.expired,
        total_expired = a.total_expired + t.expired,
        version = a.version + 1,
        updated_at = NOW()
    FROM target AS t
    WHERE a.id = t.id AND t.expired > 0
    RETURNING a.id, a.user_id, a.balance, a.total_earned, a.total_redeemed,
              a.total_expired, a.expiry_days, a.is_active, a.version,
              a.created_at, a.updated_at, t.expired AS expired_amount
""")

_SET_ACTIVE_SQL = text(f"""
    UPDATE point_accounts
    SET is_active = :is_active,
        version = version + 1,
        updated_at = NOW()
    WHERE user_id = :user_id
    RETURNING {_ACCOUNT_COLUMNS}
""")

_SET_EXPIRY_DAYS_SQL = text(f"""
    UPDATE point_accounts
    SET expiry_days = :expiry_days,
        version = version + 1,
        updated_at = NOW()
    WHERE user_id = :user_id
    RETURNING {_ACCOUNT_COLUMNS}
""")

_GET_ACCOUNT_SQL = text(f"""
    SELECT {_ACCOUNT_COLUMNS}
    FROM point_accounts
    WHERE user_id = :user_id
""")

_LOCK_ACCOUNT_SQL = text(f"""
    SELECT {_ACCOUNT_COLUMNS}
    FROM point_accounts
    WHERE user_id = :user_id
    FOR UPDATE
""")

# ---------------------------------------------------------------------------
# SQL: point_transactions
# ---------------------------------------------------------------------------

_INSERT_TX_SQL = text(f"""
    INSERT INTO point_transactions
        (account_id, user_id, type, status, amount, balance,
         reference_type, reference_id, description, notes, expires_at,
         idempotency_key, created_by, created_at)
    VALUES
        (:account_id, :user_id, :type, :status, :amount, :balance,
         :reference_type, :reference_id, :description, :notes, :expires_at,
         :idempotency_key, :created_by, :created_at)
    RETURNING {_TX_COLUMNS}
""")

_GET_TX_SQL = text(f"""
    SELECT {_TX_COLUMNS}
    FROM point_transactions
    WHERE id = :id
""")

_GET_TX_BY_KEY_SQL = text(f"""
    SELECT {_TX_COLUMNS}
    FROM point_transactions
    WHERE user_id = :user_id AND idempotency_key = :idempotency_key
""")

_LIST_EXPIRED_SQL = text(f"""
    SELECT {_TX_COLUMNS}
    FROM point_transactions
    WHERE user_id = :user_id
      AND type = '{_EARN}' AND status = '{_COMPLETED}'
      AND expires_at <= :now
    ORDER BY expires_at ASC, id ASC
""")

_LIST_EXPIRING_SQL = text(f"""
    SELECT {_TX_COLUMNS}
    FROM point_transactions
    WHERE user_id = :user_id
      AND type = '{_EARN}' AND status = '{_COMPLETED}'
      AND expires_at > :now AND expires_at <= :until
    ORDER BY expires_at ASC, id ASC
""")

_LIST_HISTORY_SQL = text(f"""
    SELECT {_TX_COLUMNS}
    FROM point_transactions
    WHERE user_id = :user_id
    ORDER BY id ASC
""")

_COUNT_RECENT_SQL = text("""
    SELECT COUNT(*) FROM point_transactions
    WHERE user_id = :user_id AND created_at >= :since
""")

_COUNT_EXPIRING_SQL = text(f"""
    SELECT COUNT(*) FROM point_transactions
    WHERE user_id = :user_id
      AND type = '{_EARN}' AND status = '{_COMPLETED}'
      AND expires_at > :now AND expires_at <= :until
""")

# ---------------------------------------------------------------------------
# SQL: statistics (single statements, MVCC snapshot, never FOR UPDATE)
# ---------------------------------------------------------------------------

_GLOBAL_STATS_SQL = text("""
    SELECT COUNT(*)                                            AS total_accounts,
           COUNT(*) FILTER (WHERE balance > 0 AND is_active)  AS active_accounts,
           COALESCE(SUM(total_earned), 0)                      AS total_earned,
           COALESCE(SUM(total_redeemed), 0)                    AS total_redeemed,
           COALESCE(SUM(total_expired), 0)                     AS total_expired,
           COALESCE(SUM(balance), 0)                           AS total_balance,
           COALESCE(AVG(balance), 0)                           AS average_balance
    FROM point_accounts
""")

_TOP_EARNERS_SQL = text("""
    SELECT user_id, total_earned, balance
    FROM point_accounts
    WHERE is_active
    ORDER BY total_earned DESC, id ASC
    LIMIT :limit
""")

_INVARIANT_SQL = text("""
    SELECT a.user_id, a.balance, COALESCE(SUM(t.amount), 0) AS ledger_sum
    FROM point_accounts a
    LEFT JOIN point_transactions t ON t.account_id = a.id
    GROUP BY a.id, a.user_id, a.balance
    HAVING a.balance <> COALESCE(SUM(t.amount), 0)
    ORDER BY a.user_id
""")

# ---------------------------------------------------------------------------
# SQL: expiry sweep
# ---------------------------------------------------------------------------

_EXPIRY_CANDIDATES_SQL = text(f"""
    SELECT a.user_id
    FROM point_accounts a
    WHERE a.is_active AND a.balance > 0
      AND (CAST(:after_user_id AS VARCHAR) IS NULL OR a.user_id > :after_user_id)
      AND EXISTS (
          SELECT 1 FROM point_transactions t
          WHERE t.account_id = a.id
            AND t.type = '{_EARN}' AND t.status = '{_COMPLETED}'
            AND t.expires_at <= :now
      )
    ORDER BY a.user_id
    LIMIT :limit
""")

_EXPIRING_ACROSS_USERS_SQL = text(f"""
    SELECT t.id, t.account_id, t.user_id, t.type, t.status, t.amount, t.balance,
           t.reference_type, t.reference_id, t.description, t.notes, t.expires_at,
           t.idempotency_key, t.created_by, t.created_at
    FROM point_transactions t
    JOIN point_accounts a ON a.id = t.account_id
    WHERE a.is_active AND a.balance > 0
      AND t.type = '{_EARN}' AND t.status = '{_COMPLETED}'
      AND t.expires_at > :now AND t.expires_at <= :until
    ORDER BY t.user_id, t.expires_at, t.id
""")


def _row_to_account(row: object) -> PointAccount:
    return PointAccount(
        id=row.id,  # type: ignore[attr-defined]
        user_id=row.user_id,  # type: ignore[attr-defined]
        balance=row.balance,  # type: ignore[attr-defined]
        total_earned=row.total_earned,  # type: ignore[attr-defined]
        total_redeemed=row.total_redeemed,  # type: ignore[attr-defined]
        total_expired=row.total_expired,  # type: ignore[attr-defined]
        expiry_days=row.expiry_days,  # type: ignore[attr-defined]
        is_active=row.is_active,  # type: ignore[attr-defined]
        version=row.version,  # type: ignore[attr-defined]
        created_at=row.created_at,  # type: ignore[attr-defined]
        updated_at=row.updated_at,  # type: ignore[attr-defined]
    )


def _row_to_transaction(row: object) -> PointTransaction:
    """Works for both text() rows and PointTransactionORM instances."""
    return PointTransaction(
        id=row.id,  # type: ignore[attr-defined]
        account_id=row.account_id,  # type: ignore[attr-defined]
        user_id=row.user_id,  # type: ignore[attr-defined]
        type=row.type,  # type: ignore[attr-defined]
        status=row.status,  # type: ignore[attr-defined]
        amount=row.amount,  # type: ignore[attr-defined]
        balance=row.balance,  # type: ignore[attr-defined]
        description=row.description,  # type: ignore[attr-defined]
        reference_type=row.reference_type,  # type: ignore[attr-defined]
        reference_id=row.reference_id,  # type: ignore[attr-defined]
        notes=row.notes,  # type: ignore[attr-defined]
        expires_at=row.expires_at,  # type: ignore[attr-defined]
        idempotency_key=row.idempotency_key,  # type: ignore[attr-defined]
        created_by=row.created_by,  # type: ignore[attr-defined]
        created_at=row.created_at,  # type: ignore[attr-defined]
    )


class PointsRepository:
    """Concrete repository: all mutations atomic at the SQL level."""

    # --- accounts ---

    async def get_account_by_user_id(
        self, db: AsyncSession, user_id: str
    ) -> PointAccount | None:
        result = await db.execute(_GET_ACCOUNT_SQL, {"user_id": user_id})
        row = result.fetchone()
        return _row_to_account(row) if row else None

    async def lock_account(
        self, db: AsyncSession, user_id: str
    ) -> PointAccount | None:
        result = await db.execute(_LOCK_ACCOUNT_SQL, {"user_id": user_id})
        row = result.fetchone()
        return _row_to_account(row) if row else None

    async def set_active(
        self, db: AsyncSession, user_id: str, is_active: bool
    ) -> PointAccount | None:
        result = await db.execute(
            _SET_ACTIVE_SQL, {"user_id": user_id, "is_active": is_active}
        )
        row = result.fetchone()
        return _row_to_account(row) if row else None

    async def set_expiry_days(
        self, db: AsyncSession, user_id: str, expiry_days: int
    ) -> PointAccount | None:
        result = await db.execute(
            _SET_EXPIRY_DAYS_SQL, {"user_id": user_id, "expiry_days": expiry_days}
        )
        row = result.fetchone()
        return _row_to_account(row) if row else None

    # --- balance mutations ---

    async def apply_earn(
        self, db: AsyncSession, user_id: str, amount: int, default_expiry_days: int
    ) -> PointAccount | None:
        result = await db.execute(
            _EARN_SQL,
            {"user_id": user_id, "amount": amount, "expiry_days": default_expiry_days},
        )
        row = result.fetchone()
        return _row_to_account(row) if row else None

    async def apply_redeem(
        self, db: AsyncSession, user_id: str, amount: int
    ) -> PointAccount | None:
        result = await db.execute(_REDEEM_SQL, {"user_id": user_id, "amount": amount})
        row = result.fetchone()
        return _row_to_account(row) if row else None

    async def apply_refund(
        self, db: AsyncSession, user_id: str, amount: int
    ) -> PointAccount | None:
        result = await db.execute(_REFUND_SQL, {"user_id": user_id, "amount": amount})
        row = result.fetchone()
        return _row_to_account(row) if row else None

    async def apply_adjust(
        self, db: AsyncSession, user_id: str, amount: int
    ) -> PointAccount | None:
        result = await db.execute(
            _ADJUST_SQL,
            {
                "user_id": user_id,
                "amount": amount,
                "earned_delta": max(amount, 0),
                "redeemed_delta": max(-amount, 0),
            },
        )
        row = result.fetchone()
        return _row_to_account(row) if row else None

    async def apply_expire(
        self, db: AsyncSession, user_id: str, amount: int
    ) -> tuple[PointAccount, int] | None:
        result = await db.execute(_EXPIRE_SQL, {"user_id": user_id, "amount": amount})
        row = result.fetchone()
        if row is None:
            return None
        return _row_to_account(row), row.expired_amount

    async def insert_transaction(
        self, db: AsyncSession, tx: NewPointTransaction
    ) -> PointTransaction:
        result = await db.execute(
            _INSERT_TX_SQL,
            {
                "account_id": tx.account_id,
                "user_id": tx.user_id,
                "type": tx.type,
                "status": tx.status,
                "amount": tx.amount,
                "balance": tx.balance,
                "reference_type": tx.reference_type,
                "reference_id": tx.reference_id,
                "description": tx.description,
                "notes": tx.notes,
                "expires_at": tx.expires_at,
                "idempotency_key": tx.idempotency_key,
                "created_by": tx.created_by,
                "created_at": tx.created_at,
            },
        )
        row = result.fetchone()
        if row is None:
            raise InternalError("Transaction insert returned no rows")
        return _row_to_transaction(row)

    # --- transactions ---

    async def get_transaction_by_id(
        self, db: AsyncSession, transaction_id: int
    ) -> PointTransaction | None:
        result = await db.execute(_GET_TX_SQL, {"id": transaction_id})
        row = result.fetchone()
        return _row_to_transaction(row) if row else None

    async def get_transaction_by_idempotency_key(
        self, db: AsyncSession, user_id: str, idempotency_key: str
    ) -> PointTransaction | None:
        result = await db.execute(
            _GET_TX_BY_KEY_SQL,
            {"user_id": user_id, "idempotency_key": idempotency_key},
        )
        row = result.fetchone()
        return _row_to_transaction(row) if row else None

    async def list_transactions(
        self,
        db: AsyncSession,
        user_id: str,
        filters: TransactionFilter,
        cursor_id: int | None,
        limit: int,
    ) -> list[PointTransaction]:
        # Built with select() so absent filters are left out instead of bound as
        # untyped NULLs (asyncpg cannot infer their type).
        stmt = select(PointTransactionORM).where(PointTransactionORM.user_id == user_id)
        if cursor_id is not None:
            stmt = stmt.where(PointTransactionORM.id < cursor_id)
        if filters.type is not None:
            stmt = stmt.where(PointTransactionORM.type == filters.type)
        if filters.status is not None:
            stmt = stmt.where(PointTransactionORM.status == filters.status)
        if filters.reference_type is not None:
            stmt = stmt.where(PointTransactionORM.reference_type == filters.reference_type)
        if filters.reference_id is not None:
            stmt = stmt.where(PointTransactionORM.reference_id == filters.reference_id)
        if filters.date_from is not None:
            stmt = stmt.where(PointTransactionORM.created_at >= filters.date_from)
        if filters.date_to is not None:
            stmt = stmt.where(PointTransactionORM.created_at <= filters.date_to)
        stmt = stmt.order_by(PointTransactionORM.id.desc()).limit(limit)

        result = await db.execute(stmt)
        return [_row_to_transaction(orm) for orm in result.scalars().all()]

    async def list_expired_earns(
        self, db: AsyncSession, user_id: str, now: datetime
    ) -> list[PointTransaction]:
        result = await db.execute(_LIST_EXPIRED_SQL, {"user_id": user_id, "now": now})
        return [_row_to_transaction(r) for r in result.fetchall()]

    async def list_expiring_earns(
        self, db: AsyncSession, user_id: str, now: datetime, until: datetime
    ) -> list[PointTransaction]:
        result = await db.execute(
            _LIST_EXPIRING_SQL, {"user_id": user_id, "now": now, "until": until}
        )
        return [_row_to_transaction(r) for r in result.fetchall()]

    async def list_account_history(
        self, db: AsyncSession, user_id: str
    ) -> list[PointTransaction]:
        result = await db.execute(_LIST_HISTORY_SQL, {"user_id": user_id})
        return [_row_to_transaction(r) for r in result.fetchall()]

    # --- statistics ---

    async def count_recent_transactions(
        self, db: AsyncSession, user_id: str, since: datetime
    ) -> int:
        result = await db.execute(_COUNT_RECENT_SQL, {"user_id": user_id, "since": since})
        return int(result.scalar_one())

    async def count_expiring_earns(
        self, db: AsyncSession, user_id: str, now: datetime, until: datetime
    ) -> int:
        result = await db.execute(
            _COUNT_EXPIRING_SQL, {"user_id": user_id, "now": now, "until": until}
        )
        return int(result.scalar_one())

    async def get_global_stats(self, db: AsyncSession) -> GlobalPointStats:
        result = await db.execute(_GLOBAL_STATS_SQL)
        row = result.fetchone()
        if row is None:
            return GlobalPointStats()
        return GlobalPointStats(
            total_accounts=int(row.total_accounts),
            active_accounts=int(row.active_accounts),
            total_earned=int(row.total_earned),
            total_redeemed=int(row.total_redeemed),
            total_expired=int(row.total_expired),
            total_balance=int(row.total_balance),
            average_balance=float(row.average_balance),  # NUMERIC -> Decimal
        )

    async def list_top_earners(
        self, db: AsyncSession, limit: int
    ) -> list[TopEarner]:
        result = await db.execute(_TOP_EARNERS_SQL, {"limit": limit})
        return [
            TopEarner(user_id=r.user_id, total_earned=r.total_earned, balance=r.balance)
            for r in result.fetchall()
        ]

    async def find_invariant_violations(
        self, db: AsyncSession
    ) -> list[InvariantViolation]:
        result = await db.execute(_INVARIANT_SQL)
        return [
            InvariantViolation(
                user_id=r.user_id, balance=r.balance, ledger_sum=int(r.ledger_sum)
            )
            for r in result.fetchall()
        ]

    # --- expiry sweep ---

    async def list_expiry_candidates(
        self,
        db: AsyncSession,
        now: datetime,
        after_user_id: str | None,
        limit: int,
    ) -> list[str]:
        result = await db.execute(
            _EXPIRY_CANDIDATES_SQL,
            {"now": now, "after_user_id": after_user_id, "limit": limit},
        )
        return [r.user_id for r in result.fetchall()]

    async def list_expiring_across_users(
        self, db: AsyncSession, now: datetime, until: datetime
    ) -> list[PointTransaction]:
        result = await db.execute(
            _EXPIRING_ACROSS_USERS_SQL, {"now": now, "until": until}
        )
        return [_row_to_transaction(r) for r in result.fetchall()]
