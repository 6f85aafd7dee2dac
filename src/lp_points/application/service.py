"""PointsLedgerService: the ledger engine.

Each of the five balance mutations (earn, redeem, refund, adjust, expire) is
one unit of work on the injected AsyncSession:

    conditional UPDATE/UPSERT on the account row  (row lock taken here)
    INSERT the transaction with the post-op balance snapshot
    COMMIT                                          (row lock released)

On any exception the unit of work is rolled back and the error re-raised.
SQLAlchemy errors surface as StorageFailureError. A request that loses the
race on the idempotency unique index re-reads the key in a fresh unit of work
and returns the winning transaction, or IdempotencyConflictError if the winner
was a different operation.
"""

import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from src.lp_common.datetime_utils import Clock, days_after, utc_now
from src.lp_common.enums import PointTransactionStatus, PointTransactionType, ReferenceType
from src.lp_common.errors import (
    AccountInactiveError,
    AccountNotFoundError,
    AppError,
    IdempotencyConflictError,
    InsufficientBalanceError,
    InternalError,
    InvalidAdjustmentError,
    InvalidAmountError,
    InvalidExpiryDaysError,
    StorageFailureError,
)
from src.lp_common.points import is_valid_expiry_days
from src.lp_points.domain.models import NewPointTransaction, PointAccount, PointTransaction
from src.lp_points.domain.repository import PointsRepositoryProtocol
from src.lp_points.infrastructure.persistence import PointsRepository

logger = logging.getLogger(__name__)

# Name of the UNIQUE (user_id, idempotency_key) index, see migration 003
IDEMPOTENCY_CONSTRAINT = "uq_point_tx_user_idempotency"

_COMPLETED = PointTransactionStatus.COMPLETED.value


class _IdempotencyRaceLost(IdempotencyConflictError):
    """Insert hit the idempotency unique index; the winner has committed."""

    def __init__(self, idempotency_key: str) -> None:
        super().__init__(idempotency_key)
        self.idempotency_key = idempotency_key


class PointsLedgerService:
    def __init__(
        self,
        repo: PointsRepositoryProtocol | None = None,
        clock: Clock = utc_now,
        default_expiry_days: int | None = None,
    ) -> None:
        self._repo: PointsRepositoryProtocol = repo or PointsRepository()
        self._clock = clock
        self._default_expiry_days = default_expiry_days or settings.POINTS_DEFAULT_EXPIRY_DAYS

    @property
    def repo(self) -> PointsRepositoryProtocol:
        return self._repo

    @asynccontextmanager
    async def unit_of_work(
        self,
        db: AsyncSession,
        operation: str,
        user_id: str,
        idempotency_key: str | None = None,
    ) -> AsyncIterator[None]:
        """Commit on success; roll back and translate on any failure."""
        try:
            yield
            await db.commit()
        except AppError as exc:
            await db.rollback()
            logger.warning(
                "%s rejected user=%s code=%d: %s", operation, user_id, exc.code, exc.message
            )
            raise
        except IntegrityError as exc:
            await db.rollback()
            if idempotency_key is not None and IDEMPOTENCY_CONSTRAINT in str(exc.orig):
                logger.warning(
                    "%s lost idempotency race user=%s key=%s", operation, user_id, idempotency_key
                )
                raise _IdempotencyRaceLost(idempotency_key) from exc
            logger.exception("%s integrity failure user=%s", operation, user_id)
            raise StorageFailureError(operation) from exc
        except SQLAlchemyError as exc:
            await db.rollback()
            logger.exception("%s storage failure user=%s", operation, user_id)
            raise StorageFailureError(operation) from exc
        except Exception:
            await db.rollback()
            raise

    # ------------------------------------------------------------------
    # Balance mutations
    # ------------------------------------------------------------------

    async def earn(
        self,
        db: AsyncSession,
        user_id: str,
        amount: int,
        reference_type: str | None,
        reference_id: str | None,
        description: str,
        expiry_days: int | None = None,
        notes: str | None = None,
        idempotency_key: str | None = None,
    ) -> PointTransaction:
        """Credit points, creating the account on first use.

        expires_at = now + (expiry_days override or the account's expiry_days).
        """
        _require_positive(amount)
        if expiry_days is not None and not is_valid_expiry_days(expiry_days):
            raise InvalidExpiryDaysError(expiry_days)

        try:
            async with self.unit_of_work(db, "earn", user_id, idempotency_key):
                replayed = await self._replay(
                    db, user_id, idempotency_key, PointTransactionType.EARN, amount
                )
                if replayed is not None:
                    return replayed

                now = self._clock()
                account = await self._repo.apply_earn(
                    db, user_id, amount, self._default_expiry_days
                )
                if account is None:
                    raise await self._classify_rejection(
                        db,
                        user_id,
                        lambda acc: InternalError(f"Earn rejected for user {user_id}"),
                    )
                tx = await self._repo.insert_transaction(
                    db,
                    NewPointTransaction(
                        account_id=account.id,
                        user_id=user_id,
                        type=PointTransactionType.EARN.value,
                        status=_COMPLETED,
                        amount=amount,
                        balance=account.balance,
                        description=description,
                        created_at=now,
                        reference_type=reference_type,
                        reference_id=reference_id,
                        notes=notes,
                        expires_at=days_after(now, expiry_days or account.expiry_days),
                        idempotency_key=idempotency_key,
                    ),
                )
        except _IdempotencyRaceLost as exc:
            return await self._replay_after_race(
                db, "earn", user_id, exc.idempotency_key, PointTransactionType.EARN, amount
            )
        _log_committed(tx)
        return tx

    async def redeem(
        self,
        db: AsyncSession,
        user_id: str,
        amount: int,
        reference_type: str | None,
        reference_id: str | None,
        description: str,
        notes: str | None = None,
        idempotency_key: str | None = None,
    ) -> PointTransaction:
        """Debit points; fails with InsufficientBalanceError if amount > balance."""
        _require_positive(amount)

        try:
            async with self.unit_of_work(db, "redeem", user_id, idempotency_key):
                replayed = await self._replay(
                    db, user_id, idempotency_key, PointTransactionType.REDEEM, amount
                )
                if replayed is not None:
                    return replayed

                now = self._clock()
                account = await self._repo.apply_redeem(db, user_id, amount)
                if account is None:
                    raise await self._classify_rejection(
                        db, user_id, lambda acc: InsufficientBalanceError(amount, acc.balance)
                    )
                tx = await self._repo.insert_transaction(
                    db,
                    NewPointTransaction(
                        account_id=account.id,
                        user_id=user_id,
                        type=PointTransactionType.REDEEM.value,
                        status=_COMPLETED,
                        amount=-amount,
                        balance=account.balance,
                        description=description,
                        created_at=now,
                        reference_type=reference_type,
                        reference_id=reference_id,
                        notes=notes,
                        idempotency_key=idempotency_key,
                    ),
                )
        except _IdempotencyRaceLost as exc:
            return await self._replay_after_race(
                db, "redeem", user_id, exc.idempotency_key, PointTransactionType.REDEEM, amount
            )
        _log_committed(tx)
        return tx

    async def refund(
        self,
        db: AsyncSession,
        user_id: str,
        amount: int,
        reference_type: str | None,
        reference_id: str | None,
        description: str,
        notes: str | None = None,
        idempotency_key: str | None = None,
    ) -> PointTransaction:
        """Return previously redeemed points. Counters unchanged, no expiry attached."""
        _require_positive(amount)

        try:
            async with self.unit_of_work(db, "refund", user_id, idempotency_key):
                replayed = await self._replay(
                    db, user_id, idempotency_key, PointTransactionType.REFUND, amount
                )
                if replayed is not None:
                    return replayed

                now = self._clock()
                account = await self._repo.apply_refund(db, user_id, amount)
                if account is None:
                    raise await self._classify_rejection(
                        db,
                        user_id,
                        lambda acc: InternalError(f"Refund rejected for user {user_id}"),
                    )
                tx = await self._repo.insert_transaction(
                    db,
                    NewPointTransaction(
                        account_id=account.id,
                        user_id=user_id,
                        type=PointTransactionType.REFUND.value,
                        status=_COMPLETED,
                        amount=amount,
                        balance=account.balance,
                        description=description,
                        created_at=now,
                        reference_type=reference_type,
                        reference_id=reference_id,
                        notes=notes,
                        idempotency_key=idempotency_key,
                    ),
                )
        except _IdempotencyRaceLost as exc:
            return await self._replay_after_race(
                db, "refund", user_id, exc.idempotency_key, PointTransactionType.REFUND, amount
            )
        _log_committed(tx)
        return tx

    async def adjust(
        self,
        db: AsyncSession,
        user_id: str,
        amount: int,
        description: str,
        notes: str | None = None,
        operator_id: str | None = None,
    ) -> PointTransaction:
        """Signed manual correction.

        Positive adds to total_earned, negative to total_redeemed. Rejected with
        InvalidAdjustmentError if the resulting balance would be negative.
        """
        if amount == 0:
            raise InvalidAmountError(amount, expected="non-zero")

        async with self.unit_of_work(db, "adjust", user_id):
            now = self._clock()
            account = await self._repo.apply_adjust(db, user_id, amount)
            if account is None:
                raise await self._classify_rejection(
                    db, user_id, lambda acc: InvalidAdjustmentError(amount, acc.balance)
                )
            tx = await self._repo.insert_transaction(
                db,
                NewPointTransaction(
                    account_id=account.id,
                    user_id=user_id,
                    type=PointTransactionType.ADJUST.value,
                    status=_COMPLETED,
                    amount=amount,
                    balance=account.balance,
                    description=description,
                    created_at=now,
                    reference_type=ReferenceType.MANUAL.value,
                    reference_id=operator_id,
                    notes=notes,
                    created_by=operator_id,
                ),
            )
        _log_committed(tx)
        return tx

    async def expire(
        self,
        db: AsyncSession,
        user_id: str,
        amount: int,
        description: str = "Points expired",
        reference_id: str | None = None,
        notes: str | None = None,
    ) -> PointTransaction:
        """Expire up to `amount` points; the amount is clamped to the balance."""
        _require_positive(amount)

        async with self.unit_of_work(db, "expire", user_id):
            tx = await self.apply_expire(db, user_id, amount, description, reference_id, notes)
        _log_committed(tx)
        return tx

    async def apply_expire(
        self,
        db: AsyncSession,
        user_id: str,
        amount: int,
        description: str = "Points expired",
        reference_id: str | None = None,
        notes: str | None = None,
    ) -> PointTransaction:
        """Expire primitive WITHOUT commit: the caller owns the unit of work.

        Used by expire() and by the expiry sweep, which locks the account and
        computes the eligible amount inside its own unit of work.
        """
        now = self._clock()
        applied = await self._repo.apply_expire(db, user_id, amount)
        if applied is None:
            # Nothing to clamp to: zero-amount rows are never written
            raise await self._classify_rejection(
                db, user_id, lambda acc: InsufficientBalanceError(amount, acc.balance)
            )
        account, expired = applied
        return await self._repo.insert_transaction(
            db,
            NewPointTransaction(
                account_id=account.id,
                user_id=user_id,
                type=PointTransactionType.EXPIRE.value,
                status=_COMPLETED,
                amount=-expired,
                balance=account.balance,
                description=description,
                created_at=now,
                reference_type=ReferenceType.EXPIRY.value,
                reference_id=reference_id,
                notes=notes,
            ),
        )

    # ------------------------------------------------------------------
    # Account administration
    # ------------------------------------------------------------------

    async def deactivate_account(self, db: AsyncSession, user_id: str) -> PointAccount:
        return await self._set_active(db, user_id, False)

    async def activate_account(self, db: AsyncSession, user_id: str) -> PointAccount:
        return await self._set_active(db, user_id, True)

    async def set_expiry_days(
        self, db: AsyncSession, user_id: str, expiry_days: int
    ) -> PointAccount:
        if not is_valid_expiry_days(expiry_days):
            raise InvalidExpiryDaysError(expiry_days)
        async with self.unit_of_work(db, "set_expiry_days", user_id):
            account = await self._repo.set_expiry_days(db, user_id, expiry_days)
            if account is None:
                raise AccountNotFoundError(user_id)
        logger.info("EXPIRY_DAYS user=%s days=%d", user_id, expiry_days)
        return account

    async def _set_active(
        self, db: AsyncSession, user_id: str, is_active: bool
    ) -> PointAccount:
        operation = "activate" if is_active else "deactivate"
        async with self.unit_of_work(db, operation, user_id):
            account = await self._repo.set_active(db, user_id, is_active)
            if account is None:
                raise AccountNotFoundError(user_id)
        logger.info("%s user=%s", operation.upper(), user_id)
        return account

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _replay_after_race(
        self,
        db: AsyncSession,
        operation: str,
        user_id: str,
        idempotency_key: str,
        tx_type: PointTransactionType,
        amount: int,
    ) -> PointTransaction:
        """Look the key up again after losing the unique-index race."""
        async with self.unit_of_work(db, operation, user_id):
            winner = await self._replay(db, user_id, idempotency_key, tx_type, amount)
        if winner is None:
            raise IdempotencyConflictError(idempotency_key)
        return winner

    async def _replay(
        self,
        db: AsyncSession,
        user_id: str,
        idempotency_key: str | None,
        tx_type: PointTransactionType,
        amount: int,
    ) -> PointTransaction | None:
        """Return the committed transaction for a repeated idempotency key."""
        if idempotency_key is None:
            return None
        existing = await self._repo.get_transaction_by_idempotency_key(
            db, user_id, idempotency_key
        )
        if existing is None:
            return None
        if existing.type != tx_type.value or abs(existing.amount) != amount:
            raise IdempotencyConflictError(idempotency_key)
        logger.info(
            "%s replayed user=%s key=%s tx=%d", tx_type.value, user_id, idempotency_key, existing.id
        )
        return existing

    async def _classify_rejection(
        self,
        db: AsyncSession,
        user_id: str,
        on_balance_rule: Callable[[PointAccount], AppError],
    ) -> AppError:
        """Explain why a conditional mutation matched zero rows."""
        account = await self._repo.get_account_by_user_id(db, user_id)
        if account is None:
            return AccountNotFoundError(user_id)
        if not account.is_active:
            return AccountInactiveError(user_id)
        return on_balance_rule(account)


def _require_positive(amount: int) -> None:
    if amount <= 0:
        raise InvalidAmountError(amount)


def _log_committed(tx: PointTransaction) -> None:
    logger.info(
        "%s user=%s amount=%d balance=%d tx=%d",
        tx.type, tx.user_id, tx.amount, tx.balance, tx.id,
    )
