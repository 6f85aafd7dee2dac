"""In-memory PointsRepositoryProtocol implementation for engine tests.

Models what PostgreSQL gives the real repository:

  * a per-account lock taken by the first mutation in a session and held
    until that session commits or rolls back (the row lock)
  * uncommitted writes visible only to the session that made them
  * the (user_id, idempotency_key) unique index, raising IntegrityError

`await asyncio.sleep(0)` yield points let concurrent tasks interleave.
"""

import asyncio
from dataclasses import replace
from datetime import datetime

from sqlalchemy.exc import IntegrityError

from src.lp_common.enums import PointTransactionStatus, PointTransactionType
from src.lp_points.domain.models import (
    GlobalPointStats,
    InvariantViolation,
    NewPointTransaction,
    PointAccount,
    PointTransaction,
    TopEarner,
    TransactionFilter,
)

_EARN = PointTransactionType.EARN.value
_COMPLETED = PointTransactionStatus.COMPLETED.value


class FakeLedgerStore:
    """Committed state shared by every FakeSession."""

    def __init__(self) -> None:
        self.accounts: dict[str, PointAccount] = {}
        self.transactions: list[PointTransaction] = []
        self._locks: dict[str, asyncio.Lock] = {}
        self._next_account_id = 1
        self._next_tx_id = 1

    def session(self) -> "FakeSession":
        return FakeSession(self)

    def lock_for(self, user_id: str) -> asyncio.Lock:
        return self._locks.setdefault(user_id, asyncio.Lock())

    def allocate_account_id(self) -> int:
        account_id = self._next_account_id
        self._next_account_id += 1
        return account_id

    def allocate_tx_id(self) -> int:
        tx_id = self._next_tx_id
        self._next_tx_id += 1
        return tx_id

    def ledger_sum(self, user_id: str) -> int:
        return sum(t.amount for t in self.transactions if t.user_id == user_id)


class FakeSession:
    """Stand-in for AsyncSession. commit()/rollback() release held locks."""

    def __init__(self, store: FakeLedgerStore) -> None:
        self.store = store
        self.dirty_accounts: dict[str, PointAccount] = {}
        self.pending: list[PointTransaction] = []
        self.held: dict[str, asyncio.Lock] = {}
        self.commits = 0
        self.rollbacks = 0

    async def commit(self) -> None:
        await asyncio.sleep(0)
        self.store.accounts.update(self.dirty_accounts)
        self.store.transactions.extend(self.pending)
        self.commits += 1
        self._reset()

    async def rollback(self) -> None:
        self.rollbacks += 1
        self._reset()

    def _reset(self) -> None:
        self.dirty_accounts = {}
        self.pending = []
        for lock in self.held.values():
            lock.release()
        self.held = {}

    async def acquire(self, user_id: str) -> None:
        if user_id in self.held:
            return
        lock = self.store.lock_for(user_id)
        await lock.acquire()
        self.held[user_id] = lock

    def account(self, user_id: str) -> PointAccount | None:
        if user_id in self.dirty_accounts:
            return self.dirty_accounts[user_id]
        committed = self.store.accounts.get(user_id)
        return replace(committed) if committed else None

    def visible_transactions(self) -> list[PointTransaction]:
        return self.store.transactions + self.pending


class FakePointsRepository:
    def __init__(self, store: FakeLedgerStore) -> None:
        self.store = store

    # --- accounts ---

    async def get_account_by_user_id(self, db: FakeSession, user_id: str) -> PointAccount | None:
        await asyncio.sleep(0)
        return db.account(user_id)

    async def lock_account(self, db: FakeSession, user_id: str) -> PointAccount | None:
        await db.acquire(user_id)
        return db.account(user_id)

    async def set_active(
        self, db: FakeSession, user_id: str, is_active: bool
    ) -> PointAccount | None:
        return await self._update(db, user_id, lambda a: True, is_active=is_active)

    async def set_expiry_days(
        self, db: FakeSession, user_id: str, expiry_days: int
    ) -> PointAccount | None:
        return await self._update(db, user_id, lambda a: True, expiry_days=expiry_days)

    # --- balance mutations ---

    async def apply_earn(
        self, db: FakeSession, user_id: str, amount: int, default_expiry_days: int
    ) -> PointAccount | None:
        await db.acquire(user_id)
        account = db.account(user_id)
        if account is None:
            account = PointAccount(
                id=self.store.allocate_account_id(),
                user_id=user_id,
                balance=0,
                expiry_days=default_expiry_days,
                version=-1,
            )
        elif not account.is_active:
            return None
        account.balance += amount
        account.total_earned += amount
        account.version += 1
        db.dirty_accounts[user_id] = account
        await asyncio.sleep(0)
        return replace(account)

    async def apply_redeem(
        self, db: FakeSession, user_id: str, amount: int
    ) -> PointAccount | None:
        return await self._mutate(
            db, user_id, lambda a: a.balance >= amount, balance=-amount, total_redeemed=amount
        )

    async def apply_refund(
        self, db: FakeSession, user_id: str, amount: int
    ) -> PointAccount | None:
        return await self._mutate(db, user_id, lambda a: True, balance=amount)

    async def apply_adjust(
        self, db: FakeSession, user_id: str, amount: int
    ) -> PointAccount | None:
        return await self._mutate(
            db,
            user_id,
            lambda a: a.balance + amount >= 0,
            balance=amount,
            total_earned=max(amount, 0),
            total_redeemed=max(-amount, 0),
        )

    async def apply_expire(
        self, db: FakeSession, user_id: str, amount: int
    ) -> tuple[PointAccount, int] | None:
        await db.acquire(user_id)
        account = db.account(user_id)
        if account is None or not account.is_active:
            return None
        expired = min(amount, account.balance)
        if expired <= 0:
            return None
        updated = await self._mutate(
            db, user_id, lambda a: True, balance=-expired, total_expired=expired
        )
        assert updated is not None
        return updated, expired

    async def insert_transaction(
        self, db: FakeSession, tx: NewPointTransaction
    ) -> PointTransaction:
        await asyncio.sleep(0)
        if tx.idempotency_key is not None and any(
            t.user_id == tx.user_id and t.idempotency_key == tx.idempotency_key
            for t in db.visible_transactions()
        ):
            raise IntegrityError(
                "INSERT INTO point_transactions",
                {},
                Exception(
                    'duplicate key value violates unique constraint "uq_point_tx_user_idempotency"'
                ),
            )
        assert tx.balance >= 0, "balance snapshot must never be negative"
        assert tx.amount != 0, "zero-amount transactions are rejected by CHECK"
        row = PointTransaction(
            id=self.store.allocate_tx_id(),
            account_id=tx.account_id,
            user_id=tx.user_id,
            type=tx.type,
            status=tx.status,
            amount=tx.amount,
            balance=tx.balance,
            description=tx.description,
            reference_type=tx.reference_type,
            reference_id=tx.reference_id,
            notes=tx.notes,
            expires_at=tx.expires_at,
            idempotency_key=tx.idempotency_key,
            created_by=tx.created_by,
            created_at=tx.created_at,
        )
        db.pending.append(row)
        return replace(row)

    # --- transactions ---

    async def get_transaction_by_id(
        self, db: FakeSession, transaction_id: int
    ) -> PointTransaction | None:
        return next((t for t in db.visible_transactions() if t.id == transaction_id), None)

    async def get_transaction_by_idempotency_key(
        self, db: FakeSession, user_id: str, idempotency_key: str
    ) -> PointTransaction | None:
        await asyncio.sleep(0)
        return next(
            (
                t for t in db.visible_transactions()
                if t.user_id == user_id and t.idempotency_key == idempotency_key
            ),
            None,
        )

    async def list_transactions(
        self,
        db: FakeSession,
        user_id: str,
        filters: TransactionFilter,
        cursor_id: int | None,
        limit: int,
    ) -> list[PointTransaction]:
        rows = [
            t for t in db.visible_transactions()
            if t.user_id == user_id
            and (cursor_id is None or t.id < cursor_id)
            and (filters.type is None or t.type == filters.type)
            and (filters.status is None or t.status == filters.status)
            and (filters.reference_type is None or t.reference_type == filters.reference_type)
            and (filters.reference_id is None or t.reference_id == filters.reference_id)
            and (filters.date_from is None or t.created_at >= filters.date_from)
            and (filters.date_to is None or t.created_at <= filters.date_to)
        ]
        return sorted(rows, key=lambda t: t.id, reverse=True)[:limit]

    async def list_expired_earns(
        self, db: FakeSession, user_id: str, now: datetime
    ) -> list[PointTransaction]:
        rows = [
            t for t in self._earns(db, user_id) if t.expires_at is not None and t.expires_at <= now
        ]
        return sorted(rows, key=lambda t: (t.expires_at, t.id))

    async def list_expiring_earns(
        self, db: FakeSession, user_id: str, now: datetime, until: datetime
    ) -> list[PointTransaction]:
        rows = [
            t for t in self._earns(db, user_id)
            if t.expires_at is not None and now < t.expires_at <= until
        ]
        return sorted(rows, key=lambda t: (t.expires_at, t.id))

    async def list_account_history(
        self, db: FakeSession, user_id: str
    ) -> list[PointTransaction]:
        return sorted(
            (t for t in db.visible_transactions() if t.user_id == user_id), key=lambda t: t.id
        )

    # --- statistics ---

    async def count_recent_transactions(
        self, db: FakeSession, user_id: str, since: datetime
    ) -> int:
        return sum(
            1 for t in db.visible_transactions()
            if t.user_id == user_id and t.created_at is not None and t.created_at >= since
        )

    async def count_expiring_earns(
        self, db: FakeSession, user_id: str, now: datetime, until: datetime
    ) -> int:
        return len(await self.list_expiring_earns(db, user_id, now, until))

    async def get_global_stats(self, db: FakeSession) -> GlobalPointStats:
        accounts = list(self.store.accounts.values())
        total_balance = sum(a.balance for a in accounts)
        return GlobalPointStats(
            total_accounts=len(accounts),
            active_accounts=sum(1 for a in accounts if a.balance > 0 and a.is_active),
            total_earned=sum(a.total_earned for a in accounts),
            total_redeemed=sum(a.total_redeemed for a in accounts),
            total_expired=sum(a.total_expired for a in accounts),
            total_balance=total_balance,
            average_balance=total_balance / len(accounts) if accounts else 0.0,
        )

    async def list_top_earners(self, db: FakeSession, limit: int) -> list[TopEarner]:
        active = [a for a in self.store.accounts.values() if a.is_active]
        active.sort(key=lambda a: (-a.total_earned, a.id))
        return [TopEarner(a.user_id, a.total_earned, a.balance) for a in active[:limit]]

    async def find_invariant_violations(self, db: FakeSession) -> list[InvariantViolation]:
        violations = []
        for user_id, account in sorted(self.store.accounts.items()):
            ledger_sum = self.store.ledger_sum(user_id)
            if account.balance != ledger_sum:
                violations.append(InvariantViolation(user_id, account.balance, ledger_sum))
        return violations

    # --- expiry sweep ---

    async def list_expiry_candidates(
        self,
        db: FakeSession,
        now: datetime,
        after_user_id: str | None,
        limit: int,
    ) -> list[str]:
        candidates = [
            a.user_id for a in self.store.accounts.values()
            if a.is_active and a.balance > 0
            and (after_user_id is None or a.user_id > after_user_id)
            and any(
                t.expires_at is not None and t.expires_at <= now
                for t in self._earns(db, a.user_id)
            )
        ]
        return sorted(candidates)[:limit]

    async def list_expiring_across_users(
        self, db: FakeSession, now: datetime, until: datetime
    ) -> list[PointTransaction]:
        rows = [
            t for t in self.store.transactions
            if t.type == _EARN and t.status == _COMPLETED
            and t.expires_at is not None and now < t.expires_at <= until
            and self.store.accounts[t.user_id].is_active
            and self.store.accounts[t.user_id].balance > 0
        ]
        return sorted(rows, key=lambda t: (t.user_id, t.expires_at, t.id))

    # --- helpers ---

    def _earns(self, db: FakeSession, user_id: str) -> list[PointTransaction]:
        return [
            t for t in db.visible_transactions()
            if t.user_id == user_id and t.type == _EARN and t.status == _COMPLETED
        ]

    async def _mutate(self, db: FakeSession, user_id: str, condition, **deltas: int):  # type: ignore[no-untyped-def]
        """UPDATE ... SET col = col + delta WHERE user_id AND is_active AND condition."""
        await db.acquire(user_id)
        account = db.account(user_id)
        if account is None or not account.is_active or not condition(account):
            return None
        for column, delta in deltas.items():
            setattr(account, column, getattr(account, column) + delta)
        account.version += 1
        db.dirty_accounts[user_id] = account
        await asyncio.sleep(0)
        return replace(account)

    async def _update(self, db: FakeSession, user_id: str, condition, **values):  # type: ignore[no-untyped-def]
        await db.acquire(user_id)
        account = db.account(user_id)
        if account is None or not condition(account):
            return None
        for column, value in values.items():
            setattr(account, column, value)
        account.version += 1
        db.dirty_accounts[user_id] = account
        return replace(account)
