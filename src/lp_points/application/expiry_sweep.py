"""ExpirySweepService: expires points whose expires_at has passed.

Candidate users are read in keyset batches (snapshot reads, no locks). Each
user is then handled in its own short unit of work:

    read account + history, replay FIFO (domain/expiry.py) -> eligible
    SELECT ... FOR UPDATE on the account row
    version changed since the read? replay again under the lock
    ledger.apply_expire(eligible)   (clamped to the locked balance)
    COMMIT

Only one account lock is held at a time. A failure for one user is logged
and counted; the sweep moves on to the next user.
"""

import logging
from collections import defaultdict
from datetime import datetime

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from src.lp_common.datetime_utils import Clock, days_after, utc_now
from src.lp_common.redis_client import acquire_lock, release_lock
from src.lp_points.application.schemas import (
    ExpiringReportResponse,
    ExpiringUserItem,
    ExpirySweepResponse,
)
from src.lp_points.application.service import PointsLedgerService
from src.lp_points.domain.expiry import expirable_amount
from src.lp_points.domain.models import PointTransaction

logger = logging.getLogger(__name__)

SWEEP_LOCK_KEY = "lp:expiry_sweep:lock"


class ExpirySweepService:
    def __init__(
        self,
        ledger: PointsLedgerService | None = None,
        clock: Clock = utc_now,
        batch_size: int | None = None,
        lock_ttl_seconds: int | None = None,
    ) -> None:
        self._ledger = ledger or PointsLedgerService(clock=clock)
        self._repo = self._ledger.repo
        self._clock = clock
        self._batch_size = batch_size or settings.EXPIRY_SWEEP_BATCH_SIZE
        self._lock_ttl = lock_ttl_seconds or settings.EXPIRY_SWEEP_LOCK_TTL_SECONDS

    async def run_exclusive(
        self, db: AsyncSession, redis: aioredis.Redis, now: datetime | None = None
    ) -> ExpirySweepResponse:
        """run() guarded by a Redis lock so only one sweep runs across processes."""
        token = await acquire_lock(redis, SWEEP_LOCK_KEY, self._lock_ttl)
        if token is None:
            logger.info("Expiry sweep skipped: lock held by another worker")
            return ExpirySweepResponse(skipped=True)
        try:
            return await self.run(db, now)
        finally:
            if not await release_lock(redis, SWEEP_LOCK_KEY, token):
                logger.warning("Expiry sweep lock expired before release (ttl=%ds)", self._lock_ttl)

    async def run(self, db: AsyncSession, now: datetime | None = None) -> ExpirySweepResponse:
        now = now or self._clock()
        result = ExpirySweepResponse()
        after_user_id: str | None = None

        while True:
            batch = await self._repo.list_expiry_candidates(
                db, now, after_user_id, self._batch_size
            )
            for user_id in batch:
                result.users_scanned += 1
                try:
                    expired = await self._expire_user(db, user_id, now)
                except Exception:
                    result.failures += 1
                    logger.exception("Expiry sweep failed for user=%s", user_id)
                    continue
                if expired:
                    result.users_expired += 1
                    result.points_expired += expired
            if len(batch) < self._batch_size:
                break
            after_user_id = batch[-1]

        logger.info(
            "Expiry sweep done: scanned=%d expired_users=%d points=%d failures=%d",
            result.users_scanned, result.users_expired, result.points_expired, result.failures,
        )
        return result

    async def _expire_user(self, db: AsyncSession, user_id: str, now: datetime) -> int:
        """Expire the FIFO-eligible amount for one user. Returns points expired.

        The history replay runs before the row lock is taken. Under the lock
        only the account version is compared; the replay is repeated only if a
        mutation committed in between.
        """
        tx: PointTransaction | None = None
        async with self._ledger.unit_of_work(db, "expiry_sweep", user_id):
            snapshot = await self._repo.get_account_by_user_id(db, user_id)
            if snapshot is None or not snapshot.is_active or snapshot.balance == 0:
                return 0
            eligible = expirable_amount(
                await self._repo.list_account_history(db, user_id), now
            )
            if eligible == 0:
                return 0

            account = await self._repo.lock_account(db, user_id)
            if account is None or not account.is_active or account.balance == 0:
                return 0
            if account.version != snapshot.version:
                logger.info("Expiry sweep replaying user=%s: account changed", user_id)
                eligible = expirable_amount(
                    await self._repo.list_account_history(db, user_id), now
                )
                if eligible == 0:
                    return 0
            tx = await self._ledger.apply_expire(
                db,
                user_id,
                eligible,
                description="Points expired by scheduled sweep",
                reference_id=f"sweep-{now:%Y%m%dT%H%M}",
            )
        logger.info(
            "EXPIRE user=%s amount=%d balance=%d tx=%d (sweep)",
            user_id, tx.amount, tx.balance, tx.id,
        )
        return -tx.amount

    async def report_expiring(
        self, db: AsyncSession, days: int, now: datetime | None = None
    ) -> ExpiringReportResponse:
        """EARN rows expiring within `days`, grouped per user, for notification."""
        now = now or self._clock()
        txs = await self._repo.list_expiring_across_users(db, now, days_after(now, days))

        grouped: dict[str, list[PointTransaction]] = defaultdict(list)
        for tx in txs:
            grouped[tx.user_id].append(tx)

        users = []
        for user_id, user_txs in grouped.items():
            earliest = min((t.expires_at for t in user_txs if t.expires_at), default=None)
            users.append(
                ExpiringUserItem(
                    user_id=user_id,
                    transactions=len(user_txs),
                    points=sum(t.amount for t in user_txs),
                    earliest_expires_at=earliest.isoformat() if earliest else None,
                )
            )
        total = sum(u.points for u in users)
        logger.info("Expiring within %d days: users=%d points=%d", days, len(users), total)
        return ExpiringReportResponse(days=days, users=users, total_points=total)
