"""PointsQueryService: read-only views over the ledger.

Every query is one or a few independent SELECTs with no FOR UPDATE; nothing
here commits, and nothing here waits on the mutation row locks.
"""

import logging
from datetime import timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from src.lp_common.datetime_utils import Clock, days_after, utc_now
from src.lp_common.errors import AccountNotFoundError, TransactionNotFoundError
from src.lp_points.application.schemas import (
    AccountResponse,
    BalanceResponse,
    GlobalStatsResponse,
    InvariantReportResponse,
    PointTransactionItem,
    TopEarnerItem,
    TransactionListResponse,
    TransactionsResponse,
    UserStatsResponse,
    cursor_decode,
    cursor_encode,
)
from src.lp_points.domain.models import TransactionFilter, UserPointStats
from src.lp_points.domain.repository import PointsRepositoryProtocol
from src.lp_points.infrastructure.persistence import PointsRepository

logger = logging.getLogger(__name__)

RECENT_WINDOW_DAYS = 30
EXPIRING_SOON_DAYS = 7
TOP_EARNERS_LIMIT = 10


class PointsQueryService:
    def __init__(
        self,
        repo: PointsRepositoryProtocol | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._repo: PointsRepositoryProtocol = repo or PointsRepository()
        self._clock = clock

    async def get_balance(self, db: AsyncSession, user_id: str) -> BalanceResponse:
        """Balance of a user without an account is 0, not an error."""
        account = await self._repo.get_account_by_user_id(db, user_id)
        return BalanceResponse.from_points(user_id, account.balance if account else 0)

    async def get_account(self, db: AsyncSession, user_id: str) -> AccountResponse:
        account = await self._repo.get_account_by_user_id(db, user_id)
        if account is None:
            raise AccountNotFoundError(user_id)
        return AccountResponse.from_domain(account)

    async def list_transactions(
        self,
        db: AsyncSession,
        user_id: str,
        filters: TransactionFilter,
        cursor: str | None,
        limit: int,
    ) -> TransactionListResponse:
        cursor_id = cursor_decode(cursor)
        # Fetch limit+1 to detect has_more without a COUNT(*) query
        txs = await self._repo.list_transactions(db, user_id, filters, cursor_id, limit + 1)
        has_more = len(txs) > limit
        page = txs[:limit]

        next_cursor = cursor_encode(page[-1].id) if has_more and page else None
        return TransactionListResponse(
            items=[PointTransactionItem.from_domain(t) for t in page],
            next_cursor=next_cursor,
            has_more=has_more,
        )

    async def get_transaction(
        self, db: AsyncSession, transaction_id: int
    ) -> PointTransactionItem:
        tx = await self._repo.get_transaction_by_id(db, transaction_id)
        if tx is None:
            raise TransactionNotFoundError(transaction_id)
        return PointTransactionItem.from_domain(tx)

    async def list_expired(self, db: AsyncSession, user_id: str) -> TransactionsResponse:
        """EARN rows whose expires_at has passed, oldest expiry first."""
        txs = await self._repo.list_expired_earns(db, user_id, self._clock())
        return TransactionsResponse.from_domain(user_id, txs)

    async def list_expiring(
        self, db: AsyncSession, user_id: str, days: int
    ) -> TransactionsResponse:
        """EARN rows expiring between now and now + days, soonest first."""
        now = self._clock()
        txs = await self._repo.list_expiring_earns(db, user_id, now, days_after(now, days))
        return TransactionsResponse.from_domain(user_id, txs)

    async def get_user_stats(self, db: AsyncSession, user_id: str) -> UserStatsResponse:
        account = await self._repo.get_account_by_user_id(db, user_id)
        if account is None:
            return UserStatsResponse.from_domain(UserPointStats(user_id=user_id))

        now = self._clock()
        recent = await self._repo.count_recent_transactions(
            db, user_id, now - timedelta(days=RECENT_WINDOW_DAYS)
        )
        expiring = await self._repo.count_expiring_earns(
            db, user_id, now, days_after(now, EXPIRING_SOON_DAYS)
        )
        return UserStatsResponse.from_domain(
            UserPointStats(
                user_id=user_id,
                balance=account.balance,
                total_earned=account.total_earned,
                total_redeemed=account.total_redeemed,
                total_expired=account.total_expired,
                is_active=account.is_active,
                expiry_days=account.expiry_days,
                recent_transactions=recent,
                expiring_transactions=expiring,
                has_account=True,
            )
        )

    async def get_stats(self, db: AsyncSession) -> GlobalStatsResponse:
        stats = await self._repo.get_global_stats(db)
        stats.top_earners = await self._repo.list_top_earners(db, TOP_EARNERS_LIMIT)
        return GlobalStatsResponse.from_domain(stats)

    async def get_top_earners(self, db: AsyncSession, limit: int) -> list[TopEarnerItem]:
        earners = await self._repo.list_top_earners(db, limit)
        return [TopEarnerItem.from_domain(e) for e in earners]

    async def verify_invariants(self, db: AsyncSession) -> InvariantReportResponse:
        """balance == SUM(amount) for every account."""
        violations = await self._repo.find_invariant_violations(db)
        for v in violations:
            logger.error(
                "Ledger invariant violated: user=%s balance=%d ledger_sum=%d drift=%d",
                v.user_id, v.balance, v.ledger_sum, v.drift,
            )
        return InvariantReportResponse.from_domain(violations)
