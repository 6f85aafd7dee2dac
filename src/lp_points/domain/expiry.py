"""FIFO lot replay: decides how many points are eligible for expiry.

Pure functions over an account's transaction history (no I/O):

  * every credit (EARN, REFUND, positive ADJUST) opens a lot; only EARN lots
    carry an expiry, the others never expire
  * every debit (REDEEM, EXPIRE, negative ADJUST) consumes open lots, earliest
    expiry first, never-expiring lots last, ties broken by transaction id
  * points eligible for expiry at `now` = what is left of lots whose
    expires_at <= now

Example: earn 100 (expires day 30), redeem 50, on day 31 -> 50 eligible.
"""

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timezone

from src.lp_common.enums import PointTransactionStatus, PointTransactionType
from src.lp_points.domain.models import PointTransaction

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass
class Lot:
    transaction_id: int
    remaining: int
    expires_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now


def _consumption_order(lot: Lot) -> tuple[bool, datetime, int]:
    return (lot.expires_at is None, lot.expires_at or _EPOCH, lot.transaction_id)


def _consume(lots: list[Lot], amount: int) -> None:
    for lot in sorted(lots, key=_consumption_order):
        if amount == 0:
            return
        if lot.remaining == 0:
            continue
        taken = min(lot.remaining, amount)
        lot.remaining -= taken
        amount -= taken


def replay_lots(history: Iterable[PointTransaction]) -> list[Lot]:
    """Replay completed transactions in id order and return the open lots."""
    lots: list[Lot] = []
    for tx in sorted(history, key=lambda t: t.id):
        if tx.status != PointTransactionStatus.COMPLETED.value:
            continue
        if tx.amount > 0:
            expires_at = tx.expires_at if tx.type == PointTransactionType.EARN.value else None
            lots.append(Lot(transaction_id=tx.id, remaining=tx.amount, expires_at=expires_at))
        elif tx.amount < 0:
            _consume(lots, -tx.amount)
    return [lot for lot in lots if lot.remaining > 0]


def expirable_amount(history: Iterable[PointTransaction], now: datetime) -> int:
    """Points still held in lots whose expiry is at or before `now`."""
    return sum(lot.remaining for lot in replay_lots(history) if lot.is_expired(now))


def expiring_amount(
    history: Iterable[PointTransaction], now: datetime, until: datetime
) -> int:
    """Points still held in lots expiring in (now, until]."""
    return sum(
        lot.remaining
        for lot in replay_lots(history)
        if lot.expires_at is not None and now < lot.expires_at <= until
    )
