"""Tests for lp_points Pydantic schemas and cursor utilities."""

from datetime import UTC, datetime

import pytest
from pydantic import ValidationError

from src.lp_points.application.schemas import (
    AccountResponse,
    AdjustRequest,
    EarnRequest,
    ExpireRequest,
    ExpiryDaysRequest,
    GlobalStatsResponse,
    InvariantReportResponse,
    PointTransactionItem,
    RedeemRequest,
    TransactionsResponse,
    cursor_decode,
    cursor_encode,
)
from src.lp_points.domain.models import (
    GlobalPointStats,
    InvariantViolation,
    PointAccount,
    PointTransaction,
    TopEarner,
)


def _tx(tx_id: int = 1, amount: int = 50, balance: int = 50) -> PointTransaction:
    return PointTransaction(
        id=tx_id,
        account_id=1,
        user_id="user-7",
        type="EARN",
        status="COMPLETED",
        amount=amount,
        balance=balance,
        description="Order #1 reward",
        reference_type="ORDER",
        reference_id="1",
        expires_at=datetime(2027, 1, 1, tzinfo=UTC),
        created_at=datetime(2026, 1, 1, tzinfo=UTC),
    )


class TestEarnRequest:
    def test_valid(self) -> None:
        req = EarnRequest(user_id="user-7", amount=50, description="Order #1 reward")
        assert req.amount == 50
        assert req.expiry_days is None

    def test_zero_rejected(self) -> None:
        with pytest.raises(ValidationError):
            EarnRequest(user_id="user-7", amount=0, description="Order #1 reward")

    def test_short_description_rejected(self) -> None:
        with pytest.raises(ValidationError):
            EarnRequest(user_id="user-7", amount=5, description="abc")

    def test_long_notes_rejected(self) -> None:
        with pytest.raises(ValidationError):
            EarnRequest(user_id="user-7", amount=5, description="valid one", notes="x" * 501)

    def test_expiry_days_bounds(self) -> None:
        with pytest.raises(ValidationError):
            EarnRequest(user_id="u", amount=5, description="valid one", expiry_days=0)
        with pytest.raises(ValidationError):
            EarnRequest(user_id="u", amount=5, description="valid one", expiry_days=3651)
        req = EarnRequest(user_id="u", amount=5, description="valid one", expiry_days=3650)
        assert req.expiry_days == 3650


class TestRedeemRequest:
    def test_negative_rejected(self) -> None:
        with pytest.raises(ValidationError):
            RedeemRequest(user_id="user-7", amount=-20, description="Checkout #9")


class TestAdjustRequest:
    def test_negative_allowed(self) -> None:
        req = AdjustRequest(user_id="user-7", amount=-30, description="Goodwill fix")
        assert req.amount == -30

    def test_zero_rejected(self) -> None:
        with pytest.raises(ValidationError, match="non-zero"):
            AdjustRequest(user_id="user-7", amount=0, description="Goodwill fix")


class TestExpireRequest:
    def test_default_description(self) -> None:
        req = ExpireRequest(user_id="user-7", amount=10)
        assert req.description == "Points expired"


class TestExpiryDaysRequest:
    def test_valid(self) -> None:
        assert ExpiryDaysRequest(expiry_days=90).expiry_days == 90

    def test_out_of_range(self) -> None:
        with pytest.raises(ValidationError):
            ExpiryDaysRequest(expiry_days=0)


class TestResponses:
    def test_transaction_item_from_domain(self) -> None:
        item = PointTransactionItem.from_domain(_tx(amount=-1250, balance=0))
        assert item.amount == -1250
        assert item.amount_display == "-1,250 pts"
        assert item.balance_display == "0 pts"
        assert item.expires_at == "2027-01-01T00:00:00+00:00"

    def test_account_response_from_domain(self) -> None:
        account = PointAccount(id=3, user_id="user-7", balance=30, total_earned=50, total_redeemed=20)
        resp = AccountResponse.from_domain(account)
        assert resp.balance == 30
        assert resp.balance_display == "30 pts"
        assert resp.created_at is None

    def test_transactions_response_totals(self) -> None:
        resp = TransactionsResponse.from_domain("user-7", [_tx(1, 50), _tx(2, 25)])
        assert resp.total_points == 75
        assert [i.id for i in resp.items] == [1, 2]

    def test_global_stats_rounds_average(self) -> None:
        stats = GlobalPointStats(
            total_accounts=3, average_balance=33.33333, top_earners=[TopEarner("a", 100, 10)]
        )
        resp = GlobalStatsResponse.from_domain(stats)
        assert resp.average_balance == 33.33
        assert resp.top_earners[0].user_id == "a"

    def test_invariant_report(self) -> None:
        assert InvariantReportResponse.from_domain([]).ok is True
        report = InvariantReportResponse.from_domain([InvariantViolation("u", 10, 7)])
        assert report.ok is False
        assert report.violations[0].drift == 3


class TestCursorUtils:
    def test_encode_decode_roundtrip(self) -> None:
        cursor = cursor_encode(12345)
        assert cursor_decode(cursor) == 12345

    def test_decode_invalid_returns_none(self) -> None:
        assert cursor_decode("not-valid-base64!!!") is None

    def test_decode_none_returns_none(self) -> None:
        assert cursor_decode(None) is None
