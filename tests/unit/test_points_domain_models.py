"""Tests for lp_points domain dataclasses."""

from src.lp_points.domain.models import (
    GlobalPointStats,
    InvariantViolation,
    PointAccount,
    TransactionFilter,
    UserPointStats,
)


class TestPointAccount:
    def test_defaults(self) -> None:
        account = PointAccount(id=1, user_id="user-1", balance=0)
        assert account.total_earned == 0
        assert account.total_redeemed == 0
        assert account.total_expired == 0
        assert account.expiry_days == 365
        assert account.is_active is True
        assert account.version == 0


class TestInvariantViolation:
    def test_drift_positive_when_balance_exceeds_ledger(self) -> None:
        v = InvariantViolation(user_id="user-1", balance=120, ledger_sum=100)
        assert v.drift == 20

    def test_drift_negative(self) -> None:
        v = InvariantViolation(user_id="user-1", balance=80, ledger_sum=100)
        assert v.drift == -20


class TestStatsDefaults:
    def test_user_stats_for_missing_account_are_zero(self) -> None:
        stats = UserPointStats(user_id="ghost")
        assert stats.balance == 0
        assert stats.has_account is False
        assert stats.expiry_days is None

    def test_global_stats_top_earners_not_shared(self) -> None:
        a, b = GlobalPointStats(), GlobalPointStats()
        a.top_earners.append(object())  # type: ignore[arg-type]
        assert b.top_earners == []

    def test_filter_defaults_to_no_filtering(self) -> None:
        f = TransactionFilter()
        assert all(
            value is None
            for value in (f.type, f.status, f.reference_type, f.reference_id, f.date_from, f.date_to)
        )
