"""Integer helpers for loyalty points.

All balances and amounts are int points. No float, no Decimal.
"""

MIN_EXPIRY_DAYS = 1
MAX_EXPIRY_DAYS = 3650


def points_to_display(points: int) -> str:
    """Format points for display: 1250 -> '1,250 pts', -40 -> '-40 pts'."""
    if points < 0:
        return f"-{-points:,} pts"
    return f"{points:,} pts"


def is_valid_expiry_days(days: int) -> bool:
    return MIN_EXPIRY_DAYS <= days <= MAX_EXPIRY_DAYS
