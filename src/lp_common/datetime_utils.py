"""UTC datetime utilities."""

from collections.abc import Callable
from datetime import datetime, timedelta, timezone

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Return timezone-aware UTC now."""
    return datetime.now(timezone.utc)


def days_after(moment: datetime, days: int) -> datetime:
    """Return `moment` shifted forward by whole days."""
    return moment + timedelta(days=days)
