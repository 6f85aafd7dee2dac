"""Shared test fixtures."""

import os

# Settings() requires JWT_SECRET; set it before anything imports config.settings
os.environ.setdefault("JWT_SECRET", "test-secret-do-not-use-in-production")

from collections.abc import AsyncIterator  # noqa: E402
from datetime import UTC, datetime, timedelta  # noqa: E402

import pytest  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402

from src.lp_points.application.service import PointsLedgerService  # noqa: E402
from src.main import app  # noqa: E402
from tests.fakes import FakeLedgerStore, FakePointsRepository, FakeSession  # noqa: E402

FIXED_NOW = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)


class MutableClock:
    """Deterministic clock; tests move time with advance()."""

    def __init__(self, now: datetime = FIXED_NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
async def client() -> AsyncIterator[AsyncClient]:
    """Async HTTP client for testing FastAPI endpoints."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock()


@pytest.fixture
def store() -> FakeLedgerStore:
    return FakeLedgerStore()


@pytest.fixture
def fake_repo(store: FakeLedgerStore) -> FakePointsRepository:
    return FakePointsRepository(store)


@pytest.fixture
def ledger(fake_repo: FakePointsRepository, clock: MutableClock) -> PointsLedgerService:
    return PointsLedgerService(repo=fake_repo, clock=clock, default_expiry_days=365)


@pytest.fixture
def session(store: FakeLedgerStore) -> FakeSession:
    return store.session()
