"""Integration-test fixtures.

All integration tests share a single event-loop so that the module-level
SQLAlchemy async engine pool and Redis pool (both created at import time)
remain valid across the entire test session.

These tests need a migrated PostgreSQL (alembic upgrade head) and Redis
reachable through DATABASE_URL / REDIS_URL. They are skipped unless
LEDGER_INTEGRATION_DB is set.
"""

import os

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from src.lp_common.enums import PrincipalRole
from src.lp_gateway.auth.jwt_handler import create_access_token
from src.main import app


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    if os.environ.get("LEDGER_INTEGRATION_DB"):
        return
    skip = pytest.mark.skip(reason="set LEDGER_INTEGRATION_DB with PG + Redis running")
    for item in items:
        if "tests/integration" in str(item.fspath).replace(os.sep, "/"):
            item.add_marker(skip)


@pytest_asyncio.fixture(loop_scope="session", scope="session")
async def client() -> AsyncClient:  # type: ignore[override]
    """Session-scoped async HTTP client: keeps the engine pool alive."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture(scope="session")
def admin_headers() -> dict[str, str]:
    token = create_access_token("integration-admin", role=PrincipalRole.ADMIN)
    return {"Authorization": f"Bearer {token}"}
