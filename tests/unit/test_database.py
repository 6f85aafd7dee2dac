"""Unit tests for the engine configuration and database helpers."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from config.settings import Settings
from src.lp_common import database
from src.lp_common.database import check_database, engine_options, get_db_session


def _settings(**overrides: object) -> Settings:
    return Settings(_env_file=None, JWT_SECRET="test-secret", **overrides)  # type: ignore[arg-type]


def _engine_with(conn: AsyncMock) -> MagicMock:
    bind = MagicMock()
    bind.connect.return_value.__aenter__.return_value = conn
    return bind


class TestEngineOptions:
    def test_pool_comes_from_settings(self) -> None:
        opts = engine_options(
            _settings(DB_POOL_SIZE=5, DB_MAX_OVERFLOW=2, DB_POOL_TIMEOUT_SECONDS=7)
        )

        assert opts["pool_size"] == 5
        assert opts["max_overflow"] == 2
        assert opts["pool_timeout"] == 7
        assert opts["pool_pre_ping"] is True

    def test_lock_wait_is_bounded(self) -> None:
        opts = engine_options(_settings(DB_LOCK_TIMEOUT_MS=1500, DB_STATEMENT_TIMEOUT_MS=9000))

        server_settings = opts["connect_args"]["server_settings"]
        assert server_settings["lock_timeout"] == "1500"
        assert server_settings["statement_timeout"] == "9000"
        assert server_settings["application_name"] == "Loyalty Points Ledger"

    def test_echo_follows_debug(self) -> None:
        assert engine_options(_settings(DEBUG=True))["echo"] is True
        assert engine_options(_settings(DEBUG=False))["echo"] is False


class TestCheckDatabase:
    async def test_runs_select_one(self) -> None:
        conn = AsyncMock()

        await check_database(_engine_with(conn))

        sql = str(conn.execute.await_args.args[0])
        assert sql == "SELECT 1"

    async def test_unreachable_database_propagates(self) -> None:
        conn = AsyncMock()
        conn.execute.side_effect = OperationalError("SELECT 1", {}, Exception("refused"))

        with pytest.raises(OperationalError):
            await check_database(_engine_with(conn))


async def test_get_db_session_yields_factory_session() -> None:
    session = AsyncMock()
    factory = MagicMock()
    factory.return_value.__aenter__.return_value = session

    with patch.object(database, "async_session_factory", factory):
        yielded = [s async for s in get_db_session()]

    assert yielded == [session]
    factory.return_value.__aexit__.assert_awaited_once()
