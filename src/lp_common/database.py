import logging
from collections.abc import AsyncGenerator
from typing import Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from config.settings import Settings, settings

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Shared declarative base for the ledger ORM models."""

    pass


def engine_options(cfg: Settings) -> dict[str, Any]:
    """create_async_engine() kwargs for the ledger database.

    Every mutation holds the account row lock until COMMIT, so Postgres is
    told to give up on a lock wait after DB_LOCK_TIMEOUT_MS instead of
    queueing forever; the resulting error surfaces as StorageFailureError.
    """
    return {
        "echo": cfg.DEBUG,
        "pool_size": cfg.DB_POOL_SIZE,
        "max_overflow": cfg.DB_MAX_OVERFLOW,
        "pool_timeout": cfg.DB_POOL_TIMEOUT_SECONDS,
        "pool_pre_ping": True,
        "connect_args": {
            "server_settings": {
                "application_name": cfg.APP_NAME,
                "lock_timeout": str(cfg.DB_LOCK_TIMEOUT_MS),
                "statement_timeout": str(cfg.DB_STATEMENT_TIMEOUT_MS),
            }
        },
    }


engine: AsyncEngine = create_async_engine(settings.DATABASE_URL, **engine_options(settings))

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def check_database(bind: AsyncEngine | None = None) -> None:
    """Startup check: fail fast if the database is unreachable."""
    async with (bind or engine).connect() as conn:
        await conn.execute(text("SELECT 1"))
    logger.info("Database connection OK")


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency: yields an AsyncSession, auto-closes after request.

    The session is the unit-of-work handle passed into every ledger call;
    services commit or roll back, never the router.
    """
    async with async_session_factory() as session:
        yield session
