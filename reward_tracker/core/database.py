"""
Async engine and unit-of-work sessions for the identity store and reward ledger.

Jobs open one session per unit of work (a reconciled delegator, a backfilled
epoch) and never share it across tasks. PostgreSQL runs through asyncpg,
SQLite through aiosqlite for local runs and tests.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy import event, func, select
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from .config import settings, DatabaseConfig
from .logging import get_logger

logger = get_logger(__name__)

# Concurrent reconciler sessions wait on SQLite's writer lock instead of failing
SQLITE_BUSY_TIMEOUT_MS = 30000

async_engine: Optional[AsyncEngine] = None
async_session_maker: Optional[async_sessionmaker[AsyncSession]] = None


def _configure_sqlite(engine: AsyncEngine) -> None:
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS}")
        cursor.close()


async def init_database(database_url: Optional[str] = None) -> None:
    """Create the global engine and session maker for ``database_url`` or the configured URL."""
    global async_engine, async_session_maker

    url = DatabaseConfig.get_database_url(database_url, async_driver=True)
    backend = make_url(url).get_backend_name()

    async_engine = create_async_engine(
        url,
        **DatabaseConfig.get_engine_config(url),
        echo=settings.debug
    )
    if backend == "sqlite":
        _configure_sqlite(async_engine)

    async_session_maker = async_sessionmaker(async_engine, expire_on_commit=False)
    logger.info("Database initialized", backend=backend)


async def close_database() -> None:
    """Dispose of the engine; sessions opened afterwards fail until re-initialized."""
    global async_engine, async_session_maker

    if async_engine:
        await async_engine.dispose()
        logger.info("Database connections closed")

    async_engine = None
    async_session_maker = None


@asynccontextmanager
async def get_async_session() -> AsyncIterator[AsyncSession]:
    """
    Open one unit of work.

    Everything done inside the block is one transaction: it is committed
    when the block exits normally and rolled back when it raises, so a
    failed epoch or delegator leaves no partial rows behind.

    Usage:
        async with get_async_session() as session:
            rewards = RewardRepository(session)
            ...
    """
    if not async_session_maker:
        raise RuntimeError("Database not initialized. Call init_database() first.")

    async with async_session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


class DatabaseManager:
    """Schema creation and liveness checks for the CLI."""

    @staticmethod
    async def create_tables() -> None:
        """Create the identity, reward and transaction tables if missing."""
        from reward_tracker.models.base import Base
        import reward_tracker.models  # noqa: F401  (registers mappers)

        if not async_engine:
            raise RuntimeError("Database not initialized")

        async with async_engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables created", tables=sorted(Base.metadata.tables))

    @staticmethod
    async def health_check() -> bool:
        """True when the database answers and the identity store is readable."""
        from reward_tracker.models import Delegator

        try:
            async with get_async_session() as session:
                identities = await session.scalar(select(func.count()).select_from(Delegator))
        except Exception as e:
            logger.error("Database health check failed", error=str(e), error_type=type(e).__name__)
            return False

        logger.debug("Database healthy", identities=identities)
        return True
