"""Database connection and session management."""
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Optional

import structlog
from sqlalchemy import event, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from ..config import Settings
from .models import Base

logger = structlog.get_logger(__name__)

AFTER_COMMIT = "after_commit"


class DatabaseUnavailable(RuntimeError):
    """Raised at startup when the database cannot be reached."""

    pass


def _install_sqlite_transaction_hooks(engine: AsyncEngine) -> None:
    """
    Let SQLAlchemy own BEGIN on SQLite.

    The sqlite3 driver otherwise starts transactions implicitly, which breaks
    SAVEPOINT handling for nested transactions.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN")


class Database:
    """
    Explicit handle on the engine and session factory.

    Constructed once at startup and passed to every component; there is no
    module-level connection state.
    """

    def __init__(
        self,
        url: str,
        echo: bool = False,
        pool_size: Optional[int] = None,
        max_overflow: Optional[int] = None,
    ):
        """
        Initialize the database handle.

        Args:
            url: SQLAlchemy async database URL
            echo: Echo SQL statements
            pool_size: Connection pool size (server databases only)
            max_overflow: Pool overflow (server databases only)
        """
        engine_kwargs: dict[str, Any] = {"echo": echo, "pool_pre_ping": True}
        if not url.startswith("sqlite"):
            engine_kwargs["pool_recycle"] = 3600
            if pool_size is not None:
                engine_kwargs["pool_size"] = pool_size
            if max_overflow is not None:
                engine_kwargs["max_overflow"] = max_overflow

        self.url = url
        self.engine: AsyncEngine = create_async_engine(url, **engine_kwargs)
        if self.engine.dialect.name == "sqlite":
            _install_sqlite_transaction_hooks(self.engine)

        self.session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "Database":
        return cls(
            settings.database_url,
            echo=settings.database_echo,
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
        )

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Yield a session without an open transaction (reads, manual control)."""
        async with self.session_factory() as session:
            yield session

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """
        Yield a session inside one atomic transaction.

        Commits when the block exits normally, rolls back on any exception.
        Callbacks registered with after_commit() run only once the commit
        succeeded.
        """
        async with self.session_factory() as session:
            async with session.begin():
                yield session
            for callback in session.info.pop(AFTER_COMMIT, []):
                await callback()

    @staticmethod
    def after_commit(session: AsyncSession, callback: Callable[[], Awaitable[None]]) -> None:
        """Run callback after the transaction holding session commits."""
        session.info.setdefault(AFTER_COMMIT, []).append(callback)

    async def ping(self) -> None:
        """
        Verify connectivity.

        Raises:
            DatabaseUnavailable: If the database cannot be queried
        """
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except (SQLAlchemyError, OSError) as e:
            logger.error("database_ping_failed", error=str(e))
            raise DatabaseUnavailable(f"Database unreachable: {e}") from e

    async def create_all(self) -> None:
        """Create all tables defined in models if they don't exist."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def drop_all(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)

    async def dispose(self) -> None:
        """Close database connections and dispose of the engine."""
        await self.engine.dispose()
