"""Async database engine and session lifecycle."""

import structlog
from sqlalchemy import event, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from pricepulse.core.exceptions import StoreUnavailableError
from pricepulse.models import Base

logger = structlog.get_logger(__name__)


def _use_immediate_transactions(engine: AsyncEngine) -> None:
    """Make every SQLite transaction take the write lock up front.

    Concurrent writers then queue on the busy timeout instead of failing
    with 'database is locked' on lock upgrade.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


class Database:
    """Owns the engine and session factory for one process.

    Constructed at startup and closed on shutdown; components receive it
    by injection.
    """

    def __init__(self, url: str, echo: bool = False):
        """Initialize engine and session factory.

        Args:
            url: SQLAlchemy async URL (postgresql+asyncpg or sqlite+aiosqlite)
            echo: Log emitted SQL
        """
        self.url = url
        self.is_sqlite = url.startswith("sqlite")

        # SQLite doesn't support pool_size / max_overflow / pool_pre_ping
        engine_kwargs: dict = {"echo": echo}
        if self.is_sqlite:
            engine_kwargs["connect_args"] = {"timeout": 30}
        else:
            engine_kwargs.update(pool_size=20, max_overflow=10, pool_pre_ping=True)

        self.engine: AsyncEngine = create_async_engine(url, **engine_kwargs)
        if self.is_sqlite:
            _use_immediate_transactions(self.engine)

        self.session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )
        self.logger = logger.bind(service="database")

    @property
    def dialect_name(self) -> str:
        return self.engine.dialect.name

    def session(self) -> AsyncSession:
        """Open a new session. Use as an async context manager."""
        return self.session_factory()

    async def create_all(self) -> None:
        """Create any missing tables."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        self.logger.info("database_tables_verified")

    async def ping(self) -> None:
        """Round-trip a trivial query.

        Raises:
            StoreUnavailableError: If the store cannot be reached
        """
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except (SQLAlchemyError, OSError) as e:
            self.logger.error("database_unavailable", error=str(e))
            raise StoreUnavailableError(str(e)) from e

    async def health_check(self) -> bool:
        try:
            await self.ping()
            return True
        except StoreUnavailableError:
            return False

    async def close(self) -> None:
        """Dispose of pooled connections."""
        await self.engine.dispose()
        self.logger.info("database_engine_disposed")
