"""Async database engine and session management."""

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from knowledge_engine.core.config import Settings
from knowledge_engine.core.errors import ServiceNotInitializedError, StoreConnectionError
from knowledge_engine.core.lifecycle import InitOnce
from knowledge_engine.db.models import Base

logger = logging.getLogger(__name__)


class Database:
    """Owns the async engine and session factory.

    Constructed by the process entry point; `init()` connects with bounded
    retry and `shutdown()` disposes the pool.
    """

    def __init__(
        self,
        url: str,
        pool_size: int = 10,
        max_overflow: int = 10,
        connect_timeout: float = 10.0,
        connect_retries: int = 3,
        retry_delay: float = 2.0,
        create_tables: bool = False,
        echo: bool = False,
    ):
        self.url = url
        self.pool_size = pool_size
        self.max_overflow = max_overflow
        self.connect_timeout = connect_timeout
        self.connect_retries = connect_retries
        self.retry_delay = retry_delay
        self.create_tables = create_tables
        self.echo = echo

        self._engine: AsyncEngine | None = None
        self._session_maker: async_sessionmaker[AsyncSession] | None = None
        self._init = InitOnce(self._initialize)

    @classmethod
    def from_settings(cls, settings: Settings) -> "Database":
        return cls(
            url=settings.get_database_url,
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            connect_timeout=settings.db_connect_timeout,
            connect_retries=settings.connect_retries,
            retry_delay=settings.connect_retry_delay,
            create_tables=settings.db_create_tables,
            echo=settings.debug,
        )

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")

    @property
    def session_maker(self) -> async_sessionmaker[AsyncSession]:
        if self._session_maker is None:
            raise ServiceNotInitializedError("Database.init() has not completed")
        return self._session_maker

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise ServiceNotInitializedError("Database.init() has not completed")
        return self._engine

    def _create_engine(self) -> AsyncEngine:
        if self.is_sqlite:
            # SQLite pools do not accept sizing arguments
            return create_async_engine(self.url, echo=self.echo)
        return create_async_engine(
            self.url,
            echo=self.echo,
            pool_size=self.pool_size,
            max_overflow=self.max_overflow,
            pool_pre_ping=True,
            connect_args={"timeout": self.connect_timeout},
        )

    async def init(self) -> None:
        """Connect and verify the database. Safe to call concurrently."""
        await self._init.get()

    async def _initialize(self) -> None:
        engine = self._create_engine()

        for attempt in range(1, self.connect_retries + 1):
            try:
                async with engine.connect() as conn:
                    await conn.execute(text("SELECT 1"))
                break
            except (OSError, SQLAlchemyError, asyncio.TimeoutError) as e:
                logger.warning(
                    f"[Database] Connection attempt {attempt}/{self.connect_retries} failed: {e}"
                )
                if attempt == self.connect_retries:
                    await engine.dispose()
                    raise StoreConnectionError(
                        f"Database unreachable after {self.connect_retries} attempts"
                    ) from e
                await asyncio.sleep(self.retry_delay)

        if self.create_tables:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            logger.info("[Database] Tables created")

        self._engine = engine
        self._session_maker = async_sessionmaker(engine, expire_on_commit=False)
        logger.info("[Database] Connected")

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Session that commits on success and rolls back on error."""
        async with self.session_maker() as db:
            try:
                yield db
                await db.commit()
            except Exception:
                await db.rollback()
                raise

    async def ping(self) -> bool:
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except (ServiceNotInitializedError, OSError, SQLAlchemyError) as e:
            logger.warning(f"[Database] Ping failed: {e}")
            return False

    async def shutdown(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            logger.info("[Database] Connection pool disposed")
        self._engine = None
        self._session_maker = None
        self._init.reset()
