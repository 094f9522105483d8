"""
Database Infrastructure
=======================

Async SQLAlchemy engine for the 'database' configuration backend.

The engine lives in a DatabaseManager owned by the application lifespan;
module-level helpers delegate to the process-wide instance so repositories
can take `get_session_context` as their default session factory.
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from ticketflow.config import Settings
from ticketflow.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


class Base(DeclarativeBase):
    """Declarative base for the configuration tables."""
    pass


def engine_options(settings: Settings) -> Dict[str, Any]:
    """Keyword arguments for create_async_engine; sqlite has no pool sizing."""
    options: Dict[str, Any] = {"echo": settings.debug, "pool_pre_ping": True}
    if not settings.database_url.startswith("sqlite"):
        options["pool_size"] = settings.db_pool_size
        options["max_overflow"] = settings.db_max_overflow
    return options


class DatabaseManager:
    """Holds one engine and its session maker between start and dispose."""

    def __init__(self):
        self._engine: Optional[AsyncEngine] = None
        self._sessions: Optional[async_sessionmaker[AsyncSession]] = None

    @property
    def is_initialized(self) -> bool:
        return self._engine is not None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError("Database engine not initialized. Call init_database() first.")
        return self._engine

    def start(self, settings: Settings) -> AsyncEngine:
        # asyncpg takes ssl= where libpq URLs carry sslmode=
        url = settings.database_url.replace("sslmode=", "ssl=")
        self._engine = create_async_engine(url, **engine_options(settings))
        self._sessions = async_sessionmaker(
            bind=self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
        logger.info("Database engine created", extra={"dialect": self._engine.dialect.name})
        return self._engine

    async def dispose(self) -> None:
        if self._engine is None:
            return
        await self._engine.dispose()
        self._engine = None
        self._sessions = None
        logger.info("Database engine disposed")

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Session that commits when the block exits cleanly, rolls back otherwise."""
        if self._sessions is None:
            raise RuntimeError("Database not initialized. Call init_database() first.")

        async with self._sessions() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def create_tables(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)


database = DatabaseManager()


def init_database(settings: Settings) -> AsyncEngine:
    return database.start(settings)


async def close_database() -> None:
    await database.dispose()


def get_session_context():
    """
    Session context for repositories that manage their own unit of work.

    Usage:
        async with get_session_context() as session:
            result = await session.execute(select(ConfigModel))
    """
    return database.session()


async def create_tables() -> None:
    """Create the configuration tables. Deployments without migrations rely on this at startup."""
    await database.create_tables()
