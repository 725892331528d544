############################################################
#
# aiorch - AI Request Orchestration and Embedding Pipeline
#
# session.py: Async engine and session management
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Async engine and session management."""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Optional, TypeVar

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool

from aiorch.app.core.errors import PersistenceError
from aiorch.app.db.base import Base
from aiorch.app.logging_config import get_logger
from aiorch.app.settings import Settings, get_settings

logger = get_logger(__name__)

T = TypeVar("T")

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker] = None


def create_engine(
    database_url: str,
    echo: bool = False,
    pool_size: int = 20,
    max_overflow: int = 10,
) -> AsyncEngine:
    """Create an async engine; in-memory SQLite shares one connection."""
    if database_url.startswith("sqlite"):
        kwargs = {"echo": echo, "connect_args": {"check_same_thread": False}}
        if ":memory:" in database_url or database_url.rstrip("/").endswith("sqlite+aiosqlite:"):
            kwargs["poolclass"] = StaticPool
        return create_async_engine(database_url, **kwargs)

    return create_async_engine(
        database_url,
        echo=echo,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
        pool_recycle=3600,
    )


def create_engine_from_settings(settings: Settings) -> AsyncEngine:
    return create_engine(
        settings.database_url,
        echo=settings.database_echo,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


def get_session_factory() -> async_sessionmaker:
    """Process-wide session factory built from settings on first use."""
    global _engine, _session_factory
    if _session_factory is None:
        _engine = create_engine_from_settings(get_settings())
        _session_factory = create_session_factory(_engine)
    return _session_factory


@asynccontextmanager
async def get_async_db_context(
    session_factory: Optional[async_sessionmaker] = None,
) -> AsyncIterator[AsyncSession]:
    """Session scope: commit on success, rollback on error."""
    factory = session_factory or get_session_factory()
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_models(engine: AsyncEngine) -> None:
    """Create all tables (tests and local development; production uses Alembic)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_engine() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


async def run_db_operation(
    session_factory: Optional[async_sessionmaker],
    fn: Callable[[AsyncSession], Awaitable[T]],
    operation: str,
    retry_policy=None,
) -> T:
    """Run ``fn`` in its own transaction.

    Driver and SQL errors surface as PersistenceError; with a retry policy the
    whole transaction is retried under it.
    """

    async def attempt() -> T:
        try:
            async with get_async_db_context(session_factory) as db:
                return await fn(db)
        except SQLAlchemyError as e:
            logger.warning("db_operation_error", operation=operation, error=str(e))
            raise PersistenceError(f"{operation} failed: {e}", operation=operation) from e

    if retry_policy is None:
        return await attempt()
    return await retry_policy.run(attempt, retry_on=(PersistenceError,), operation=operation)
