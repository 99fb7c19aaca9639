"""Async SQLAlchemy engine, session factory and FastAPI session dependency."""

from collections.abc import AsyncGenerator
from functools import lru_cache

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from trustflow.core.config import settings
from trustflow.utils.logging import get_logger

LOGGER = get_logger(__name__)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


@lru_cache(maxsize=1)
def get_engine() -> AsyncEngine:
    """Create the async engine on first use."""
    return create_async_engine(
        settings.database.url,
        pool_size=settings.database.pool_size,
        max_overflow=settings.database.max_overflow,
        echo=settings.database.echo,
        pool_pre_ping=True,
    )


@lru_cache(maxsize=1)
def get_session_maker() -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(get_engine(), class_=AsyncSession, expire_on_commit=False)


async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency for getting async database session.

    Yields:
        AsyncSession: Database session
    """
    async with get_session_maker()() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_database(create_tables: bool = True) -> None:
    """Check connectivity and create missing tables."""
    # Model modules must be imported so their tables are registered on Base.
    from trustflow.database import models  # noqa: F401

    engine = get_engine()
    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))
    LOGGER.info("Database connection successful")

    if create_tables:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        LOGGER.info("Database tables created/verified successfully")


async def close_database() -> None:
    """Dispose of the engine's connection pool."""
    if get_engine.cache_info().currsize:
        await get_engine().dispose()
        LOGGER.info("Database connection closed")
