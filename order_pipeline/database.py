"""
Database Connection Module
Handles the permanent store connection using SQLAlchemy async engine.

The same database holds the permanent order schema and the durable
migration queue table.
"""

import logging
from functools import lru_cache
from typing import AsyncIterator, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from order_pipeline.core.config import get_settings

logger = logging.getLogger(__name__)


# Base class for all our models
class Base(DeclarativeBase):
    pass


def create_engine(database_url: Optional[str] = None, echo: Optional[bool] = None) -> AsyncEngine:
    """
    Create an async engine.

    Connection pool sizing only applies to server databases; SQLite
    (used by the test-suite) keeps SQLAlchemy's defaults.
    """
    settings = get_settings()
    url = database_url or settings.database_url
    kwargs = {
        "echo": settings.database_echo if echo is None else echo,
        "pool_pre_ping": True,
    }
    if not url.startswith("sqlite"):
        kwargs["pool_size"] = 5  # Connection pool size
        kwargs["max_overflow"] = 10  # Extra connections when pool is full
    return create_async_engine(url, **kwargs)


def create_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory - creates new database sessions."""
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False  # Objects remain accessible after commit
    )


@lru_cache()
def get_engine() -> AsyncEngine:
    return create_engine()


@lru_cache()
def get_session_maker() -> async_sessionmaker[AsyncSession]:
    return create_session_maker(get_engine())


async def get_db() -> AsyncIterator[AsyncSession]:
    """
    Dependency injection for FastAPI routes.
    Yields a database session and ensures cleanup.
    """
    async with get_session_maker()() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db(engine: Optional[AsyncEngine] = None) -> None:
    """
    Create all tables in database.
    Called once at application startup.
    """
    # Register models on Base.metadata
    from order_pipeline import models  # noqa: F401

    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("✅ Database tables created successfully!")
