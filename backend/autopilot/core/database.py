"""
Autopilot - Database Connection
===============================

Async SQLAlchemy setup. The engine and session factory are module level;
the cycle engine receives the session factory explicitly so tests can
swap in an in-memory database.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from autopilot.core.config import settings


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


# ==========================================================================
# Engine Setup
# ==========================================================================

def create_engine(url: str | None = None) -> AsyncEngine:
    """Create async database engine with connection pooling."""
    url = url or settings.DATABASE_URL
    # SQLite doesn't support pool_size/max_overflow
    if "sqlite" in url:
        return create_async_engine(
            url,
            echo=settings.DATABASE_ECHO,
            connect_args={"check_same_thread": False},
        )
    return create_async_engine(
        url,
        pool_size=settings.DATABASE_POOL_SIZE,
        max_overflow=settings.DATABASE_MAX_OVERFLOW,
        echo=settings.DATABASE_ECHO,
        pool_pre_ping=True,
    )


engine = create_engine()


# ==========================================================================
# Session Factory
# ==========================================================================

def create_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


AsyncSessionLocal = create_session_factory(engine)


# ==========================================================================
# Session Dependencies
# ==========================================================================

async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency that provides a database session.

    Usage:
        @router.get("/items")
        async def get_items(db: AsyncSession = Depends(get_db)):
            ...
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


@asynccontextmanager
async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Context manager for database sessions.

    Usage:
        async with get_db_session() as session:
            ...
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


# ==========================================================================
# Lifecycle
# ==========================================================================

async def init_db(bind: AsyncEngine | None = None) -> None:
    """Create tables if they do not exist."""
    bind = bind or engine
    async with bind.begin() as conn:
        # Import all models to register them
        from autopilot.core import models  # noqa: F401
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Close database connections."""
    await engine.dispose()
