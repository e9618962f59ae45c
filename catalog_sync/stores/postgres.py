"""PostgreSQL store with async SQLAlchemy.

Handles:
- Database session management
- Connection pooling
- Per-page transactional units for the sync pipeline
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from catalog_sync.settings import get_settings


class Base(DeclarativeBase):
    """Base class for SQLAlchemy models."""

    pass


# Engine and session factory (initialized on startup)
_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


async def init_db(database_url: str | None = None) -> None:
    """Initialize database connection pool.

    Args:
        database_url: Optional override (tests point this at a scratch database).
    """
    global _engine, _session_factory

    settings = get_settings()
    url = database_url or settings.async_database_url
    engine_kwargs: dict[str, object] = {"echo": settings.debug, "pool_pre_ping": True}
    if url.startswith("postgresql"):
        engine_kwargs.update(
            connect_args=settings.asyncpg_connect_args,
            pool_size=5,
            max_overflow=10,
        )

    _engine = create_async_engine(url, **engine_kwargs)
    _session_factory = async_sessionmaker(
        _engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def ping_db() -> None:
    """Round-trip a trivial query so startup fails fast on a bad DATABASE_URL."""
    async with get_session() as session:
        await session.execute(text("SELECT 1"))


async def close_db() -> None:
    """Close database connection pool."""
    global _engine, _session_factory
    if _engine:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get the session factory (services hold on to it for the length of a run)."""
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _session_factory


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Get database session context manager.

    Usage:
        async with get_session() as session:
            result = await session.execute(query)
    """
    async with session_scope(get_session_factory()) as session:
        yield session


@asynccontextmanager
async def session_scope(
    factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """One transaction: commit on success, roll back and re-raise on error."""
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def create_tables() -> None:
    """Create all tables (for development/testing only)."""
    if _engine is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")

    # Register every mapped table on Base.metadata
    import catalog_sync.models  # noqa: F401

    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def drop_tables() -> None:
    """Drop all tables (for testing only)."""
    if _engine is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")

    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
