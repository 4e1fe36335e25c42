"""
Database Connection and Session Management

Provides the async SQLAlchemy 2.0 engine and session factory. Stores receive
the session factory through their constructors; nothing below reaches into
request state.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from agenda.config import settings
from agenda.models.database import Base


def build_engine(url: Optional[str] = None, **kwargs) -> AsyncEngine:
    """Create an async engine; defaults match production Postgres usage."""
    options = {"echo": settings.debug, "poolclass": NullPool}
    options.update(kwargs)
    return create_async_engine(url or settings.database_url, **options)


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


# Create async engine
engine = build_engine()

# Create session factory
async_session_factory = build_session_factory(engine)


@asynccontextmanager
async def get_db_context(
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> AsyncGenerator[AsyncSession, None]:
    """
    Context manager for a unit of work.

    Commits on success, rolls back on exception, always closes.

    Usage:
        async with get_db_context(factory) as db:
            db.add(appointment)
    """
    session = (session_factory or async_session_factory)()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


async def init_db(bind: Optional[AsyncEngine] = None) -> None:
    """
    Create all database tables.

    WARNING: This is for development and tests only. Production schemas are
    managed with migrations.
    """
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db(bind: Optional[AsyncEngine] = None) -> None:
    """Dispose of the engine's connections during shutdown."""
    await (bind or engine).dispose()


async def check_db_health(
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> bool:
    """
    Check database connectivity for health checks.

    Returns:
        bool: True if database is accessible, False otherwise
    """
    try:
        async with get_db_context(session_factory) as db:
            await db.execute(text("SELECT 1"))
        return True
    except Exception:
        return False
