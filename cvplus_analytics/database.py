"""
database.py — SQLAlchemy 2.0 async engine and session factory.

This module owns the database connection infrastructure for the ingestion side.
Nothing else creates engines or sessions directly, except tests which build a
throwaway SQLite engine through make_engine().

Usage in routes (via dependency injection):
    from cvplus_analytics.database import get_db
    async def my_route(db: AsyncSession = Depends(get_db)): ...

Usage in background work (the realtime counter, retention jobs):
    async with AsyncSessionLocal() as session: ...
"""
from collections.abc import AsyncGenerator

from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from cvplus_analytics.config import settings

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


# ---------------------------------------------------------------------------
# Declarative base — all ORM models inherit from this
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """
    SQLAlchemy declarative base.
    Defined here (not in models/) to prevent circular imports in alembic/env.py.
    """
    pass


def make_engine(url: str, echo: bool = False) -> AsyncEngine:
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=echo)
    return create_async_engine(
        url,
        echo=echo,            # SQL statements only; bound values are not logged
        pool_size=5,
        max_overflow=10,      # ingestion bursts
        pool_pre_ping=True,   # discard stale connections before use
    )


# ---------------------------------------------------------------------------
# Async engine — one per application lifetime
# ---------------------------------------------------------------------------
async_engine = make_engine(settings.database_url, echo=settings.debug)

# ---------------------------------------------------------------------------
# Session factory — produces AsyncSession instances
# ---------------------------------------------------------------------------
AsyncSessionLocal = async_sessionmaker(
    bind=async_engine,
    class_=AsyncSession,
    expire_on_commit=False,   # objects stay usable after commit without re-querying
)


# ---------------------------------------------------------------------------
# FastAPI dependency — yields session, commits or rolls back
# ---------------------------------------------------------------------------
async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency that yields an AsyncSession per request.

    Commits on success, rolls back on exception, always closes the session.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
