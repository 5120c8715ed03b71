"""SQLAlchemy async session setup for the MII engine.

Provides:
- Base: DeclarativeBase for all ORM models
- build_engine: async engine for a URL (also used by workers and tests)
- engine / async_session_factory: process-wide engine and session maker
- get_async_session: FastAPI dependency with Unit-of-Work commit/rollback

Engine runs open many short sessions concurrently (one per fetch and per
published subject), so the engine itself never shares a session across
tasks.
"""

from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from mii_engine.config.settings import get_settings

# Seconds a SQLite writer waits on a locked database.
SQLITE_BUSY_TIMEOUT = 30


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy ORM models."""


def build_engine(url: str) -> AsyncEngine:
    connect_args = {"timeout": SQLITE_BUSY_TIMEOUT} if url.startswith("sqlite") else {}
    return create_async_engine(url, pool_pre_ping=True, connect_args=connect_args)


engine = build_engine(get_settings().DATABASE_URL)

async_session_factory = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session with Unit-of-Work semantics.

    Repositories only call add()/flush(). Commit happens once at the end of
    a successful request; any exception rolls back, including the staleness
    marks written alongside a source record change.
    """
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
