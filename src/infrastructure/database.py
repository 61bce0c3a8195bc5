"""
Async SQLAlchemy engine and session factory backing the tree store.

Uses ``asyncpg`` as the PostgreSQL driver for non-blocking I/O.  The store
only ever runs short transactions (a multi-path update or one CAS statement),
so a modest pool is enough for the mobile, hardware and admin clients.
"""

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from src.config import settings

engine = create_async_engine(
    settings.database_url,
    echo=False,
    pool_size=20,
    max_overflow=10,
)

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


def session_factory_for(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory for an alternative engine (tests, seed scripts)."""
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


class Base(DeclarativeBase):
    """Shared declarative base for all ORM models."""
