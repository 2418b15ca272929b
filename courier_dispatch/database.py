"""
Database Connection Module
Handles the SQL record store connection using the SQLAlchemy async engine,
plus a synchronous session factory for the Celery worker and scripts.
"""

from functools import lru_cache

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from courier_dispatch.core.config import get_settings

settings = get_settings()


def build_engine(url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine; SQLite does not take pool sizing options."""
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=echo)
    return create_async_engine(
        url,
        echo=echo,
        pool_size=5,  # Connection pool size
        max_overflow=10,  # Extra connections when pool is full
        pool_pre_ping=True,
    )


def build_session_maker(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory - creates new database sessions."""
    return async_sessionmaker(
        bind=bind,
        class_=AsyncSession,
        expire_on_commit=False  # Objects remain accessible after commit
    )


engine = build_engine(settings.database_url, echo=settings.database_echo)
async_session_maker = build_session_maker(engine)


# Base class for all our models
class Base(DeclarativeBase):
    pass


async def init_db(bind: AsyncEngine = engine) -> None:
    """
    Create all tables in database.
    Called once at application startup when the SQL store is active.
    """
    # Register the mapped tables on Base.metadata
    import courier_dispatch.models  # noqa: F401

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@lru_cache()
def get_sync_engine() -> Engine:
    """Synchronous engine for the Celery worker and maintenance scripts."""
    return create_engine(settings.sync_database_url, pool_pre_ping=True)


def get_sync_session_maker() -> sessionmaker[Session]:
    """Synchronous session factory bound to get_sync_engine()."""
    return sessionmaker(bind=get_sync_engine(), expire_on_commit=False)
