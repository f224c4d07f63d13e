"""
Database Configuration
======================

SQLAlchemy database setup with async support.
Supports both SQLite (dev) and PostgreSQL (production).
"""

import logging
from typing import AsyncIterator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase

from credits_api.config import get_settings

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


# Engine and session factory (initialized lazily)
_engine = None
_async_session_factory = None


def _mask_url(url: str) -> str:
    """Mask password in URL for safe logging."""
    if not url:
        return "<empty>"
    if "://" in url and "@" in url:
        pre, rest = url.split("://", 1)
        credentials, after_at = rest.rsplit("@", 1)
        user = credentials.split(":")[0]
        return f"{pre}://{user}:****@{after_at}"
    return url[:30] + "..." if len(url) > 30 else url


def get_database_url() -> str:
    """
    Get the database URL, converting to async driver if needed.

    Handles:
    - sqlite:///         -> sqlite+aiosqlite:///
    - postgresql://      -> postgresql+asyncpg://
    - postgres://        -> postgresql+asyncpg://
    """
    url = get_settings().database_url.strip()

    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]

    if url.startswith("sqlite:///"):
        url = url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
    elif url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
    elif not url.startswith(("sqlite+aiosqlite://", "postgresql+asyncpg://")):
        logger.error(f"Unrecognized DATABASE_URL: {_mask_url(url)}")
        raise ValueError(f"Invalid DATABASE_URL: {_mask_url(url)}")

    logger.info(f"Database URL: {_mask_url(url)}")
    return url


def _use_immediate_transactions(engine: AsyncEngine) -> None:
    """
    Make every SQLite transaction take the write lock up front.

    pysqlite's implicit BEGIN is disabled and replaced with BEGIN IMMEDIATE, so
    concurrent writers queue on the busy timeout instead of failing a
    read-to-write lock upgrade. This also makes SAVEPOINT behave.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_engine_for_url(url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine with the pool settings used for ``url``."""
    if "sqlite" in url:
        engine = create_async_engine(
            url,
            echo=echo,
            connect_args={
                "check_same_thread": False,
                "timeout": 30,
            },
        )
        _use_immediate_transactions(engine)
        logger.info("Created SQLite async engine")
        return engine

    engine = create_async_engine(
        url,
        echo=echo,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
        pool_recycle=300,
    )
    logger.info("Created PostgreSQL async engine (pool_size=5, max_overflow=10)")
    return engine


def get_engine() -> AsyncEngine:
    """Get or create the database engine."""
    global _engine

    if _engine is None:
        _engine = create_engine_for_url(get_database_url(), echo=get_settings().api_debug)

    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create the async session factory."""
    global _async_session_factory

    if _async_session_factory is None:
        engine = get_engine()
        _async_session_factory = async_sessionmaker(
            engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    return _async_session_factory


async def get_sessionmaker() -> async_sessionmaker[AsyncSession]:
    """
    FastAPI dependency for jobs that manage their own sessions.

    The monthly grant job opens one session per user, so it needs the
    factory rather than a request-scoped session.
    """
    return get_session_factory()


async def get_db() -> AsyncIterator[AsyncSession]:
    """
    FastAPI dependency for database sessions.

    Usage:
        @app.get("/items")
        async def get_items(db: AsyncSession = Depends(get_db)):
            ...
    """
    session_factory = get_session_factory()
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db():
    """Initialize database tables."""
    engine = get_engine()

    async with engine.begin() as conn:
        from credits_api.models import db_models  # noqa
        await conn.run_sync(Base.metadata.create_all)

    logger.info("Database tables initialized successfully")


async def close_db():
    """Close database connections."""
    global _engine, _async_session_factory

    if _engine:
        await _engine.dispose()
        _engine = None
        _async_session_factory = None
        logger.info("Database connections closed")
