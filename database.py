"""
Database Configuration and Session Management
============================================

Async engine and session factory for the authoritative order store.
Engines are built lazily so that tests and tools can bind their own URL.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker
from config import Config
from models import Base

logger = logging.getLogger(__name__)

_async_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker] = None


def to_async_url(url: str) -> str:
    """Convert a plain postgres URL into its asyncpg form"""
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
    # asyncpg uses 'ssl' instead of 'sslmode'
    for mode in ("require", "prefer", "disable"):
        url = url.replace(f"sslmode={mode}", f"ssl={mode}")
    return url


def create_engine_for_url(url: str, **kwargs) -> AsyncEngine:
    """Create an async engine; pooling options only apply to server databases"""
    async_url = to_async_url(url)
    if async_url.startswith("postgresql+asyncpg://"):
        kwargs.setdefault("pool_size", Config.DATABASE_POOL_SIZE)
        kwargs.setdefault("max_overflow", Config.DATABASE_MAX_OVERFLOW)
        kwargs.setdefault("pool_pre_ping", True)
        kwargs.setdefault("pool_recycle", 3600)
    return create_async_engine(async_url, echo=False, **kwargs)


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        autoflush=False,
        expire_on_commit=False  # Objects stay readable after commit in background jobs
    )


def get_session_factory() -> async_sessionmaker:
    """Process-wide session factory bound to Config.DATABASE_URL"""
    global _async_engine, _session_factory
    if _session_factory is None:
        if not Config.DATABASE_URL:
            raise ValueError("DATABASE_URL environment variable is required")
        _async_engine = create_engine_for_url(Config.DATABASE_URL)
        _session_factory = make_session_factory(_async_engine)
        logger.info("✅ Async database engine initialized")
    return _session_factory


@asynccontextmanager
async def async_managed_session(session_factory: Optional[async_sessionmaker] = None):
    """Async context manager for database sessions (commit on success, rollback on error)"""
    factory = session_factory or get_session_factory()
    session = factory()
    try:
        yield session
        await session.commit()
    except Exception as e:
        logger.error(f"Database session error: {e}")
        await session.rollback()
        raise
    finally:
        await session.close()


async def create_tables(engine: AsyncEngine):
    """Create all tables (used by tests and first-run bootstrap)"""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("✅ Database tables ensured")


async def test_connection(engine: Optional[AsyncEngine] = None) -> bool:
    """Test database connection"""
    if engine is None:
        get_session_factory()
        engine = _async_engine
    try:
        async with engine.connect() as connection:
            await connection.execute(text("SELECT 1"))
        logger.info("✅ Database connection test successful")
        return True
    except Exception as e:
        logger.error(f"❌ Database connection test failed: {e}")
        return False


async def dispose_engine():
    """Dispose the process-wide engine during shutdown"""
    global _async_engine, _session_factory
    if _async_engine is not None:
        await _async_engine.dispose()
        logger.info("✅ Database connections cleaned up")
    _async_engine = None
    _session_factory = None
