"""
Database connection and session management.

Uses SQLAlchemy async with connection pooling.

Connection Pool Strategy:
- Direct Postgres / session pooler (port 5432): local connection pool keeps connections open
- Transaction pooler (port 6543): NullPool (external pooler manages connections)
- Sessions are lightweight wrappers that checkout connections from the pool
- When a session closes, the connection returns to the pool for reuse
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional
from urllib.parse import urlparse

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, AsyncEngine, async_sessionmaker
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool

from config import settings

logger = logging.getLogger(__name__)

Base = declarative_base()

# Ensure URL uses asyncpg driver
_db_url = settings.DATABASE_URL
if _db_url and "+asyncpg" not in _db_url:
    _db_url = _db_url.replace("postgresql://", "postgresql+asyncpg://")

# Detect pooler mode from port:
# - Port 6543 = transaction mode (must use NullPool)
# - Port 5432 = session mode (local pooling is safe)
_parsed_url = urlparse(_db_url) if _db_url else None
_db_port: int = _parsed_url.port if _parsed_url and _parsed_url.port else 5432
_use_null_pool: bool = _db_port == 6543

# Global singletons - created once per event loop lifetime
_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def get_engine() -> AsyncEngine:
    """Get the database engine (singleton - created once, reused)."""
    global _engine
    if _engine is None:
        # Disable prepared statement cache for pgbouncer compatibility
        connect_args: dict[str, int] = {
            "statement_cache_size": 0,
            "prepared_statement_cache_size": 0,
        }

        if _use_null_pool:
            _engine = create_async_engine(
                _db_url,
                echo=False,
                future=True,
                poolclass=NullPool,
                connect_args=connect_args,
            )
            logger.info("Database engine created with NullPool (transaction mode, port %d)", _db_port)
        else:
            _engine = create_async_engine(
                _db_url,
                echo=False,
                future=True,
                pool_size=5,        # Base connections kept warm
                max_overflow=10,    # Up to 15 total under burst load
                pool_recycle=300,   # Recycle connections every 5 min
                pool_pre_ping=True, # Verify connection is alive before checkout
                connect_args=connect_args,
            )
            logger.info(
                "Database engine created with connection pool (session mode, port %d, "
                "pool_size=5, max_overflow=10)",
                _db_port,
            )
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get the async session factory (singleton - created once, reused)."""
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,  # Don't auto-flush, we control when to commit
        )
        logger.info("Session factory created (will reuse pooled connections)")
    return _session_factory


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Yield an async database session.

    Usage:
        async with get_session() as session:
            result = await session.execute(query)
            await session.commit()  # Explicit commit if needed

    The session is automatically closed when the context exits.
    Any uncommitted changes are rolled back on error.
    """
    factory = get_session_factory()
    session: AsyncSession = factory()
    try:
        yield session
    except Exception:
        await session.rollback()
        raise
    finally:
        # This returns the connection to the pool, doesn't close it
        await session.close()


def dispose_engine() -> None:
    """
    Drop the engine without awaiting pool shutdown.

    Celery tasks run each coroutine on a fresh event loop; pooled asyncpg
    connections are bound to the loop that opened them, so they must not be
    reused across tasks.
    """
    global _engine, _session_factory
    if _engine is not None:
        _engine.sync_engine.dispose(close=False)
    _engine = None
    _session_factory = None


async def close_db() -> None:
    """
    Close the database engine and release all pooled connections.
    Call this on application shutdown.
    """
    global _engine, _session_factory
    if _engine is not None:
        pool_status = get_pool_status()
        logger.info(
            "Closing database pool: %d checked_in, %d checked_out",
            pool_status["checked_in"],
            pool_status["checked_out"]
        )
        await _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("Database engine disposed, all connections closed")


def get_pool_status() -> dict[str, int | str]:
    """Get current connection pool status for monitoring."""
    if _engine is None:
        return {"pool_type": "not_initialized", "pool_size": 0, "checked_in": 0, "checked_out": 0, "overflow": 0}

    pool = _engine.pool
    if isinstance(pool, NullPool):
        return {"pool_type": "NullPool", "pool_size": 0, "checked_in": 0, "checked_out": 0, "overflow": 0}

    return {
        "pool_type": type(pool).__name__,
        "pool_size": pool.size(),
        "checked_in": pool.checkedin(),
        "checked_out": pool.checkedout(),
        "overflow": pool.overflow(),
    }
