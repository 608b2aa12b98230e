"""Database configuration, session management and the unit-of-work helper."""

import logging
import re
import ssl
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool

from billing_api.config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()


def _is_sqlite(url: str) -> bool:
    """Check if database URL is SQLite."""
    return url.startswith("sqlite")


def _is_pooler_url(url: str) -> bool:
    """Check if database URL uses a connection pooler (e.g., PgBouncer)."""
    return "-pooler" in url or "pgbouncer" in url.lower()


def _needs_ssl(url: str) -> bool:
    """Check if URL requires SSL (has sslmode or ssl parameter)."""
    return "sslmode=" in url or "ssl=" in url


def _strip_ssl_params(url: str) -> str:
    """Remove sslmode and ssl parameters from URL.

    The asyncpg dialect doesn't understand SSL params in the URL, so SSL
    is passed via connect_args instead.
    """
    url = re.sub(r'[?&]sslmode=[^&]*', '', url)
    url = re.sub(r'[?&]ssl=[^&]*', '', url)
    url = re.sub(r'\?&', '?', url)
    url = re.sub(r'\?$', '', url)
    return url


def create_engine_with_config(database_url: str | None = None):
    """Create async engine with appropriate config for database type."""
    original_url = database_url or settings.database_url

    if _is_sqlite(original_url):
        return create_async_engine(
            original_url,
            echo=settings.db_echo or settings.debug,
            future=True,
            poolclass=NullPool,
        )

    connect_args = {}
    if "asyncpg" in original_url and _needs_ssl(original_url):
        database_url = _strip_ssl_params(original_url)
        connect_args["ssl"] = ssl.create_default_context()
    else:
        database_url = original_url

    if _is_pooler_url(database_url):
        # PgBouncer cannot hold prepared statements across transactions
        connect_args["prepared_statement_cache_size"] = 0

    return create_async_engine(
        database_url,
        echo=settings.db_echo or settings.debug,
        future=True,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_timeout=settings.db_pool_timeout,
        pool_recycle=settings.db_pool_recycle,
        pool_pre_ping=True,
        connect_args=connect_args,
    )


engine = create_engine_with_config()

async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


async def get_db() -> AsyncIterator[AsyncSession]:
    """Dependency for getting database sessions."""
    async with async_session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


@asynccontextmanager
async def unit_of_work(session: AsyncSession) -> AsyncIterator[AsyncSession]:
    """Group writes so they commit together or not at all.

    Everything added or changed on ``session`` inside the block is committed
    when the block exits cleanly. Any exception rolls the whole set back and
    is re-raised.
    """
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise


async def init_db() -> None:
    """Initialize database tables."""
    # Import models to register them with SQLAlchemy
    from billing_api.models import User, PaymentMethod, BillingEvent, Subscription  # noqa: F401

    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables initialized successfully")
    except Exception as e:
        # Keep serving health checks even if the database is not reachable yet
        logger.error(f"Failed to initialize database tables: {e}", exc_info=True)
        logger.warning("App will continue but database operations may fail until connection is established")


async def ping_db() -> bool:
    """Run a trivial query; False when the database cannot be reached."""
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        logger.warning(f"Database ping failed: {e}")
        return False
    return True


async def close_db() -> None:
    """Close database connections."""
    await engine.dispose()


def get_database_type() -> str:
    """Return the database type for health checks."""
    if "postgresql" in settings.database_url:
        return "postgresql"
    elif "sqlite" in settings.database_url:
        return "sqlite"
    return "unknown"
