"""
Database Connection and Session Management

SQLAlchemy async engine and session factory. PostgreSQL (asyncpg) is the
production backend; SQLite (aiosqlite) is used for local runs and tests.
"""
import logging

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from missing_match.config import DB_MAX_OVERFLOW, DB_POOL_SIZE

logger = logging.getLogger(__name__)

# Base class for ORM models
Base = declarative_base()


def create_engine(database_url: str) -> AsyncEngine:
    """Create the async engine; pool sizing only applies to server databases."""
    options = {"echo": False}  # Set to True for SQL debugging
    if not database_url.startswith("sqlite"):
        options.update(
            pool_size=DB_POOL_SIZE,
            max_overflow=DB_MAX_OVERFLOW,
            pool_pre_ping=True,  # Enable connection health checks
        )
    return create_async_engine(database_url, **options)


def create_session_maker(engine: AsyncEngine) -> async_sessionmaker:
    """Session factory bound to an engine."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


async def init_db(engine: AsyncEngine):
    """Verify connectivity and create missing tables."""
    # Register models on Base.metadata
    from missing_match import models  # noqa: F401

    try:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database connection established successfully")
    except Exception as e:
        logger.error(f"Failed to connect to database: {e}")
        raise


async def close_db(engine: AsyncEngine):
    """Close database connection pool."""
    await engine.dispose()
    logger.info("Database connection pool closed")
