"""Database engine and connection pool."""

from typing import Any, Dict, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from knowledge_retrieval.config import get_settings
from knowledge_retrieval.utils.logging import get_logger

logger = get_logger("database")

# Global engine instance
_engine: Optional[AsyncEngine] = None


def to_async_url(db_url: str) -> str:
    """Convert a sync PostgreSQL URL to the asyncpg driver."""
    if db_url.startswith("postgresql://"):
        return db_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if db_url.startswith("postgresql+psycopg2://"):
        return db_url.replace("postgresql+psycopg2://", "postgresql+asyncpg://", 1)
    if db_url.startswith("postgres://"):
        return db_url.replace("postgres://", "postgresql+asyncpg://", 1)
    return db_url


def get_database_url() -> str:
    """Get the database URL, converting to async format if needed."""
    return to_async_url(get_settings().database.url)


def create_engine(db_url: Optional[str] = None) -> AsyncEngine:
    """Create and configure the SQLAlchemy async engine."""
    settings = get_settings()
    db_url = to_async_url(db_url) if db_url else get_database_url()

    engine_kwargs: Dict[str, Any] = {"echo": settings.database.echo}
    if not db_url.startswith("sqlite"):
        # asyncpg uses AsyncAdaptedQueuePool by default
        engine_kwargs.update(
            {
                "pool_size": settings.database.pool_size,
                "max_overflow": settings.database.max_overflow,
                "pool_timeout": settings.database.pool_timeout,
                "pool_recycle": settings.database.pool_recycle,
                "pool_pre_ping": True,
            }
        )

    engine = create_async_engine(db_url, **engine_kwargs)
    logger.info(
        f"Database engine created: pool_size={engine_kwargs.get('pool_size', 'default')}, "
        f"max_overflow={engine_kwargs.get('max_overflow', 'default')}"
    )
    return engine


def get_engine() -> AsyncEngine:
    """Get or create the global database engine."""
    global _engine
    if _engine is None:
        _engine = create_engine()
    return _engine


async def close_engine() -> None:
    """Close the database engine and dispose of all connections."""
    global _engine
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        logger.info("Database engine closed")


async def check_connection(engine: Optional[AsyncEngine] = None) -> bool:
    """Check if database connection is available."""
    try:
        engine = engine or get_engine()
        async with engine.connect() as conn:
            result = await conn.execute(text("SELECT 1"))
            row = result.fetchone()
            return row is not None and row[0] == 1
    except Exception as e:
        logger.error(f"Database connection check failed: {e}")
        return False
