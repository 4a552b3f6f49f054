"""SQLAlchemy async session management."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from knowledge_retrieval.database.connection import get_engine
from knowledge_retrieval.utils.logging import get_logger

logger = get_logger("database")

# Global session factory
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create the session factory."""
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
        logger.info("Session factory created")
    return _session_factory


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding a session that commits on success."""
    session_factory = get_session_factory()
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except SQLAlchemyError as e:
            await session.rollback()
            logger.error(f"Database session error: {e}")
            raise
        except Exception as e:
            await session.rollback()
            logger.error(f"Unexpected error in database session: {e}")
            raise


@asynccontextmanager
async def session_scope(
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> AsyncGenerator[AsyncSession, None]:
    """
    Transactional scope: commit on success, roll back on any error.

    Usage:
        async with session_scope(factory) as session:
            session.add(item)
    """
    session_factory = session_factory or get_session_factory()
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except SQLAlchemyError as e:
            await session.rollback()
            logger.error(f"Database session error: {e}")
            raise
        except Exception:
            await session.rollback()
            raise


async def init_db(create_tables: bool = False) -> None:
    """Verify connectivity and optionally create tables."""
    from knowledge_retrieval.database.connection import check_connection
    from knowledge_retrieval.database.models import Base

    is_connected = await check_connection()
    if not is_connected:
        logger.warning("Database connection check failed")
        return

    if create_tables:
        async with get_engine().begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables ensured")
    logger.info("Database connection initialized successfully")


async def close_db() -> None:
    """Close database connections."""
    global _session_factory
    from knowledge_retrieval.database.connection import close_engine

    try:
        await close_engine()
        _session_factory = None
        logger.info("Database connections closed")
    except Exception as e:
        logger.error(f"Error closing database connections: {e}")
