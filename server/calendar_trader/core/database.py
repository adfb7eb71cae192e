"""
Database configuration and session management using SQLAlchemy
"""
from typing import Optional

from sqlalchemy import MetaData, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    create_async_engine,
    async_sessionmaker,
    AsyncEngine
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool

from calendar_trader.core.config import settings
from calendar_trader.core.logging import get_logger

logger = get_logger(__name__)


# Naming convention for database constraints
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s"
}

metadata = MetaData(naming_convention=NAMING_CONVENTION)


class Base(DeclarativeBase):
    """Base class for all database models"""
    metadata = metadata


def create_engine_for(url: str, testing: bool = False) -> AsyncEngine:
    """Create an async engine; sqlite URLs skip the pool options"""
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=settings.database.echo, poolclass=NullPool)
    if testing:
        return create_async_engine(url, echo=settings.database.echo, poolclass=NullPool)
    return create_async_engine(
        url,
        echo=settings.database.echo,
        pool_size=settings.database.pool_size,
        max_overflow=settings.database.max_overflow,
        pool_timeout=settings.database.pool_timeout,
        pool_recycle=settings.database.pool_recycle,
        pool_pre_ping=True,
    )


def create_session_maker(bind: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


# Create async engine only if database is enabled
engine: Optional[AsyncEngine] = None
async_session_maker: Optional[async_sessionmaker] = None

if settings.enable_database and settings.async_database_url:
    engine = create_engine_for(settings.async_database_url, testing=settings.is_testing)
    async_session_maker = create_session_maker(engine)


class DatabaseManager:
    """Manager class for database operations"""

    @staticmethod
    async def create_all(bind: Optional[AsyncEngine] = None):
        """Create all tables"""
        target = bind or engine
        if not target:
            logger.warning("Database is disabled. Skipping table creation.")
            return

        # Register the ORM tables on the metadata
        from calendar_trader import models  # noqa: F401

        async with target.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
            logger.info("Database tables created successfully")

    @staticmethod
    async def check_connection() -> bool:
        """Check if database connection is healthy"""
        if not settings.enable_database:
            logger.info("Database is disabled")
            return False

        if not engine:
            logger.error("Database engine is not initialized")
            return False

        try:
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except (SQLAlchemyError, OSError) as e:
            logger.error(f"Database connection check failed: {e}")
            return False

    @staticmethod
    async def close():
        """Close database connections"""
        if engine:
            await engine.dispose()
            logger.info("Database connections closed")
