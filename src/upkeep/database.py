"""
Upkeep Database Connection and ORM Setup
"""
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

logger = structlog.get_logger(__name__)

# Create declarative base for ORM models
Base = declarative_base()


def _import_models():
    """Import all ORM models to register them with Base.metadata"""
    from upkeep.models import UpdateAttempt  # noqa: F401

    logger.debug("orm_models_imported")


# Global engine and session maker
engine: Optional[AsyncEngine] = None
async_session_maker = None


def to_async_url(database_url) -> str:
    """Convert a postgres:// or postgresql:// URL to the asyncpg driver form"""
    database_url_str = str(database_url)
    if database_url_str.startswith("postgres://"):
        database_url_str = database_url_str.replace("postgres://", "postgresql+asyncpg://", 1)
    elif database_url_str.startswith("postgresql://"):
        database_url_str = database_url_str.replace("postgresql://", "postgresql+asyncpg://", 1)
    return database_url_str


def to_alembic_url(database_url) -> str:
    """Async URL escaped for alembic.ini style options (configparser interpolates "%")"""
    return to_async_url(database_url).replace("%", "%%")


async def init_database(database_url: str):
    """Initialize database connection"""
    global engine, async_session_maker

    _import_models()

    logger.info("connecting_to_database", url=str(database_url).split("@")[-1])

    engine = create_async_engine(
        to_async_url(database_url),
        echo=False,
        pool_size=5,
        max_overflow=5,
        pool_pre_ping=True,
    )

    async_session_maker = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    # Tables are managed by Alembic (see alembic/versions)
    logger.info("database_initialized")


async def close_database():
    """Close database connections"""
    global engine

    if engine:
        logger.info("closing_database_connections")
        await engine.dispose()
        engine = None


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Get an async database session for FastAPI dependency injection.

    This is an async generator that FastAPI's Depends() will handle automatically.
    Do NOT use @asynccontextmanager decorator here as FastAPI expects a plain async generator.
    """
    if async_session_maker is None:
        raise RuntimeError("Database not initialized. Call init_database() first.")

    async with async_session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


@asynccontextmanager
async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Get an async database session as a context manager for use in application code.

    For FastAPI dependency injection, use get_session() instead.
    """
    if async_session_maker is None:
        raise RuntimeError("Database not initialized. Call init_database() first.")

    async with async_session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
