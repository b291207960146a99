"""
Database connection and session management

- PostgreSQL: asyncpg pool
- SQLite: aiosqlite with StaticPool and foreign key support
"""

import logging
from datetime import datetime, timezone
from typing import AsyncGenerator

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool

from invoice_processing.core.config import settings

logger = logging.getLogger(__name__)


def _is_sqlite() -> bool:
    """Check if using SQLite backend."""
    return settings.DATABASE_URL.startswith("sqlite")


@event.listens_for(Engine, "connect")
def _set_sqlite_pragma(dbapi_connection, connection_record):
    """Enable foreign key enforcement for SQLite."""
    conn_type = str(type(dbapi_connection))
    if "sqlite" in conn_type.lower():
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def _create_postgresql_engine():
    """Create the PostgreSQL async engine."""
    url = settings.DATABASE_URL
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)

    async_engine = create_async_engine(
        url,
        echo=settings.APP_DEBUG,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
        pool_recycle=3600,
        pool_timeout=30,
        connect_args={
            "timeout": 5,
            "server_settings": {"application_name": "invoice_processing"},
        },
    )
    logger.info("Database: PostgreSQL")
    return async_engine


def _create_sqlite_engine():
    """Create the SQLite async engine."""
    db_url = settings.DATABASE_URL
    if db_url.startswith("sqlite:///"):
        db_path = db_url[10:]
    elif db_url.startswith("sqlite+aiosqlite:///"):
        db_path = db_url[20:]
    else:
        db_path = "./invoice_processing.db"

    async_engine = create_async_engine(
        f"sqlite+aiosqlite:///{db_path}",
        echo=settings.APP_DEBUG,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    logger.info("Database: SQLite (%s)", db_path)
    return async_engine


engine = _create_sqlite_engine() if _is_sqlite() else _create_postgresql_engine()

async_session_factory = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
)

# Create base class for models
Base = declarative_base()


def utc_now() -> datetime:
    """
    Return current UTC time as a naive datetime (no timezone info).

    Columns use TIMESTAMP WITHOUT TIME ZONE, which asyncpg refuses to bind
    timezone-aware datetimes to.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Get database session"""
    from fastapi import HTTPException
    from starlette.exceptions import HTTPException as StarletteHTTPException

    async with async_session_factory() as session:
        try:
            yield session
        except (HTTPException, StarletteHTTPException):
            await session.rollback()
            raise
        except SQLAlchemyError as e:
            logger.error("Database error during request: %s", e)
            await session.rollback()
            raise
        except Exception as e:
            logger.warning("Request error (non-database): %s", type(e).__name__)
            await session.rollback()
            raise


async def init_db():
    """Create tables and seed the built-in template prompt."""
    # Import models so they register on Base.metadata
    from invoice_processing import models  # noqa: F401
    from invoice_processing.modules.extraction.prompts.defaults import seed_base_template

    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        async with async_session_factory() as session:
            await seed_base_template(session)

        logger.info("Database initialized successfully")
    except SQLAlchemyError as e:
        logger.error("Failed to initialize database: %s", e)
        raise
