"""Database configuration and session management.

This module constructs an asynchronous SQLAlchemy engine and session
factory for the application from ``DATABASE_URL``.  Plain ``sqlite://``
and ``postgresql://`` URLs are upgraded to their async drivers
(aiosqlite / psycopg).  When no URL is configured a local SQLite file is
used, which is only intended for development.
"""

from __future__ import annotations

import logging
from typing import Any, AsyncGenerator, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.engine.url import make_url
from sqlalchemy.orm import declarative_base

from buildledger.core.config import settings

logger = logging.getLogger(__name__)

LAST_DB_INIT_ERROR: Optional[str] = None


def normalize_database_url(raw_url: Optional[str]) -> str:
    """Return an async-driver URL for ``raw_url`` (SQLite file when unset)."""
    if not raw_url:
        return "sqlite+aiosqlite:///./buildledger.db"
    url_obj = make_url(raw_url)
    driver = url_obj.drivername or ""
    if driver == "sqlite":
        url_obj = url_obj.set(drivername="sqlite+aiosqlite")
    elif driver in {"postgresql", "postgres", "postgresql+psycopg2", "postgresql+asyncpg"}:
        url_obj = url_obj.set(drivername="postgresql+psycopg")
    return url_obj.render_as_string(hide_password=False)


db_url = normalize_database_url(settings.DATABASE_URL)
if not settings.DATABASE_URL and (settings.ENVIRONMENT or "development").lower() != "development":
    raise RuntimeError("DATABASE_URL must be set outside development")

engine = create_async_engine(db_url, echo=False, pool_pre_ping=True)

# Create session factory
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)

# Declarative base
Base = declarative_base()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency that yields a database session.

    Each session is scoped to the request and closed after use.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db() -> None:
    """Create all tables defined on the declarative ``Base``."""
    global LAST_DB_INIT_ERROR
    try:
        async with engine.begin() as conn:
            # Import all models to ensure metadata is populated
            from buildledger.models import tables  # noqa: F401
            await conn.run_sync(Base.metadata.create_all)
    except Exception as e:
        LAST_DB_INIT_ERROR = str(e)
        logger.error("DB init failed: %s", e)
        raise


def get_db_debug_info() -> Dict[str, Any]:
    """Return non-sensitive information about the current DB engine for debugging."""
    url_obj = engine.url
    info: Dict[str, Any] = {
        "environment": (settings.ENVIRONMENT or "development"),
        "drivername": url_obj.drivername,
        "host": url_obj.host,
        "port": url_obj.port,
        "database": url_obj.database,
        "url": url_obj.render_as_string(hide_password=True),
    }
    if LAST_DB_INIT_ERROR:
        info["last_db_init_error"] = LAST_DB_INIT_ERROR
    return info
