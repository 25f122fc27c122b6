"""Database configuration and session management.

This module constructs an asynchronous SQLAlchemy engine and session
factory for the application.  The connection string comes from
``DATABASE_URL``; SQLite URLs are upgraded to ``aiosqlite`` and
PostgreSQL URLs are normalised to the ``psycopg`` driver.  A fallback to
a local SQLite file is permitted in development if configured.

Worker processes run every pipeline invocation in its own event loop, so
they build a private engine with :func:`make_engine` instead of sharing
the module-level one.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from sqlalchemy.engine.url import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import declarative_base

from receiptflow.core.config import settings

logger = logging.getLogger(__name__)

SQLITE_FALLBACK_URL = "sqlite+aiosqlite:///./receiptflow.db"


def normalise_database_url(url: Optional[str]) -> str:
    """Return an async-driver URL for ``url``.

    Raises ``RuntimeError`` when no URL is configured and the development
    SQLite fallback is disabled.
    """
    if not url:
        if not settings.DB_DEV_FALLBACK_SQLITE:
            raise RuntimeError(
                "No database URL provided via DATABASE_URL; with "
                "DB_DEV_FALLBACK_SQLITE=false a database URL is required."
            )
        return SQLITE_FALLBACK_URL

    url_obj = make_url(url)
    driver = url_obj.drivername or ""
    if driver == "sqlite":
        url_obj = url_obj.set(drivername="sqlite+aiosqlite")
    elif driver in {"postgres", "postgresql", "postgresql+psycopg2", "postgresql+asyncpg"}:
        q = dict(url_obj.query or {})
        if not q.get("sslmode") and (url_obj.host or "") not in {"localhost", "127.0.0.1"}:
            q["sslmode"] = "require"
        url_obj = url_obj.set(drivername="postgresql+psycopg", query=q)
    return url_obj.render_as_string(hide_password=False)


def make_engine(url: Optional[str] = None) -> AsyncEngine:
    """Create an async engine for ``url`` (defaults to the configured URL)."""
    db_url = normalise_database_url(url or settings.DATABASE_URL)
    masked = make_url(db_url).set(password=None)
    logger.info("Creating async engine with URL: %s", masked)
    return create_async_engine(db_url, echo=False, pool_pre_ping=True)


def make_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


# Declarative base
Base = declarative_base()

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def get_engine() -> AsyncEngine:
    """Return the process-wide engine, creating it on first use."""
    global _engine
    if _engine is None:
        _engine = make_engine()
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        _session_factory = make_session_factory(get_engine())
    return _session_factory


async def create_tables(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        # Import all models to ensure metadata is populated
        from receiptflow.models import tables  # noqa: F401
        await conn.run_sync(Base.metadata.create_all)


async def init_db() -> None:
    """Initialize database tables.

    This helper creates all database tables as defined on the declarative
    ``Base``.  It is typically called during application startup.
    """
    await create_tables(get_engine())


def get_db_debug_info() -> Dict[str, Any]:
    """Return non-sensitive information about the current DB engine for debugging."""
    info: Dict[str, Any] = {"environment": settings.ENVIRONMENT or "development"}
    try:
        url_obj = get_engine().url
        info.update(
            {
                "drivername": url_obj.drivername,
                "host": url_obj.host,
                "database": url_obj.database,
                "url": str(url_obj.set(password=None)),
            }
        )
    except Exception as ex:
        info["error"] = f"unable to parse engine url: {ex}"
    return info
