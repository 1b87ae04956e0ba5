"""
Engine and session lifecycle for the track store.

``init_db()`` builds one engine per process from MELODY_DATABASE_URL:
asyncpg in production, aiosqlite for local development.  Sessions never
expire attributes on commit, because routes commit and then hand the same
ORM rows to ``track_repository.announce``.  Whoever opens a session owns its
transaction; ``get_db`` only rolls back what was left uncommitted.
"""
from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from typing import Any

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from melodymaker.config import settings

logger = logging.getLogger(__name__)

DEV_DATABASE_URL = "sqlite+aiosqlite:///./melodymaker.db"


class Base(DeclarativeBase):
    """Declarative base for the tracks and track_updates tables."""


_engine: AsyncEngine | None = None
_async_session_factory: async_sessionmaker[AsyncSession] | None = None


def get_database_url() -> str:
    """MELODY_DATABASE_URL, or a local SQLite file when unset."""
    if settings.database_url:
        return settings.database_url
    logger.warning(f"⚠️ MELODY_DATABASE_URL not set, using {DEV_DATABASE_URL}")
    return DEV_DATABASE_URL


def _enable_sqlite_foreign_keys(dbapi_connection: Any, connection_record: Any) -> None:
    # SQLite ignores ON DELETE CASCADE on track_updates unless asked per connection.
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_engine_for(url: str) -> AsyncEngine:
    """Build the async engine for ``url`` with backend-specific options."""
    is_sqlite = make_url(url).get_backend_name() == "sqlite"
    engine_args: dict[str, Any] = {"echo": settings.debug}
    if is_sqlite:
        engine_args["connect_args"] = {"check_same_thread": False}
    else:
        engine_args["pool_pre_ping"] = True

    engine = create_async_engine(url, **engine_args)
    if is_sqlite:
        event.listen(engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
    return engine


async def init_db() -> None:
    """Create the process engine and session factory.

    Deployed databases are migrated with ``alembic upgrade head``.  A SQLite
    database gets its tables created here so a fresh checkout runs as is.
    """
    global _engine, _async_session_factory

    url = get_database_url()
    logger.info(f"Connecting to database: {make_url(url).render_as_string(hide_password=True)}")

    _engine = create_engine_for(url)
    _async_session_factory = async_sessionmaker(
        bind=_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    from melodymaker.db import models  # noqa: F401  (registers the tables)

    if _engine.dialect.name == "sqlite":
        async with _engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose of the engine's pool.  Safe to call when never initialized."""
    global _engine, _async_session_factory

    if _engine is None:
        return
    await _engine.dispose()
    _engine = None
    _async_session_factory = None
    logger.info("Database connections closed")


def AsyncSessionLocal() -> AsyncSession:
    """Open a session outside a request, e.g. in a detached generation task."""
    if _async_session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _async_session_factory()


async def get_db() -> AsyncIterator[AsyncSession]:
    """FastAPI dependency: one session per request.

    Routes commit explicitly before announcing a transition.  Anything still
    pending when the request ends, including after an error, is rolled back.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            if session.in_transaction():
                await session.rollback()
