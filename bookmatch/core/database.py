"""
Bookmatch Database Layer

Async database setup for the embedding store and recommendation tables.
The connection URL comes from ``Settings.database_url``; nothing here reads
the environment directly.

Design:
    - Lazy initialization: engine created on first use, not at import.
    - get_session_factory: returns a reusable async session maker.
    - session_scope: yields a session for one unit of work (one script
      run, one scheduled pass).
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy import Table, text
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.dialects.postgresql import Insert as PostgresInsert
from sqlalchemy.dialects.sqlite import Insert as SqliteInsert
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from bookmatch.core.config import Settings
from bookmatch.core.errors import ValidationError
from bookmatch.models.base import Base

logger = logging.getLogger(__name__)

# Module-level singletons (lazy)
_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def get_engine(settings: Settings) -> AsyncEngine:
    """Get or create the async SQLAlchemy engine (singleton)."""
    global _engine  # noqa: PLW0603
    if _engine is None:
        _engine = create_async_engine(
            settings.database_url,
            echo=settings.database_echo,
            pool_pre_ping=True,
        )
        url = make_url(settings.database_url)
        logger.info(
            "Database engine created: %s@%s/%s",
            url.username or "?",
            url.host or "?",
            url.database or "?",
        )
    return _engine


def get_session_factory(settings: Settings) -> async_sessionmaker[AsyncSession]:
    """Get or create the async session factory (singleton)."""
    global _session_factory  # noqa: PLW0603
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            get_engine(settings),
            expire_on_commit=False,
        )
    return _session_factory


@asynccontextmanager
async def session_scope(settings: Settings) -> AsyncGenerator[AsyncSession, None]:
    """
    Provide a session for one unit of work.

    Usage::

        async with session_scope(settings) as session:
            report = await engine.sync_unsynced(session)
    """
    factory = get_session_factory(settings)
    async with factory() as session:
        yield session


def dialect_insert(
    session: AsyncSession, table: Table | type[Base]
) -> PostgresInsert | SqliteInsert:
    """
    Build an INSERT that supports ON CONFLICT for the session's backend.

    Create-or-get paths insert with ``on_conflict_do_nothing()`` and then
    re-read the row, so concurrent writers converge on the same record.

    Raises:
        ValidationError: The session is bound to another backend.
    """
    dialect = session.bind.dialect.name if session.bind is not None else ""
    if dialect == "postgresql":
        return postgresql.insert(table)
    if dialect == "sqlite":
        return sqlite.insert(table)
    raise ValidationError(f"ON CONFLICT inserts not supported on '{dialect}'")


async def create_schema(engine: AsyncEngine) -> None:
    """
    Create all tables that do not exist yet.

    Development and test helper; production schemas are managed by the
    Alembic revisions under ``migrations/``.
    """
    async with engine.begin() as conn:
        if conn.dialect.name == "postgresql":
            await conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
        await conn.run_sync(Base.metadata.create_all)


async def dispose_engine() -> None:
    """Dispose the engine at process shutdown."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("Database engine disposed")
