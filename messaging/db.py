"""Database engine and session utilities for async SQLAlchemy.

This module centralizes engine/session creation so that the stores and
operator scripts share a single, lazily initialized async engine.

Why this exists:
- Ensure a consistent engine across the event bus, DLQ manager and scripts
- Keep ``DATABASE_URL`` normalization in one place

How to use:
- Scripts call ``get_session_factory()`` and hand it to the SQL stores:

    Example:
        >>> from messaging.db import get_session_factory
        >>> store = SqlDLQStore(get_session_factory())

- Services and tests that manage their own engine (sqlite in tests) use
  ``create_session_factory(url)`` plus ``create_schema(engine)``.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from messaging.config import Settings, normalize_database_url
from messaging.orm_models import Base


_engine: Any = None
_session_factory: Any = None


def create_session_factory(url: str, **engine_kwargs: Any) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """Return a new ``(engine, session_factory)`` pair for ``url``.

    Sessions are created with ``expire_on_commit=False`` so records stay
    readable after the store commits.
    """
    engine = create_async_engine(normalize_database_url(url), **engine_kwargs)
    return engine, async_sessionmaker(engine, expire_on_commit=False)


def get_engine() -> AsyncEngine:
    """Return a process-wide async SQLAlchemy engine, creating it if needed.

    The engine is created lazily from ``DATABASE_URL``. URLs of the form
    ``postgres://`` or ``postgresql://`` are normalized to
    ``postgresql+asyncpg://`` for the ``asyncpg`` driver.

    Raises:
        RuntimeError: ``DATABASE_URL`` is not set.
    """
    global _engine, _session_factory
    if _engine is None:
        settings = Settings()
        if not settings.is_database_configured:
            raise RuntimeError("DATABASE_URL is not set")
        _engine, _session_factory = create_session_factory(settings.database_url, pool_pre_ping=True)
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        get_engine()
    assert _session_factory is not None
    return _session_factory


async def create_schema(engine: AsyncEngine) -> None:
    """Create the messaging tables if they do not exist."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_engine() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None
