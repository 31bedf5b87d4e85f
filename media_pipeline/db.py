"""Database engine and session utilities for async SQLAlchemy.

This module centralizes engine/session creation so that the ledger, the
notification store and the scripts share a single, lazily initialized async
engine. It normalizes ``postgres://`` URLs for ``asyncpg`` and provides a
simple ``asynccontextmanager`` for sessions.

How to use:
- Call ``configure_engine(url)`` to point the process at a specific database
  (tests use a temporary ``sqlite+aiosqlite`` file); otherwise the engine is
  created from ``Settings().database_url`` on first use.
- Call ``await init_models()`` once at startup to create missing tables.
- Use ``get_session()`` as an async context manager for DB work:

    Example:
        >>> from media_pipeline.db import get_session
        >>> async with get_session() as session:
        ...     await session.execute(text("SELECT 1"))
        ...     await session.commit()
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from media_pipeline.config import Settings


_engine: Any = None
_session_factory: Any = None


def normalize_url(db_url: str) -> str:
    """Return ``db_url`` with the async driver prefix for Postgres URLs.

    Example:
        >>> normalize_url("postgres://u:p@h/db")
        'postgresql+asyncpg://u:p@h/db'
    """
    if db_url.startswith("postgresql://"):
        return db_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if db_url.startswith("postgres://"):
        return db_url.replace("postgres://", "postgresql+asyncpg://", 1)
    return db_url


def configure_engine(db_url: str) -> AsyncEngine:
    """Create the process-wide engine for ``db_url``, replacing any previous one."""
    global _engine, _session_factory
    url = normalize_url(db_url)
    kwargs: dict[str, Any] = {}
    if url.startswith("postgresql"):
        kwargs["pool_pre_ping"] = True
    _engine = create_async_engine(url, **kwargs)
    _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
    return _engine


def get_engine() -> AsyncEngine:
    """Return the process-wide async engine, creating it from Settings if needed."""
    if _engine is None:
        configure_engine(Settings().database_url)
    return _engine


async def init_models() -> None:
    """Create all tables that do not exist yet."""
    from media_pipeline.orm_models import Base

    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_engine() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


@asynccontextmanager
async def get_session() -> AsyncIterator[Any]:
    """Yield an async SQLAlchemy session bound to the shared engine.

    Sessions are created with ``expire_on_commit=False`` so returned rows stay
    readable after commit.
    """
    if _session_factory is None:
        get_engine()
    assert _session_factory is not None
    async with _session_factory() as session:
        yield session
