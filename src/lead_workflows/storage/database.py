"""Async SQLAlchemy engine and session factory shared by the API and the worker."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from ..config import get_config
from ..models import Base

# Sync driver prefixes rewritten to their asyncio counterparts.
_ASYNC_DRIVERS = {
    "postgres://": "postgresql+asyncpg://",
    "postgresql://": "postgresql+asyncpg://",
    "sqlite://": "sqlite+aiosqlite://",
}

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def ensure_async_driver(url: str) -> str:
    for prefix, async_prefix in _ASYNC_DRIVERS.items():
        if url.startswith(prefix):
            return async_prefix + url[len(prefix) :]
    return url


def _enable_sqlite_foreign_keys(engine: AsyncEngine) -> None:
    """Participant rows cascade with their workflow; SQLite only honours that per connection."""

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, _record) -> None:  # pragma: no cover - driver hook
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def create_engine(database_url: str, *, echo: bool = False) -> AsyncEngine:
    """Build an async engine for ``database_url`` with dialect-specific setup."""

    url = ensure_async_driver(database_url)
    if url.startswith("sqlite"):
        engine = create_async_engine(url, echo=echo)
        _enable_sqlite_foreign_keys(engine)
        return engine
    return create_async_engine(url, echo=echo, pool_pre_ping=True)


def get_engine() -> AsyncEngine:
    """Return the process-wide async engine, creating it on first access."""

    global _engine
    if _engine is None:
        config = get_config()
        if not config.database_url:
            raise RuntimeError(
                "Database URL not configured. Set DATABASE_URL (or LEAD_WORKFLOWS_DATABASE_URL)."
            )
        _engine = create_engine(config.database_url, echo=config.database_echo)
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the async session factory tied to the current engine."""

    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(get_engine(), expire_on_commit=False)
    return _session_factory


@asynccontextmanager
async def get_async_session() -> AsyncIterator[AsyncSession]:
    factory = get_session_factory()
    async with factory() as session:
        yield session


async def init_db(engine: AsyncEngine | None = None) -> None:
    """Create the workflow tables when they do not exist yet.

    Production schemas are managed by Alembic; this covers tests and local runs.
    """

    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_engine() -> None:
    """Close pooled connections and forget the cached engine."""

    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


__all__ = [
    "create_engine",
    "dispose_engine",
    "ensure_async_driver",
    "get_async_session",
    "get_engine",
    "get_session_factory",
    "init_db",
]
