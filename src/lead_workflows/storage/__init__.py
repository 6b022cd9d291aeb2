"""Database engine and session helpers."""

from .database import (
    create_engine,
    dispose_engine,
    get_async_session,
    get_engine,
    get_session_factory,
    init_db,
)

__all__ = [
    "create_engine",
    "dispose_engine",
    "get_async_session",
    "get_engine",
    "get_session_factory",
    "init_db",
]
