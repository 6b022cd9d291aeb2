"""FastAPI application factory for the workflow engine's administrative API."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import APIRouter, FastAPI

from ..config import get_config
from ..storage.database import dispose_engine, init_db
from .deps import close_resources
from .routes import events_router, health_router, participants_router, workflows_router

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"

_ROUTERS: tuple[tuple[APIRouter, str, str], ...] = (
    (workflows_router, "/workflows", "workflows"),
    (participants_router, "/participants", "participants"),
    (events_router, "/events", "events"),
)


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:  # noqa: ARG001 - signature requirement
    await init_db()
    logger.info("Lead workflows API ready")
    try:
        yield
    finally:
        await close_resources()
        await dispose_engine()


def create_app() -> FastAPI:
    """Build the API with workflow, participant and event routes mounted."""

    config = get_config()
    app = FastAPI(
        title="Lead Workflows API",
        description="Administrative surface for marketing automation workflows",
        version="0.1.0",
        debug=config.log_level.upper() == "DEBUG",
        lifespan=_lifespan,
    )

    for router, path, tag in _ROUTERS:
        app.include_router(router, prefix=f"{API_PREFIX}{path}", tags=[tag])
    app.include_router(health_router, tags=["health"])

    return app


__all__ = ["API_PREFIX", "create_app"]
