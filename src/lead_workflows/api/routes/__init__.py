"""Router exports for the API module."""

from .events import router as events_router
from .health import router as health_router
from .participants import router as participants_router
from .workflows import router as workflows_router

__all__ = [
    "events_router",
    "health_router",
    "participants_router",
    "workflows_router",
]
