"""Inbound domain event ingestion."""

from __future__ import annotations

import logging

from fastapi import APIRouter, status

from ...schemas import DomainEvent
from ..deps import EventBusDep

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/", status_code=status.HTTP_202_ACCEPTED)
async def publish_event(event: DomainEvent, bus: EventBusDep) -> dict[str, str]:
    """Queue an event for trigger evaluation by the worker."""

    message_id = await bus.publish(event)
    logger.info(
        "Accepted domain event",
        extra={
            "event_id": event.event_id,
            "event_type": event.event_type.value,
            "lead_id": event.lead_id,
        },
    )
    return {"event_id": event.event_id, "message_id": message_id}


__all__ = ["router"]
