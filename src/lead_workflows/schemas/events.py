"""Message payloads carried over Redis Streams."""

from __future__ import annotations

from uuid import UUID, uuid4

from pydantic import Field

from ..models import TriggerType
from .base import Metadata, ORMModel, UTCDatetime, utc_now


class DomainEvent(ORMModel):
    """Business event that may enroll a lead into matching workflows."""

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    event_type: TriggerType
    lead_id: str = Field(min_length=1)
    data: Metadata = Field(default_factory=dict)
    timestamp: UTCDatetime = Field(default_factory=utc_now)


class ExecutionJob(ORMModel):
    """Request to advance one participant through its workflow graph."""

    job_id: str = Field(default_factory=lambda: str(uuid4()))
    participant_id: UUID
    attempt: int = Field(default=1, ge=1)
    reason: str = "enrolled"


__all__ = ["DomainEvent", "ExecutionJob"]
