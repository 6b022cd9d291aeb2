"""ORM models and the enums shared with the pydantic schemas."""

from .base import Base, GUID, JSONBType, TimestampMixin, UTCDateTime, UUIDPrimaryKey, VersionedMixin
from .participants import (
    IN_FLIGHT_STATUSES,
    TERMINAL_STATUSES,
    ParticipantModel,
    ParticipantStatus,
)
from .workflows import METRIC_COLUMNS, TriggerType, WorkflowModel, WorkflowStatus

__all__ = [
    "Base",
    "GUID",
    "IN_FLIGHT_STATUSES",
    "JSONBType",
    "METRIC_COLUMNS",
    "ParticipantModel",
    "ParticipantStatus",
    "TERMINAL_STATUSES",
    "TimestampMixin",
    "TriggerType",
    "UTCDateTime",
    "UUIDPrimaryKey",
    "VersionedMixin",
    "WorkflowModel",
    "WorkflowStatus",
]
