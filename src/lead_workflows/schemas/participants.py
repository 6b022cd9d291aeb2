"""Participant state schemas shared by the enrollment service, executor and scheduler."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from pydantic import Field

from ..models import ParticipantStatus
from .base import Metadata, ORMModel


class LogAction(str, Enum):
    ENTERED = "entered"
    EXECUTED = "executed"
    SKIPPED = "skipped"
    WAITING = "waiting"
    RESUMED = "resumed"
    COMPLETED = "completed"
    EXITED = "exited"
    FAILED = "failed"


class LogEntry(ORMModel):
    """A single append-only record in a participant's execution log."""

    node_id: str
    node_type: str
    node_name: str
    action: LogAction
    result: str | None = None
    error: str | None = None
    timestamp: datetime
    metadata: Metadata = Field(default_factory=dict)


class ParticipantState(ORMModel):
    """Working copy of a participant row.

    ``version`` is the value read from storage; writes are compare-and-set
    against it and bump it on success.
    """

    id: UUID = Field(default_factory=uuid4)
    workflow_id: UUID
    lead_id: str
    status: ParticipantStatus = ParticipantStatus.ACTIVE
    current_node_id: str | None = None

    entered_at: datetime
    completed_at: datetime | None = None
    exited_at: datetime | None = None
    exit_reason: str | None = None
    waiting_until: datetime | None = None
    last_activity_at: datetime

    branch_path: list[str] = Field(default_factory=list)
    split_variant_id: str | None = None
    goal_achieved: bool = False
    goal_achieved_at: datetime | None = None

    log: list[LogEntry] = Field(default_factory=list)
    trigger_data: Metadata = Field(default_factory=dict)
    enrollment_count: int = 1
    exclusive_key: str | None = None
    version: int = 1

    @property
    def is_in_flight(self) -> bool:
        return self.status in (ParticipantStatus.ACTIVE, ParticipantStatus.WAITING)

    def append_log(
        self,
        *,
        node_id: str,
        node_type: str,
        node_name: str,
        action: LogAction,
        timestamp: datetime,
        result: str | None = None,
        error: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> LogEntry:
        """Append a log entry whose timestamp never precedes the previous one."""

        if self.log and timestamp < self.log[-1].timestamp:
            timestamp = self.log[-1].timestamp
        entry = LogEntry(
            node_id=node_id,
            node_type=node_type,
            node_name=node_name,
            action=action,
            result=result,
            error=error,
            timestamp=timestamp,
            metadata=dict(metadata or {}),
        )
        self.log.append(entry)
        self.last_activity_at = timestamp
        return entry


class ParticipantResponse(ParticipantState):
    """Participant payload returned by the administrative API."""


__all__ = ["LogAction", "LogEntry", "ParticipantResponse", "ParticipantState"]
