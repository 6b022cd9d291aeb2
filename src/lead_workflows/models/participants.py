"""Participant ORM model: one lead's run through one workflow."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, TYPE_CHECKING
from uuid import UUID

from sqlalchemy import Boolean, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import (
    GUID,
    Base,
    JSONBType,
    TimestampMixin,
    UTCDateTime,
    UUIDPrimaryKey,
    VersionedMixin,
    enum_column,
)

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .workflows import WorkflowModel


class ParticipantStatus(str, Enum):
    """Lifecycle states for a participant run."""

    ACTIVE = "active"
    WAITING = "waiting"
    COMPLETED = "completed"
    EXITED = "exited"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {ParticipantStatus.COMPLETED, ParticipantStatus.EXITED, ParticipantStatus.FAILED}
)
IN_FLIGHT_STATUSES = (ParticipantStatus.ACTIVE, ParticipantStatus.WAITING)


class ParticipantModel(UUIDPrimaryKey, VersionedMixin, TimestampMixin, Base):
    """Execution state of a lead inside a workflow enrollment."""

    __tablename__ = "workflow_participants"
    __table_args__ = (
        Index("ix_workflow_participants_workflow_lead", "workflow_id", "lead_id"),
        Index("ix_workflow_participants_status_waiting_until", "status", "waiting_until"),
        Index("ix_workflow_participants_status_last_activity", "status", "last_activity_at"),
    )

    workflow_id: Mapped[UUID] = mapped_column(
        GUID(),
        ForeignKey("workflows.id", ondelete="CASCADE"),
        nullable=False,
    )
    lead_id: Mapped[str] = mapped_column(String(128), nullable=False)

    status: Mapped[ParticipantStatus] = mapped_column(
        enum_column(ParticipantStatus, "participant_status"),
        default=ParticipantStatus.ACTIVE,
        nullable=False,
    )
    current_node_id: Mapped[str | None] = mapped_column(String(128))

    entered_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    exited_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    exit_reason: Mapped[str | None] = mapped_column(Text())
    waiting_until: Mapped[datetime | None] = mapped_column(UTCDateTime())
    last_activity_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    branch_path: Mapped[list[str]] = mapped_column(JSONBType, default=list, nullable=False)
    split_variant_id: Mapped[str | None] = mapped_column(String(128))
    goal_achieved: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    goal_achieved_at: Mapped[datetime | None] = mapped_column(UTCDateTime())

    log: Mapped[list[dict[str, Any]]] = mapped_column(JSONBType, default=list, nullable=False)
    trigger_data: Mapped[dict[str, Any]] = mapped_column(JSONBType, default=dict, nullable=False)
    enrollment_count: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    # Set to "<workflow_id>:<lead_id>" while in flight for workflows that
    # disallow re-entry; NULLs never collide.
    exclusive_key: Mapped[str | None] = mapped_column(String(200), unique=True)

    workflow: Mapped["WorkflowModel"] = relationship(back_populates="participants")


__all__ = [
    "IN_FLIGHT_STATUSES",
    "ParticipantModel",
    "ParticipantStatus",
    "TERMINAL_STATUSES",
]
