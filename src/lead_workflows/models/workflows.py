"""Workflow ORM model definition."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, TYPE_CHECKING

from sqlalchemy import Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import (
    Base,
    JSONBType,
    TimestampMixin,
    UTCDateTime,
    UUIDPrimaryKey,
    VersionedMixin,
    enum_column,
)

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .participants import ParticipantModel


class WorkflowStatus(str, Enum):
    """States available for workflow definitions."""

    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    ARCHIVED = "archived"


class TriggerType(str, Enum):
    """Business events able to enroll a lead."""

    LEAD_CREATED = "lead_created"
    TAG_ADDED = "tag_added"
    TAG_REMOVED = "tag_removed"
    SCORE_CHANGED = "score_changed"
    EMAIL_OPENED = "email_opened"
    EMAIL_CLICKED = "email_clicked"
    PAGE_VISITED = "page_visited"
    FORM_SUBMITTED = "form_submitted"
    PURCHASE_MADE = "purchase_made"
    FUNNEL_STEP_COMPLETED = "funnel_step_completed"
    CHALLENGE_DAY_COMPLETED = "challenge_day_completed"
    CUSTOM_EVENT = "custom_event"
    SCHEDULED = "scheduled"
    WEBHOOK = "webhook"
    MANUAL = "manual"


METRIC_COLUMNS = (
    "total_entered",
    "currently_active",
    "completed",
    "exited",
    "goal_achieved",
)


class WorkflowModel(UUIDPrimaryKey, VersionedMixin, TimestampMixin, Base):
    """Persistence model for automation workflow definitions."""

    __tablename__ = "workflows"
    __table_args__ = (
        Index("ix_workflows_name", "name"),
        Index("ix_workflows_status_trigger_type", "status", "trigger_type"),
    )

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text())
    status: Mapped[WorkflowStatus] = mapped_column(
        enum_column(WorkflowStatus, "workflow_status"),
        default=WorkflowStatus.DRAFT,
        nullable=False,
    )
    trigger_type: Mapped[TriggerType] = mapped_column(
        enum_column(TriggerType, "workflow_trigger_type"),
        nullable=False,
    )
    trigger_config: Mapped[dict[str, Any]] = mapped_column(JSONBType, default=dict, nullable=False)
    nodes: Mapped[list[dict[str, Any]]] = mapped_column(JSONBType, default=list, nullable=False)
    edges: Mapped[list[dict[str, Any]]] = mapped_column(JSONBType, default=list, nullable=False)
    settings: Mapped[dict[str, Any]] = mapped_column(JSONBType, default=dict, nullable=False)
    tags: Mapped[list[str]] = mapped_column(JSONBType, default=list, nullable=False)

    total_entered: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    currently_active: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    completed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    exited: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    goal_achieved: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    activated_at: Mapped[datetime | None] = mapped_column(UTCDateTime())

    participants: Mapped[list["ParticipantModel"]] = relationship(
        back_populates="workflow",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


__all__ = ["METRIC_COLUMNS", "TriggerType", "WorkflowModel", "WorkflowStatus"]
