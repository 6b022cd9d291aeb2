"""Lead-facing payloads exchanged with collaborator services."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import Field

from .base import Metadata, ORMModel


class LeadScoreLevel(str, Enum):
    COLD = "cold"
    WARM = "warm"
    HOT = "hot"
    VERY_HOT = "very_hot"


class LeadProfile(ORMModel):
    """Snapshot of a lead as seen by the lead store."""

    id: str
    email: str
    first_name: str | None = None
    last_name: str | None = None
    company: str | None = None
    phone: str | None = None
    status: str | None = None
    score: int = 0
    score_level: LeadScoreLevel = LeadScoreLevel.COLD
    tags: list[str] = Field(default_factory=list)
    custom_fields: dict[str, Any] = Field(default_factory=dict)


class EmailTemplate(ORMModel):
    id: str
    name: str
    subject: str
    html_content: str
    text_content: str | None = None


class EmailMessage(ORMModel):
    to: str
    subject: str
    html: str
    text: str | None = None
    tags: list[str] = Field(default_factory=list)
    metadata: Metadata = Field(default_factory=dict)


class EmailReceipt(ORMModel):
    success: bool
    message_id: str | None = None


class Notification(ORMModel):
    notification_type: str
    recipient: str | None = None
    message: str
    metadata: Metadata = Field(default_factory=dict)


class TaskRequest(ORMModel):
    lead_id: str
    title: str
    description: str | None = None
    assignee: str | None = None
    due_in_days: int | None = None
    metadata: Metadata = Field(default_factory=dict)


__all__ = [
    "EmailMessage",
    "EmailReceipt",
    "EmailTemplate",
    "LeadProfile",
    "LeadScoreLevel",
    "Notification",
    "TaskRequest",
]
