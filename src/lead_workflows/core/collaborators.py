"""Interfaces of the external services the engine calls into."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Protocol

from ..schemas import (
    EmailMessage,
    EmailReceipt,
    EmailTemplate,
    LeadProfile,
    LeadScoreLevel,
    Notification,
    TaskRequest,
)

__all__ = [
    "CohortResolver",
    "Collaborators",
    "EmailSender",
    "LeadStore",
    "Notifier",
    "SequenceEnroller",
    "TaskCreator",
    "TemplateStore",
    "WebhookClient",
]


class LeadStore(Protocol):
    """Lead reads and mutations owned by the lead service."""

    async def get_lead(self, lead_id: str) -> LeadProfile | None: ...

    async def add_tags(self, lead_id: str, tags: Sequence[str]) -> None: ...

    async def remove_tags(self, lead_id: str, tags: Sequence[str]) -> None: ...

    async def update_score(self, lead_id: str, score: int, level: LeadScoreLevel) -> None: ...

    async def set_custom_field(self, lead_id: str, field_name: str, value: Any) -> None: ...


class TemplateStore(Protocol):
    async def get_template(self, template_id: str) -> EmailTemplate | None: ...


class EmailSender(Protocol):
    async def send(self, message: EmailMessage) -> EmailReceipt: ...


class WebhookClient(Protocol):
    async def call(
        self,
        url: str,
        *,
        method: str = "POST",
        headers: dict[str, str] | None = None,
        body: dict[str, Any] | None = None,
    ) -> int:
        """Deliver the webhook and return the HTTP status code."""
        ...


class SequenceEnroller(Protocol):
    async def enroll(self, lead_id: str, sequence_id: str) -> None: ...


class Notifier(Protocol):
    async def notify(self, notification: Notification) -> None: ...


class TaskCreator(Protocol):
    async def create_task(self, task: TaskRequest) -> None: ...


class CohortResolver(Protocol):
    """Resolves the leads targeted by a calendar-scheduled workflow tick."""

    async def resolve(self, workflow_id: str, segment_id: str | None) -> list[str]: ...


@dataclass(slots=True)
class Collaborators:
    """Bundle of collaborator implementations injected into the executor."""

    leads: LeadStore
    templates: TemplateStore
    email: EmailSender
    webhooks: WebhookClient
    sequences: SequenceEnroller
    notifier: Notifier
    tasks: TaskCreator
    cohorts: CohortResolver
