"""Matching of domain events to active workflows and fan-out to enrollment."""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

from ..models import TriggerType
from ..schemas import DomainEvent, ParticipantState, TriggerConfig, WorkflowDefinition
from .enrollment import EnrollmentService
from .workflow_repository import WorkflowRepository

__all__ = ["DispatchReport", "TriggerDispatcher", "event_value", "glob_to_regex", "matches_trigger"]

logger = logging.getLogger(__name__)

# (config attribute, event data keys accepted for it)
_IDENTITY_KEYS: dict[TriggerType, tuple[tuple[str, tuple[str, ...]], ...]] = {
    TriggerType.TAG_ADDED: (("tag_name", ("tag_name", "tagName", "tag")),),
    TriggerType.TAG_REMOVED: (("tag_name", ("tag_name", "tagName", "tag")),),
    TriggerType.EMAIL_OPENED: (
        ("email_template_id", ("template_id", "templateId", "email_template_id")),
        ("campaign_id", ("campaign_id", "campaignId")),
    ),
    TriggerType.EMAIL_CLICKED: (
        ("email_template_id", ("template_id", "templateId", "email_template_id")),
        ("campaign_id", ("campaign_id", "campaignId")),
    ),
    TriggerType.FORM_SUBMITTED: (("form_id", ("form_id", "formId")),),
    TriggerType.PURCHASE_MADE: (("product_id", ("product_id", "productId")),),
    TriggerType.FUNNEL_STEP_COMPLETED: (
        ("funnel_id", ("funnel_id", "funnelId")),
        ("step_id", ("step_id", "stepId")),
    ),
    TriggerType.CHALLENGE_DAY_COMPLETED: (
        ("challenge_id", ("challenge_id", "challengeId")),
        ("day_number", ("day_number", "dayNumber")),
    ),
    TriggerType.CUSTOM_EVENT: (("event_name", ("event_name", "eventName")),),
    TriggerType.PAGE_VISITED: (("page_url", ("page_url", "pageUrl", "url")),),
}


def event_value(data: Mapping[str, Any], *keys: str) -> Any:
    """Return the first present value among ``keys`` (snake or camel case)."""

    for key in keys:
        if data.get(key) is not None:
            return data[key]
    return None


def glob_to_regex(pattern: str) -> re.Pattern[str]:
    """``*`` matches any run of characters; everything else is literal."""

    return re.compile(".*".join(re.escape(part) for part in pattern.split("*")), re.IGNORECASE)


def _same(expected: Any, actual: Any) -> bool:
    if actual is None:
        return False
    if expected == actual:
        return True
    return str(expected) == str(actual)


def _as_number(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _score_matches(config: TriggerConfig, data: Mapping[str, Any]) -> bool:
    if config.score_threshold is None:
        return True

    threshold = config.score_threshold
    new_score = _as_number(event_value(data, "new_score", "newScore"))
    old_score = _as_number(event_value(data, "old_score", "oldScore"))
    if new_score is None:
        return False

    if config.score_direction == "above":
        return new_score >= threshold and (old_score is None or old_score < threshold)
    if config.score_direction == "below":
        return new_score < threshold and (old_score is None or old_score >= threshold)
    if config.score_direction == "crosses":
        if old_score is None:
            return False
        return (new_score >= threshold > old_score) or (new_score < threshold <= old_score)
    return True


def matches_trigger(workflow: WorkflowDefinition, event: DomainEvent) -> bool:
    """Type-specific predicate: configured keys must match, unset keys match anything."""

    trigger = workflow.trigger
    if trigger.type != event.event_type:
        return False

    config = trigger.config
    data = event.data

    for attribute, keys in _IDENTITY_KEYS.get(event.event_type, ()):
        expected = getattr(config, attribute)
        if expected is not None and not _same(expected, event_value(data, *keys)):
            return False

    if event.event_type == TriggerType.SCORE_CHANGED:
        return _score_matches(config, data)

    if event.event_type == TriggerType.PAGE_VISITED and config.page_url_pattern:
        url = event_value(data, "page_url", "pageUrl", "url")
        if not isinstance(url, str):
            return False
        return glob_to_regex(config.page_url_pattern).search(url) is not None

    if event.event_type == TriggerType.PURCHASE_MADE and config.min_amount is not None:
        amount = _as_number(data.get("amount"))
        return amount is not None and amount >= config.min_amount

    return True


@dataclass(slots=True)
class DispatchReport:
    """What happened to one event across the workflows it matched."""

    event_id: str
    matched: list[UUID] = field(default_factory=list)
    enrolled: list[ParticipantState] = field(default_factory=list)
    failed: dict[UUID, str] = field(default_factory=dict)


class TriggerDispatcher:
    """Routes domain events to the workflows they trigger."""

    def __init__(self, workflows: WorkflowRepository, enrollment: EnrollmentService) -> None:
        self._workflows = workflows
        self._enrollment = enrollment

    async def find_matching(self, event: DomainEvent) -> list[WorkflowDefinition]:
        candidates = await self._workflows.list_active_by_trigger(event.event_type)
        return [workflow for workflow in candidates if matches_trigger(workflow, event)]

    async def handle_event(self, event: DomainEvent) -> DispatchReport:
        """Enroll the event's lead in every eligible matching workflow.

        A failure for one workflow is logged and recorded in the report; the
        remaining workflows are still dispatched.
        """

        report = DispatchReport(event_id=event.event_id)
        workflows = await self.find_matching(event)
        trigger_data = {
            "event_id": event.event_id,
            "event_type": event.event_type.value,
            "timestamp": event.timestamp.isoformat(),
            **event.data,
        }

        for workflow in workflows:
            report.matched.append(workflow.id)
            try:
                participant = await self._enrollment.enroll(workflow, event.lead_id, trigger_data)
            except Exception as exc:
                logger.exception(
                    "Failed to dispatch event to workflow",
                    extra={
                        "event_id": event.event_id,
                        "workflow_id": str(workflow.id),
                        "lead_id": event.lead_id,
                    },
                )
                report.failed[workflow.id] = str(exc)
                continue
            if participant is not None:
                report.enrolled.append(participant)

        logger.info(
            "Dispatched domain event",
            extra={
                "event_id": event.event_id,
                "event_type": event.event_type.value,
                "matched": len(report.matched),
                "enrolled": len(report.enrolled),
                "failed": len(report.failed),
            },
        )
        return report
