"""Per-node-type semantics.

Each handler turns one node into a :class:`NodeResult`; the executor decides
the resulting transition. Action nodes are best-effort: a collaborator
failure is recorded on the result and the run continues, unless the node is
configured with ``on_error="fail"``.
"""

from __future__ import annotations

import asyncio
import logging
import random
import re
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, TypeVar

from ..schemas import (
    EmailMessage,
    ErrorPolicy,
    GoalConfig,
    LeadProfile,
    LeadScoreLevel,
    Notification,
    ParticipantState,
    SplitVariant,
    TaskRequest,
    WorkflowDefinition,
)
from ..schemas.workflows import (
    AddTagNode,
    ConditionNode,
    CreateTaskNode,
    EnrollSequenceNode,
    ExitNode,
    GoalNode,
    NodeBase,
    RemoveTagNode,
    SendEmailNode,
    SendNotificationNode,
    SendWebhookNode,
    SplitNode,
    TriggerNode,
    UpdateFieldNode,
    UpdateScoreNode,
    WaitNode,
    WaitUntilNode,
)
from .collaborators import Collaborators
from .conditions import evaluate_condition, resolve_field
from .exceptions import CollaboratorError
from .timing import apply_business_hours, next_time_of_day, parse_time_of_day, wait_duration

__all__ = [
    "EXIT_NODE_REASON",
    "GOAL_ACHIEVED_REASON",
    "NodeHandlers",
    "NodeResult",
    "StepContext",
    "apply_score_change",
    "personalize",
    "personalize_object",
    "score_level",
    "select_variant",
]

logger = logging.getLogger(__name__)

T = TypeVar("T")

GOAL_ACHIEVED_REASON = "Goal achieved"
EXIT_NODE_REASON = "Exit node reached"

_PLACEHOLDER = re.compile(r"\{\{\s*([\w.]+)\s*\}\}")


@dataclass(slots=True)
class NodeResult:
    """Outcome of executing a single node."""

    message: str
    metadata: dict[str, Any] = field(default_factory=dict)
    wait: bool = False
    wait_until: datetime | None = None
    exit: bool = False
    exit_reason: str | None = None
    next_node_id: str | None = None
    branch_label: str | None = None
    goal_achieved: bool = False
    split_variant_id: str | None = None
    skipped: bool = False
    error: str | None = None


@dataclass(slots=True)
class StepContext:
    """Everything a handler may read while executing one node."""

    workflow: WorkflowDefinition
    participant: ParticipantState
    lead: LeadProfile
    now: datetime


# --------------------------------------------------------------------------- helpers


def score_level(score: int) -> LeadScoreLevel:
    if score <= 25:
        return LeadScoreLevel.COLD
    if score <= 50:
        return LeadScoreLevel.WARM
    if score <= 75:
        return LeadScoreLevel.HOT
    return LeadScoreLevel.VERY_HOT


def apply_score_change(current: int, change: int, action: str) -> int:
    """Apply add/subtract/set and clamp the outcome to [0, 100]."""

    if action == "set":
        score = change
    elif action == "subtract":
        score = current - change
    else:
        score = current + change
    return max(0, min(100, score))


def personalize(text: str, lead: LeadProfile) -> str:
    """Replace ``{{field}}`` placeholders with lead values; unknown fields render empty."""

    def _replace(match: re.Match[str]) -> str:
        value = resolve_field(lead, match.group(1))
        if value is None:
            return ""
        if isinstance(value, LeadScoreLevel):
            return value.value
        return str(value)

    return _PLACEHOLDER.sub(_replace, text)


def personalize_object(value: Any, lead: LeadProfile) -> Any:
    if isinstance(value, str):
        return personalize(value, lead)
    if isinstance(value, Mapping):
        return {key: personalize_object(item, lead) for key, item in value.items()}
    if isinstance(value, list):
        return [personalize_object(item, lead) for item in value]
    return value


def select_variant(variants: list[SplitVariant], rng: random.Random) -> SplitVariant:
    """Weighted draw; falls back to the first variant when nothing is selected."""

    total = sum(variant.weight for variant in variants)
    draw = rng.random() * total
    for variant in variants:
        if variant.weight <= 0:
            continue
        draw -= variant.weight
        if draw <= 0:
            return variant
    return variants[0]


def _lead_payload(lead: LeadProfile) -> dict[str, Any]:
    return lead.model_dump(
        mode="json",
        include={
            "id", "email", "first_name", "last_name", "company", "phone", "score", "tags", "status"
        },
    )


def _goal_met(config: GoalConfig, lead: LeadProfile) -> bool:
    if config.goal_type == "tag_added":
        return bool(config.tag_name) and config.tag_name in lead.tags
    if config.goal_type == "score_reached":
        return config.score_threshold is not None and lead.score >= config.score_threshold
    if config.condition is not None:
        return evaluate_condition(lead, config.condition)
    return False


# --------------------------------------------------------------------------- handlers


class NodeHandlers:
    """Dispatches a node to the handler for its type."""

    def __init__(
        self,
        collaborators: Collaborators,
        *,
        timeout_seconds: float = 10.0,
        rng: random.Random | None = None,
    ) -> None:
        self._collaborators = collaborators
        self._timeout = timeout_seconds
        self._rng = rng or random.Random()
        self._handlers: dict[str, Callable[[Any, StepContext], Awaitable[NodeResult]]] = {
            "trigger": self._trigger,
            "send_email": self._send_email,
            "add_tag": self._add_tag,
            "remove_tag": self._remove_tag,
            "update_score": self._update_score,
            "update_field": self._update_field,
            "enroll_sequence": self._enroll_sequence,
            "send_webhook": self._send_webhook,
            "send_notification": self._send_notification,
            "create_task": self._create_task,
            "wait": self._wait,
            "wait_until": self._wait_until,
            "condition": self._condition,
            "split": self._split,
            "goal": self._goal,
            "exit": self._exit,
        }

    async def run(self, node: NodeBase, ctx: StepContext) -> NodeResult:
        node_type = getattr(node, "type", None)
        handler = self._handlers.get(node_type) if isinstance(node_type, str) else None
        if handler is None:
            return NodeResult(message=f"Skipped unknown node type: {node_type}", skipped=True)
        return await handler(node, ctx)

    async def _invoke(self, operation: str, call: Awaitable[T]) -> T:
        """Await a collaborator call under the timeout, normalising failures."""

        try:
            return await asyncio.wait_for(call, timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            raise CollaboratorError(f"{operation} timed out after {self._timeout:g}s") from exc
        except CollaboratorError:
            raise
        except Exception as exc:
            raise CollaboratorError(f"{operation} failed: {exc}") from exc

    def _action_failed(
        self,
        node: NodeBase,
        ctx: StepContext,
        error: CollaboratorError,
        message: str,
    ) -> NodeResult:
        if node.on_error == ErrorPolicy.FAIL:
            raise error
        logger.warning(
            "Action node failed; continuing",
            extra={
                "workflow_id": str(ctx.workflow.id),
                "participant_id": str(ctx.participant.id),
                "node_id": node.id,
                "error": str(error),
            },
        )
        return NodeResult(message=message, error=str(error))

    # ------------------------------------------------------------------ actions

    async def _trigger(self, node: TriggerNode, ctx: StepContext) -> NodeResult:
        return NodeResult(message="Trigger node passed")

    async def _send_email(self, node: SendEmailNode, ctx: StepContext) -> NodeResult:
        template_id = node.config.template_id
        if not template_id:
            return NodeResult(message="No template configured, skipping", skipped=True)

        try:
            template = await self._invoke(
                "Template lookup", self._collaborators.templates.get_template(template_id)
            )
        except CollaboratorError as exc:
            return self._action_failed(node, ctx, exc, f"Template lookup failed: {exc}")

        if template is None:
            missing = CollaboratorError(f"Template {template_id} not found")
            if node.on_error == ErrorPolicy.FAIL:
                raise missing
            return NodeResult(
                message=f"Template {template_id} not found, skipping",
                skipped=True,
                error=str(missing),
            )

        message = EmailMessage(
            to=ctx.lead.email,
            subject=personalize(node.config.subject or template.subject, ctx.lead),
            html=personalize(template.html_content, ctx.lead),
            text=personalize(template.text_content, ctx.lead) if template.text_content else None,
            tags=["workflow"],
            metadata={
                "workflow_id": str(ctx.workflow.id),
                "workflow_node": node.id,
                "lead_id": ctx.lead.id,
            },
        )
        try:
            receipt = await self._invoke("Email delivery", self._collaborators.email.send(message))
        except CollaboratorError as exc:
            return self._action_failed(node, ctx, exc, f"Email send failed: {exc}")

        if not receipt.success:
            return self._action_failed(
                node, ctx, CollaboratorError("Email provider rejected the message"),
                "Email send failed: provider rejected the message",
            )
        return NodeResult(
            message=f"Email sent: {template.name}",
            metadata={
                "template_id": template_id,
                "template_name": template.name,
                "message_id": receipt.message_id,
            },
        )

    async def _add_tag(self, node: AddTagNode, ctx: StepContext) -> NodeResult:
        if not node.config.tags:
            return NodeResult(message="No tags configured", skipped=True)

        new_tags = [tag for tag in node.config.tags if tag not in ctx.lead.tags]
        if new_tags:
            try:
                await self._invoke(
                    "Tag update", self._collaborators.leads.add_tags(ctx.lead.id, new_tags)
                )
            except CollaboratorError as exc:
                return self._action_failed(node, ctx, exc, f"Adding tags failed: {exc}")
            ctx.lead.tags = [*ctx.lead.tags, *new_tags]
        return NodeResult(
            message=f"Added tags: {', '.join(new_tags)}",
            metadata={"added_tags": new_tags},
        )

    async def _remove_tag(self, node: RemoveTagNode, ctx: StepContext) -> NodeResult:
        if not node.config.tags:
            return NodeResult(message="No tags configured", skipped=True)

        removed = [tag for tag in node.config.tags if tag in ctx.lead.tags]
        if removed:
            try:
                await self._invoke(
                    "Tag update", self._collaborators.leads.remove_tags(ctx.lead.id, removed)
                )
            except CollaboratorError as exc:
                return self._action_failed(node, ctx, exc, f"Removing tags failed: {exc}")
            ctx.lead.tags = [tag for tag in ctx.lead.tags if tag not in removed]
        return NodeResult(
            message=f"Removed tags: {', '.join(removed)}",
            metadata={"removed_tags": removed},
        )

    async def _update_score(self, node: UpdateScoreNode, ctx: StepContext) -> NodeResult:
        change = node.config.score_change
        if change is None:
            return NodeResult(message="No score change configured", skipped=True)

        action = node.config.score_action
        old_score = ctx.lead.score
        new_score = apply_score_change(old_score, change, action)
        level = score_level(new_score)
        try:
            await self._invoke(
                "Score update",
                self._collaborators.leads.update_score(ctx.lead.id, new_score, level),
            )
        except CollaboratorError as exc:
            return self._action_failed(node, ctx, exc, f"Score update failed: {exc}")

        ctx.lead.score = new_score
        ctx.lead.score_level = level
        return NodeResult(
            message=f"Score {action}: {old_score} -> {new_score}",
            metadata={
                "old_score": old_score,
                "new_score": new_score,
                "action": action,
                "score_level": level.value,
            },
        )

    async def _update_field(self, node: UpdateFieldNode, ctx: StepContext) -> NodeResult:
        name = node.config.field_name
        if not name:
            return NodeResult(message="No field name configured", skipped=True)
        if node.config.field_value is None:
            return NodeResult(message="No field value configured", skipped=True)

        value = node.config.field_value
        try:
            await self._invoke(
                "Field update",
                self._collaborators.leads.set_custom_field(ctx.lead.id, name, value),
            )
        except CollaboratorError as exc:
            return self._action_failed(node, ctx, exc, f"Field update failed: {exc}")

        ctx.lead.custom_fields = {**ctx.lead.custom_fields, name: value}
        return NodeResult(
            message=f"Updated field {name}",
            metadata={"field_name": name, "field_value": value},
        )

    async def _enroll_sequence(self, node: EnrollSequenceNode, ctx: StepContext) -> NodeResult:
        sequence_id = node.config.sequence_id
        if not sequence_id:
            return NodeResult(message="No sequence configured", skipped=True)
        try:
            await self._invoke(
                "Sequence enrollment",
                self._collaborators.sequences.enroll(ctx.lead.id, sequence_id),
            )
        except CollaboratorError as exc:
            return self._action_failed(node, ctx, exc, f"Sequence enrollment failed: {exc}")
        return NodeResult(
            message=f"Enrolled in sequence {sequence_id}",
            metadata={"sequence_id": sequence_id},
        )

    async def _send_webhook(self, node: SendWebhookNode, ctx: StepContext) -> NodeResult:
        config = node.config
        if not config.url:
            return NodeResult(message="No webhook URL configured", skipped=True)

        body = (
            personalize_object(config.body, ctx.lead)
            if config.body
            else {"lead": _lead_payload(ctx.lead)}
        )
        try:
            status = await self._invoke(
                "Webhook",
                self._collaborators.webhooks.call(
                    config.url, method=config.method, headers=dict(config.headers), body=body
                ),
            )
            if status >= 400:
                raise CollaboratorError(f"Webhook returned {status}")
        except CollaboratorError as exc:
            return self._action_failed(node, ctx, exc, f"Webhook failed: {exc}")
        return NodeResult(
            message=f"Webhook sent: {status}",
            metadata={"url": config.url, "status": status},
        )

    async def _send_notification(self, node: SendNotificationNode, ctx: StepContext) -> NodeResult:
        config = node.config
        text = (
            personalize(config.message, ctx.lead)
            if config.message
            else (
                f'Lead {ctx.lead.email} reached node "{node.label}" '
                f'in workflow "{ctx.workflow.name}"'
            )
        )
        notification = Notification(
            notification_type=config.notification_type,
            recipient=config.recipient,
            message=text,
            metadata={
                "workflow_id": str(ctx.workflow.id),
                "node_id": node.id,
                "lead_id": ctx.lead.id,
            },
        )
        try:
            await self._invoke("Notification", self._collaborators.notifier.notify(notification))
        except CollaboratorError as exc:
            return self._action_failed(node, ctx, exc, f"Notification failed: {exc}")
        return NodeResult(
            message="Notification sent",
            metadata={"type": config.notification_type, "recipient": config.recipient},
        )

    async def _create_task(self, node: CreateTaskNode, ctx: StepContext) -> NodeResult:
        config = node.config
        title = (
            personalize(config.title, ctx.lead)
            if config.title
            else f"Follow up with {ctx.lead.email}"
        )
        task = TaskRequest(
            lead_id=ctx.lead.id,
            title=title,
            description=personalize(config.description, ctx.lead) if config.description else None,
            assignee=config.assignee,
            due_in_days=config.due_in_days,
            metadata={"workflow_id": str(ctx.workflow.id), "node_id": node.id},
        )
        try:
            await self._invoke("Task creation", self._collaborators.tasks.create_task(task))
        except CollaboratorError as exc:
            return self._action_failed(node, ctx, exc, f"Task creation failed: {exc}")
        return NodeResult(message=f"Task created: {title}", metadata={"assignee": config.assignee})

    # ------------------------------------------------------------------ control flow

    async def _wait(self, node: WaitNode, ctx: StepContext) -> NodeResult:
        duration = node.config.duration
        if not duration:
            return NodeResult(message="No wait duration configured", skipped=True)

        unit = node.config.unit
        wake = apply_business_hours(
            ctx.now + wait_duration(duration, unit), ctx.workflow.settings
        )
        return NodeResult(
            message=f"Waiting {duration:g} {unit}",
            wait=True,
            wait_until=wake,
            metadata={"duration": duration, "unit": unit},
        )

    async def _wait_until(self, node: WaitUntilNode, ctx: StepContext) -> NodeResult:
        if not node.config.time:
            return NodeResult(message="No wait time configured", skipped=True)

        settings = ctx.workflow.settings
        wake = next_time_of_day(
            ctx.now,
            parse_time_of_day(node.config.time),
            weekday=node.config.day,
            tz=settings.timezone,
        )
        wake = apply_business_hours(wake, settings)
        suffix = f" on {node.config.day}" if node.config.day else ""
        return NodeResult(
            message=f"Waiting until {node.config.time}{suffix}",
            wait=True,
            wait_until=wake,
            metadata={"time": node.config.time, "day": node.config.day},
        )

    async def _condition(self, node: ConditionNode, ctx: StepContext) -> NodeResult:
        config = node.config
        if not config.field or config.operator is None:
            return NodeResult(
                message='Condition not fully configured, taking "no" branch',
                branch_label="no",
            )
        outcome = "yes" if evaluate_condition(ctx.lead, config) else "no"
        return NodeResult(
            message=f'Condition "{config.field} {config.operator.value} {config.value}": {outcome}',
            branch_label=outcome,
            metadata={"field": config.field, "operator": config.operator.value},
        )

    async def _split(self, node: SplitNode, ctx: StepContext) -> NodeResult:
        variants = node.config.variants
        if not variants:
            return NodeResult(message="No split variants configured", skipped=True)

        variant = select_variant(variants, self._rng)
        return NodeResult(
            message=f'Split: selected variant "{variant.name or variant.id}"',
            branch_label=variant.id,
            split_variant_id=variant.id,
            metadata={"variant_id": variant.id, "variant_name": variant.name},
        )

    async def _goal(self, node: GoalNode, ctx: StepContext) -> NodeResult:
        config = node.config
        if not _goal_met(config, ctx.lead):
            return NodeResult(
                message=f"Goal not yet achieved: {config.goal_type}",
                metadata={"goal_type": config.goal_type},
            )

        metadata = {"goal_type": config.goal_type}
        if ctx.workflow.settings.exit_on_goal:
            return NodeResult(
                message=f"Goal achieved: {config.goal_type}",
                goal_achieved=True,
                exit=True,
                exit_reason=GOAL_ACHIEVED_REASON,
                metadata=metadata,
            )
        return NodeResult(
            message=f"Goal achieved: {config.goal_type}",
            goal_achieved=True,
            metadata=metadata,
        )

    async def _exit(self, node: ExitNode, ctx: StepContext) -> NodeResult:
        return NodeResult(message=EXIT_NODE_REASON, exit=True, exit_reason=EXIT_NODE_REASON)
