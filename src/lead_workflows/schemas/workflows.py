"""Workflow definition schemas.

Node configuration is a tagged union keyed by ``type`` so that every node is
validated when the definition is saved rather than decoded ad hoc while a
participant is running through it.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union
from uuid import UUID
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, field_validator

from ..models import TriggerType, WorkflowStatus
from .base import IdentifiedSchema, ORMModel


class NodeType(str, Enum):
    """Every node kind understood by the executor."""

    TRIGGER = "trigger"
    SEND_EMAIL = "send_email"
    ADD_TAG = "add_tag"
    REMOVE_TAG = "remove_tag"
    UPDATE_SCORE = "update_score"
    UPDATE_FIELD = "update_field"
    ENROLL_SEQUENCE = "enroll_sequence"
    SEND_WEBHOOK = "send_webhook"
    SEND_NOTIFICATION = "send_notification"
    CREATE_TASK = "create_task"
    WAIT = "wait"
    WAIT_UNTIL = "wait_until"
    CONDITION = "condition"
    SPLIT = "split"
    GOAL = "goal"
    EXIT = "exit"


class ErrorPolicy(str, Enum):
    """What an action node does when its collaborator fails."""

    CONTINUE = "continue"
    FAIL = "fail"


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    GREATER_OR_EQUAL = "greater_or_equal"
    LESS_OR_EQUAL = "less_or_equal"
    IS_SET = "is_set"
    IS_NOT_SET = "is_not_set"
    IN_LIST = "in_list"
    NOT_IN_LIST = "not_in_list"


Weekday = Literal["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]


# --------------------------------------------------------------------------- node configs


class EmptyConfig(ORMModel):
    """Configuration for nodes that take no options."""


class SendEmailConfig(ORMModel):
    template_id: str | None = None
    subject: str | None = None


class TagsConfig(ORMModel):
    tags: list[str] = Field(default_factory=list)


class UpdateScoreConfig(ORMModel):
    score_change: int | None = None
    score_action: Literal["add", "subtract", "set"] = "add"


class UpdateFieldConfig(ORMModel):
    field_name: str | None = None
    field_value: Any = None


class EnrollSequenceConfig(ORMModel):
    sequence_id: str | None = None


class WebhookConfig(ORMModel):
    url: str | None = None
    method: Literal["GET", "POST", "PUT"] = "POST"
    headers: dict[str, str] = Field(default_factory=dict)
    body: dict[str, Any] | None = None


class NotificationConfig(ORMModel):
    notification_type: Literal["email", "slack", "internal"] = "internal"
    recipient: str | None = None
    message: str | None = None


class CreateTaskConfig(ORMModel):
    title: str | None = None
    description: str | None = None
    assignee: str | None = None
    due_in_days: int | None = Field(default=None, ge=0)


class WaitConfig(ORMModel):
    duration: float | None = Field(default=None, gt=0)
    unit: Literal["minutes", "hours", "days"] = "minutes"


class WaitUntilConfig(ORMModel):
    time: str | None = Field(default=None, pattern=r"^([01]?\d|2[0-3]):[0-5]\d$")
    day: Weekday | None = None

    @field_validator("day", mode="before")
    @classmethod
    def _lowercase_day(cls, value: object) -> object:
        if isinstance(value, str):
            return value.lower()
        return value


class ConditionConfig(ORMModel):
    field: str | None = None
    operator: ConditionOperator | None = None
    value: Any = None


class SplitVariant(ORMModel):
    id: str = Field(min_length=1)
    name: str = ""
    weight: float = Field(ge=0)


class SplitConfig(ORMModel):
    variants: list[SplitVariant] = Field(default_factory=list)


class GoalConfig(ORMModel):
    goal_type: Literal["tag_added", "score_reached", "condition"] = "tag_added"
    tag_name: str | None = None
    score_threshold: int | None = None
    condition: ConditionConfig | None = None


# --------------------------------------------------------------------------- nodes


class NodeBase(ORMModel):
    """Fields shared by every node type."""

    id: str = Field(min_length=1, max_length=128)
    name: str = ""
    on_error: ErrorPolicy = ErrorPolicy.CONTINUE
    position: dict[str, float] | None = None

    @property
    def label(self) -> str:
        return self.name or self.id


class TriggerNode(NodeBase):
    type: Literal["trigger"]
    config: EmptyConfig = Field(default_factory=EmptyConfig)


class SendEmailNode(NodeBase):
    type: Literal["send_email"]
    config: SendEmailConfig = Field(default_factory=SendEmailConfig)


class AddTagNode(NodeBase):
    type: Literal["add_tag"]
    config: TagsConfig = Field(default_factory=TagsConfig)


class RemoveTagNode(NodeBase):
    type: Literal["remove_tag"]
    config: TagsConfig = Field(default_factory=TagsConfig)


class UpdateScoreNode(NodeBase):
    type: Literal["update_score"]
    config: UpdateScoreConfig = Field(default_factory=UpdateScoreConfig)


class UpdateFieldNode(NodeBase):
    type: Literal["update_field"]
    config: UpdateFieldConfig = Field(default_factory=UpdateFieldConfig)


class EnrollSequenceNode(NodeBase):
    type: Literal["enroll_sequence"]
    config: EnrollSequenceConfig = Field(default_factory=EnrollSequenceConfig)


class SendWebhookNode(NodeBase):
    type: Literal["send_webhook"]
    config: WebhookConfig = Field(default_factory=WebhookConfig)


class SendNotificationNode(NodeBase):
    type: Literal["send_notification"]
    config: NotificationConfig = Field(default_factory=NotificationConfig)


class CreateTaskNode(NodeBase):
    type: Literal["create_task"]
    config: CreateTaskConfig = Field(default_factory=CreateTaskConfig)


class WaitNode(NodeBase):
    type: Literal["wait"]
    config: WaitConfig = Field(default_factory=WaitConfig)


class WaitUntilNode(NodeBase):
    type: Literal["wait_until"]
    config: WaitUntilConfig = Field(default_factory=WaitUntilConfig)


class ConditionNode(NodeBase):
    type: Literal["condition"]
    config: ConditionConfig = Field(default_factory=ConditionConfig)


class SplitNode(NodeBase):
    type: Literal["split"]
    config: SplitConfig = Field(default_factory=SplitConfig)


class GoalNode(NodeBase):
    type: Literal["goal"]
    config: GoalConfig = Field(default_factory=GoalConfig)


class ExitNode(NodeBase):
    type: Literal["exit"]
    config: EmptyConfig = Field(default_factory=EmptyConfig)


WorkflowNode = Annotated[
    Union[
        TriggerNode,
        SendEmailNode,
        AddTagNode,
        RemoveTagNode,
        UpdateScoreNode,
        UpdateFieldNode,
        EnrollSequenceNode,
        SendWebhookNode,
        SendNotificationNode,
        CreateTaskNode,
        WaitNode,
        WaitUntilNode,
        ConditionNode,
        SplitNode,
        GoalNode,
        ExitNode,
    ],
    Field(discriminator="type"),
]


class WorkflowEdge(ORMModel):
    """Directed connection between two nodes, optionally labelled by branch."""

    id: str = Field(min_length=1, max_length=128)
    source: str
    target: str
    label: str | None = None
    source_handle: str | None = None

    def matches_branch(self, branch_label: str) -> bool:
        return branch_label in (self.label, self.source_handle)


# --------------------------------------------------------------------------- trigger & settings


class TriggerConfig(ORMModel):
    """Type-specific matching options; unset keys match any event."""

    tag_name: str | None = None
    score_threshold: float | None = None
    score_direction: Literal["above", "below", "crosses"] | None = None
    email_template_id: str | None = None
    campaign_id: str | None = None
    page_url: str | None = None
    page_url_pattern: str | None = None
    form_id: str | None = None
    product_id: str | None = None
    min_amount: float | None = None
    funnel_id: str | None = None
    step_id: str | None = None
    challenge_id: str | None = None
    day_number: int | None = None
    event_name: str | None = None
    schedule: str | None = Field(default=None, description="Cron expression for scheduled triggers")
    segment_id: str | None = None


class WorkflowTrigger(ORMModel):
    type: TriggerType
    config: TriggerConfig = Field(default_factory=TriggerConfig)


class WorkflowSettings(ORMModel):
    """Enrollment and scheduling rules for a workflow definition."""

    timezone: str = "UTC"
    allow_reentry: bool = False
    reentry_delay_days: float | None = Field(default=None, ge=0)
    max_enrollments: int | None = Field(default=None, ge=1)
    exit_on_goal: bool = True
    business_hours_only: bool = False
    business_hours_start: int = Field(default=9, ge=0, le=23)
    business_hours_end: int = Field(default=17, ge=1, le=24)
    skip_weekends: bool = False

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone '{value}'") from exc
        return value


class WorkflowMetrics(ORMModel):
    total_entered: int = 0
    currently_active: int = 0
    completed: int = 0
    exited: int = 0
    goal_achieved: int = 0


# --------------------------------------------------------------------------- payloads


class WorkflowDefinitionBase(ORMModel):
    """Shared workflow definition payload."""

    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    trigger: WorkflowTrigger
    nodes: list[WorkflowNode] = Field(default_factory=list)
    edges: list[WorkflowEdge] = Field(default_factory=list)
    settings: WorkflowSettings = Field(default_factory=WorkflowSettings)
    tags: list[str] = Field(default_factory=list)


class WorkflowCreate(WorkflowDefinitionBase):
    """Creation payload for workflows; new definitions always start as drafts."""


class WorkflowUpdate(ORMModel):
    """Partial update payload for workflows."""

    name: str | None = None
    description: str | None = None
    trigger: WorkflowTrigger | None = None
    nodes: list[WorkflowNode] | None = None
    edges: list[WorkflowEdge] | None = None
    settings: WorkflowSettings | None = None
    tags: list[str] | None = None


class WorkflowDefinition(WorkflowDefinitionBase):
    """Immutable snapshot of a stored workflow used by the engine."""

    id: UUID
    status: WorkflowStatus
    version: int = 1
    metrics: WorkflowMetrics = Field(default_factory=WorkflowMetrics)
    activated_at: datetime | None = None


class WorkflowResponse(IdentifiedSchema, WorkflowDefinition):
    """Response payload for persisted workflows."""


__all__ = [
    "AddTagNode",
    "ConditionConfig",
    "ConditionNode",
    "ConditionOperator",
    "CreateTaskNode",
    "EnrollSequenceNode",
    "ErrorPolicy",
    "ExitNode",
    "GoalConfig",
    "GoalNode",
    "NodeBase",
    "NodeType",
    "RemoveTagNode",
    "SendEmailNode",
    "SendNotificationNode",
    "SendWebhookNode",
    "SplitConfig",
    "SplitNode",
    "SplitVariant",
    "TriggerConfig",
    "TriggerNode",
    "UpdateFieldNode",
    "UpdateScoreNode",
    "WaitNode",
    "WaitUntilNode",
    "Weekday",
    "WorkflowCreate",
    "WorkflowDefinition",
    "WorkflowEdge",
    "WorkflowMetrics",
    "WorkflowNode",
    "WorkflowResponse",
    "WorkflowSettings",
    "WorkflowTrigger",
    "WorkflowUpdate",
]
