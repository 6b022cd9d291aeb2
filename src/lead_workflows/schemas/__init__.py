"""Pydantic schemas exported for API and engine use."""

from .base import (
    IdentifiedSchema,
    Metadata,
    ORMModel,
    TimestampedSchema,
    UTCDatetime,
    utc_now,
)
from .events import DomainEvent, ExecutionJob
from .leads import (
    EmailMessage,
    EmailReceipt,
    EmailTemplate,
    LeadProfile,
    LeadScoreLevel,
    Notification,
    TaskRequest,
)
from .participants import LogAction, LogEntry, ParticipantResponse, ParticipantState
from .workflows import (
    ConditionConfig,
    ConditionOperator,
    ErrorPolicy,
    GoalConfig,
    NodeType,
    SplitVariant,
    TriggerConfig,
    WorkflowCreate,
    WorkflowDefinition,
    WorkflowEdge,
    WorkflowMetrics,
    WorkflowNode,
    WorkflowResponse,
    WorkflowSettings,
    WorkflowTrigger,
    WorkflowUpdate,
)

__all__ = [
    "ConditionConfig",
    "ConditionOperator",
    "DomainEvent",
    "EmailMessage",
    "EmailReceipt",
    "EmailTemplate",
    "ErrorPolicy",
    "ExecutionJob",
    "GoalConfig",
    "IdentifiedSchema",
    "LeadProfile",
    "LeadScoreLevel",
    "LogAction",
    "LogEntry",
    "Metadata",
    "NodeType",
    "Notification",
    "ORMModel",
    "ParticipantResponse",
    "ParticipantState",
    "SplitVariant",
    "TaskRequest",
    "TimestampedSchema",
    "TriggerConfig",
    "UTCDatetime",
    "WorkflowCreate",
    "WorkflowDefinition",
    "WorkflowEdge",
    "WorkflowMetrics",
    "WorkflowNode",
    "WorkflowResponse",
    "WorkflowSettings",
    "WorkflowTrigger",
    "WorkflowUpdate",
    "utc_now",
]
