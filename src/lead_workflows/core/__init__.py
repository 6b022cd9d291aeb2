"""Workflow engine core: graph, triggers, enrollment, execution and scheduling."""

from .collaborators import (
    CohortResolver,
    Collaborators,
    EmailSender,
    LeadStore,
    Notifier,
    SequenceEnroller,
    TaskCreator,
    TemplateStore,
    WebhookClient,
)
from .conditions import evaluate_condition, resolve_field
from .enrollment import Eligibility, EnrollmentService
from .exceptions import (
    CollaboratorError,
    ConcurrentModificationError,
    DefinitionError,
    EnrollmentError,
    NotFoundError,
    ParticipantNotFoundError,
    ParticipantRepositoryError,
    RepositoryError,
    WorkflowEngineError,
    WorkflowNotFoundError,
    WorkflowRepositoryError,
)
from .executor import NodeExecutor, StepOutcome
from .graph import WorkflowGraph, validate_definition, validate_for_activation
from .integrations import CachedTemplateStore, HttpWebhookClient, MarketingApiClient
from .messaging import EventBus, JobQueue, RedisEventBus, RedisJobQueue
from .nodes import NodeHandlers, NodeResult, StepContext
from .participant_repository import ParticipantRepository
from .scheduler import WorkflowScheduler
from .triggers import DispatchReport, TriggerDispatcher, matches_trigger
from .workflow_repository import WorkflowRepository

__all__ = [
    "CachedTemplateStore",
    "CohortResolver",
    "CollaboratorError",
    "Collaborators",
    "ConcurrentModificationError",
    "DefinitionError",
    "DispatchReport",
    "Eligibility",
    "EmailSender",
    "EnrollmentError",
    "EnrollmentService",
    "EventBus",
    "HttpWebhookClient",
    "JobQueue",
    "LeadStore",
    "MarketingApiClient",
    "NodeExecutor",
    "NodeHandlers",
    "NodeResult",
    "NotFoundError",
    "Notifier",
    "ParticipantNotFoundError",
    "ParticipantRepository",
    "ParticipantRepositoryError",
    "RedisEventBus",
    "RedisJobQueue",
    "RepositoryError",
    "SequenceEnroller",
    "StepContext",
    "StepOutcome",
    "TaskCreator",
    "TemplateStore",
    "TriggerDispatcher",
    "WebhookClient",
    "WorkflowEngineError",
    "WorkflowGraph",
    "WorkflowNotFoundError",
    "WorkflowRepository",
    "WorkflowRepositoryError",
    "WorkflowScheduler",
    "evaluate_condition",
    "matches_trigger",
    "resolve_field",
    "validate_definition",
    "validate_for_activation",
]
