"""Reusable dependency providers shared by the REST API and the worker."""

from __future__ import annotations

import logging
from typing import Annotated, AsyncGenerator

from fastapi import Depends
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import EngineConfig, get_config
from ..core.collaborators import Collaborators
from ..core.enrollment import EnrollmentService
from ..core.executor import NodeExecutor
from ..core.integrations import CachedTemplateStore, HttpWebhookClient, MarketingApiClient
from ..core.messaging import EventBus, RedisEventBus, RedisJobQueue, create_redis_client
from ..core.nodes import NodeHandlers
from ..core.participant_repository import ParticipantRepository
from ..core.scheduler import WorkflowScheduler
from ..core.triggers import TriggerDispatcher
from ..core.workflow_repository import WorkflowRepository
from ..storage.database import get_async_session, get_session_factory

logger = logging.getLogger(__name__)

_redis: Redis | None = None
_marketing_client: MarketingApiClient | None = None
_webhook_client: HttpWebhookClient | None = None
_template_store: CachedTemplateStore | None = None


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session for request-scoped usage."""

    async with get_async_session() as session:
        yield session


def get_redis() -> Redis:
    global _redis
    if _redis is None:
        _redis = create_redis_client(get_config().redis_url)
    return _redis


def get_workflow_repository() -> WorkflowRepository:
    """Return a WorkflowRepository bound to the global session factory."""

    return WorkflowRepository(get_session_factory())


def get_participant_repository() -> ParticipantRepository:
    """Return a ParticipantRepository bound to the global session factory."""

    return ParticipantRepository(get_session_factory())


def get_job_queue() -> RedisJobQueue:
    config = get_config()
    return RedisJobQueue(
        get_redis(),
        config.job_stream_key,
        max_attempts=config.max_job_attempts,
        backoff_seconds=config.job_backoff_seconds,
    )


def get_event_bus() -> EventBus:
    return RedisEventBus(get_redis(), get_config().trigger_stream_key)


def get_collaborators() -> Collaborators:
    """Wire the HTTP collaborator implementations as process-wide singletons."""

    global _marketing_client, _webhook_client, _template_store
    config = get_config()
    if _marketing_client is None:
        _marketing_client = MarketingApiClient(config)
    if _template_store is None:
        _template_store = CachedTemplateStore.from_config(_marketing_client, config)
    if _webhook_client is None:
        _webhook_client = HttpWebhookClient(timeout=config.collaborator_timeout_seconds)
    return Collaborators(
        leads=_marketing_client,
        templates=_template_store,
        email=_marketing_client,
        webhooks=_webhook_client,
        sequences=_marketing_client,
        notifier=_marketing_client,
        tasks=_marketing_client,
        cohorts=_marketing_client,
    )


def build_engine(
    collaborators: Collaborators,
    *,
    config: EngineConfig | None = None,
) -> tuple[EnrollmentService, NodeExecutor, TriggerDispatcher, WorkflowScheduler]:
    """Assemble the engine services around the shared repositories and queue."""

    config = config or get_config()
    workflows = get_workflow_repository()
    participants = get_participant_repository()
    jobs = get_job_queue()

    enrollment = EnrollmentService(workflows, participants, jobs, collaborators.leads)
    executor = NodeExecutor(
        workflows,
        participants,
        NodeHandlers(collaborators, timeout_seconds=config.collaborator_timeout_seconds),
        collaborators.leads,
        jobs,
        max_steps=config.max_steps_per_invocation,
        lead_timeout_seconds=config.collaborator_timeout_seconds,
    )
    dispatcher = TriggerDispatcher(workflows, enrollment)
    scheduler = WorkflowScheduler(
        workflows,
        participants,
        enrollment,
        jobs,
        collaborators.cohorts,
        sweep_interval_seconds=config.sweep_interval_seconds,
        sweep_batch_size=config.sweep_batch_size,
        stall_timeout_seconds=config.stall_timeout_seconds,
        schedule_sync_interval_seconds=config.schedule_sync_interval_seconds,
    )
    return enrollment, executor, dispatcher, scheduler


def get_enrollment_service(
    workflows: WorkflowRepository = Depends(get_workflow_repository),
    participants: ParticipantRepository = Depends(get_participant_repository),
) -> EnrollmentService:
    return EnrollmentService(workflows, participants, get_job_queue(), get_collaborators().leads)


def get_executor(
    workflows: WorkflowRepository = Depends(get_workflow_repository),
    participants: ParticipantRepository = Depends(get_participant_repository),
) -> NodeExecutor:
    config = get_config()
    collaborators = get_collaborators()
    return NodeExecutor(
        workflows,
        participants,
        NodeHandlers(collaborators, timeout_seconds=config.collaborator_timeout_seconds),
        collaborators.leads,
        get_job_queue(),
        max_steps=config.max_steps_per_invocation,
        lead_timeout_seconds=config.collaborator_timeout_seconds,
    )


async def close_resources() -> None:
    """Close pooled HTTP and Redis connections."""

    global _redis, _marketing_client, _webhook_client, _template_store
    _template_store = None
    if _marketing_client is not None:
        await _marketing_client.close()
        _marketing_client = None
    if _webhook_client is not None:
        await _webhook_client.close()
        _webhook_client = None
    if _redis is not None:
        await _redis.aclose()
        _redis = None


DbSession = Annotated[AsyncSession, Depends(get_db_session)]
WorkflowRepo = Annotated[WorkflowRepository, Depends(get_workflow_repository)]
ParticipantRepo = Annotated[ParticipantRepository, Depends(get_participant_repository)]
EventBusDep = Annotated[EventBus, Depends(get_event_bus)]
EnrollmentDep = Annotated[EnrollmentService, Depends(get_enrollment_service)]
ExecutorDep = Annotated[NodeExecutor, Depends(get_executor)]


__all__ = [
    "DbSession",
    "EnrollmentDep",
    "EventBusDep",
    "ExecutorDep",
    "ParticipantRepo",
    "WorkflowRepo",
    "build_engine",
    "close_resources",
    "get_collaborators",
    "get_db_session",
    "get_enrollment_service",
    "get_event_bus",
    "get_executor",
    "get_job_queue",
    "get_participant_repository",
    "get_redis",
    "get_workflow_repository",
]
