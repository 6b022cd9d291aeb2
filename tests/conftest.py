"""
Shared pytest fixtures for the workflow engine tests.

Every test gets its own SQLite database in a temp directory, in-memory
collaborators recording the calls made to them, a job queue that keeps jobs
in a list, and a clock that only moves when a test moves it.
"""

from __future__ import annotations

import random
from collections.abc import AsyncGenerator, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any
from uuid import UUID

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from lead_workflows.core.collaborators import Collaborators
from lead_workflows.core.enrollment import EnrollmentService
from lead_workflows.core.executor import NodeExecutor, StepOutcome
from lead_workflows.core.nodes import NodeHandlers
from lead_workflows.core.participant_repository import ParticipantRepository
from lead_workflows.core.scheduler import WorkflowScheduler
from lead_workflows.core.triggers import TriggerDispatcher
from lead_workflows.core.workflow_repository import WorkflowRepository
from lead_workflows.models import TriggerType, WorkflowStatus
from lead_workflows.schemas import (
    EmailMessage,
    EmailReceipt,
    EmailTemplate,
    ExecutionJob,
    LeadProfile,
    LeadScoreLevel,
    Notification,
    TaskRequest,
    WorkflowCreate,
    WorkflowDefinition,
)
from lead_workflows.storage.database import create_engine, init_db

START = datetime(2024, 3, 4, 10, 0, tzinfo=timezone.utc)  # a Monday


# ============================================================================
# CLOCK
# ============================================================================


class FrozenClock:
    """Callable clock that only advances when told to."""

    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, moment: datetime) -> None:
        self.now = moment


# ============================================================================
# COLLABORATORS
# ============================================================================


class InMemoryLeadStore:
    def __init__(self) -> None:
        self.leads: dict[str, LeadProfile] = {}
        self.calls: list[tuple[str, Any]] = []
        self.fail_mutations = False
        self.get_error: Exception | None = None

    def add(self, lead_id: str, **fields: Any) -> LeadProfile:
        email = fields.pop("email", f"{lead_id}@example.com")
        lead = LeadProfile(id=lead_id, email=email, **fields)
        self.leads[lead_id] = lead
        return lead

    async def get_lead(self, lead_id: str) -> LeadProfile | None:
        self.calls.append(("get_lead", lead_id))
        if self.get_error is not None:
            raise self.get_error
        lead = self.leads.get(lead_id)
        return lead.model_copy(deep=True) if lead is not None else None

    def _check(self) -> None:
        if self.fail_mutations:
            raise RuntimeError("lead service unavailable")

    async def add_tags(self, lead_id: str, tags: Sequence[str]) -> None:
        self._check()
        self.calls.append(("add_tags", (lead_id, list(tags))))
        lead = self.leads[lead_id]
        lead.tags = [*lead.tags, *[tag for tag in tags if tag not in lead.tags]]

    async def remove_tags(self, lead_id: str, tags: Sequence[str]) -> None:
        self._check()
        self.calls.append(("remove_tags", (lead_id, list(tags))))
        lead = self.leads[lead_id]
        lead.tags = [tag for tag in lead.tags if tag not in tags]

    async def update_score(self, lead_id: str, score: int, level: LeadScoreLevel) -> None:
        self._check()
        self.calls.append(("update_score", (lead_id, score, level)))
        lead = self.leads[lead_id]
        lead.score = score
        lead.score_level = level

    async def set_custom_field(self, lead_id: str, field_name: str, value: Any) -> None:
        self._check()
        self.calls.append(("set_custom_field", (lead_id, field_name, value)))
        lead = self.leads[lead_id]
        lead.custom_fields = {**lead.custom_fields, field_name: value}


class InMemoryTemplates:
    def __init__(self) -> None:
        self.templates: dict[str, EmailTemplate] = {}

    def add(self, template_id: str, **fields: Any) -> EmailTemplate:
        template = EmailTemplate(
            id=template_id,
            name=fields.get("name", template_id),
            subject=fields.get("subject", "Hello {{first_name}}"),
            html_content=fields.get("html_content", "<p>Hi {{first_name}}</p>"),
            text_content=fields.get("text_content"),
        )
        self.templates[template_id] = template
        return template

    async def get_template(self, template_id: str) -> EmailTemplate | None:
        return self.templates.get(template_id)


class RecordingEmailSender:
    def __init__(self) -> None:
        self.sent: list[EmailMessage] = []
        self.error: Exception | None = None
        self.success = True

    async def send(self, message: EmailMessage) -> EmailReceipt:
        if self.error is not None:
            raise self.error
        self.sent.append(message)
        return EmailReceipt(success=self.success, message_id=f"msg-{len(self.sent)}")


class RecordingWebhookClient:
    def __init__(self, status: int = 200) -> None:
        self.status = status
        self.calls: list[dict[str, Any]] = []

    async def call(
        self,
        url: str,
        *,
        method: str = "POST",
        headers: dict[str, str] | None = None,
        body: dict[str, Any] | None = None,
    ) -> int:
        self.calls.append({"url": url, "method": method, "headers": headers, "body": body})
        return self.status


class RecordingSequences:
    def __init__(self) -> None:
        self.enrollments: list[tuple[str, str]] = []

    async def enroll(self, lead_id: str, sequence_id: str) -> None:
        self.enrollments.append((lead_id, sequence_id))


class RecordingNotifier:
    def __init__(self) -> None:
        self.notifications: list[Notification] = []

    async def notify(self, notification: Notification) -> None:
        self.notifications.append(notification)


class RecordingTasks:
    def __init__(self) -> None:
        self.tasks: list[TaskRequest] = []

    async def create_task(self, task: TaskRequest) -> None:
        self.tasks.append(task)


class StaticCohorts:
    def __init__(self) -> None:
        self.cohorts: dict[str | None, list[str]] = {}

    async def resolve(self, workflow_id: str, segment_id: str | None) -> list[str]:
        return list(self.cohorts.get(segment_id, []))


class RecordingJobQueue:
    """Job queue keeping jobs in memory; delayed jobs are kept separately."""

    def __init__(self) -> None:
        self.ready: list[ExecutionJob] = []
        self.delayed: list[tuple[ExecutionJob, timedelta]] = []
        self.history: list[ExecutionJob] = []

    async def enqueue(self, job: ExecutionJob, *, delay: timedelta | None = None) -> None:
        self.history.append(job)
        if delay is not None and delay.total_seconds() > 0:
            self.delayed.append((job, delay))
        else:
            self.ready.append(job)


# ============================================================================
# ENGINE HARNESS
# ============================================================================


@dataclass
class Engine:
    """All engine services wired against the test database and fakes."""

    clock: FrozenClock
    workflows: WorkflowRepository
    participants: ParticipantRepository
    jobs: RecordingJobQueue
    leads: InMemoryLeadStore
    templates: InMemoryTemplates
    email: RecordingEmailSender
    webhooks: RecordingWebhookClient
    sequences: RecordingSequences
    notifier: RecordingNotifier
    tasks: RecordingTasks
    cohorts: StaticCohorts
    handlers: NodeHandlers
    enrollment: EnrollmentService
    executor: NodeExecutor
    dispatcher: TriggerDispatcher
    scheduler: WorkflowScheduler
    outcomes: list[StepOutcome] = field(default_factory=list)

    async def drain(self, limit: int = 100) -> list[StepOutcome]:
        """Run ready jobs until the queue is empty."""

        outcomes: list[StepOutcome] = []
        for _ in range(limit):
            if not self.jobs.ready:
                break
            job = self.jobs.ready.pop(0)
            outcomes.append(await self.executor.execute_step(job.participant_id))
        self.outcomes.extend(outcomes)
        return outcomes

    async def create_active(self, payload: WorkflowCreate) -> WorkflowDefinition:
        record = await self.workflows.create(payload)
        await self.workflows.set_status(record.id, WorkflowStatus.ACTIVE, now=self.clock())
        definition = await self.workflows.get_definition(record.id)
        assert definition is not None
        return definition

    async def metrics(self, workflow_id: UUID) -> dict[str, int]:
        definition = await self.workflows.get_definition(workflow_id)
        assert definition is not None
        return definition.metrics.model_dump()


def build_engine_harness(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    clock: FrozenClock | None = None,
    rng_seed: int = 7,
    max_steps: int = 50,
) -> Engine:
    clock = clock or FrozenClock()
    workflows = WorkflowRepository(session_factory)
    participants = ParticipantRepository(session_factory)
    jobs = RecordingJobQueue()
    leads = InMemoryLeadStore()
    templates = InMemoryTemplates()
    email = RecordingEmailSender()
    webhooks = RecordingWebhookClient()
    sequences = RecordingSequences()
    notifier = RecordingNotifier()
    tasks = RecordingTasks()
    cohorts = StaticCohorts()
    collaborators = Collaborators(
        leads=leads,
        templates=templates,
        email=email,
        webhooks=webhooks,
        sequences=sequences,
        notifier=notifier,
        tasks=tasks,
        cohorts=cohorts,
    )
    handlers = NodeHandlers(collaborators, timeout_seconds=1.0, rng=random.Random(rng_seed))
    enrollment = EnrollmentService(workflows, participants, jobs, leads, clock=clock)
    executor = NodeExecutor(
        workflows,
        participants,
        handlers,
        leads,
        jobs,
        clock=clock,
        max_steps=max_steps,
        lead_timeout_seconds=1.0,
    )
    dispatcher = TriggerDispatcher(workflows, enrollment)
    scheduler = WorkflowScheduler(workflows, participants, enrollment, jobs, cohorts, clock=clock)
    return Engine(
        clock=clock,
        workflows=workflows,
        participants=participants,
        jobs=jobs,
        leads=leads,
        templates=templates,
        email=email,
        webhooks=webhooks,
        sequences=sequences,
        notifier=notifier,
        tasks=tasks,
        cohorts=cohorts,
        handlers=handlers,
        enrollment=enrollment,
        executor=executor,
        dispatcher=dispatcher,
        scheduler=scheduler,
    )


# ============================================================================
# DATABASE FIXTURES
# ============================================================================


@pytest.fixture
def db_url(tmp_path: Path) -> str:
    """Return a file-backed SQLite URL inside the test's temp directory."""
    return f"sqlite+aiosqlite:///{tmp_path / 'workflows.db'}"


@pytest_asyncio.fixture
async def db_engine(db_url: str) -> AsyncGenerator[AsyncEngine, None]:
    engine = create_engine(db_url)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, expire_on_commit=False)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def engine(session_factory: async_sessionmaker[AsyncSession], clock: FrozenClock) -> Engine:
    return build_engine_harness(session_factory, clock=clock)


# ============================================================================
# DEFINITION BUILDERS
# ============================================================================


def node(node_id: str, node_type: str, **config: Any) -> dict[str, Any]:
    on_error = config.pop("on_error", None)
    payload: dict[str, Any] = {"id": node_id, "type": node_type, "name": node_id}
    if config:
        payload["config"] = config
    if on_error is not None:
        payload["on_error"] = on_error
    return payload


def edge(source: str, target: str, label: str | None = None) -> dict[str, Any]:
    suffix = f"-{label}" if label else ""
    payload: dict[str, Any] = {
        "id": f"{source}->{target}{suffix}",
        "source": source,
        "target": target,
    }
    if label is not None:
        payload["label"] = label
    return payload


def chain(*node_ids: str) -> list[dict[str, Any]]:
    return [edge(source, target) for source, target in zip(node_ids, node_ids[1:])]


def workflow_payload(
    nodes: list[dict[str, Any]],
    edges: list[dict[str, Any]],
    *,
    name: str = "Test workflow",
    trigger_type: TriggerType = TriggerType.MANUAL,
    trigger_config: dict[str, Any] | None = None,
    settings: dict[str, Any] | None = None,
) -> WorkflowCreate:
    return WorkflowCreate.model_validate(
        {
            "name": name,
            "trigger": {"type": trigger_type, "config": trigger_config or {}},
            "nodes": nodes,
            "edges": edges,
            "settings": settings or {},
        }
    )
