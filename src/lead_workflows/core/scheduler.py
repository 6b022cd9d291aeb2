"""Periodic resumption of waiting participants and calendar-scheduled workflows."""

from __future__ import annotations

import logging
from datetime import timedelta
from uuid import UUID

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from ..models import ParticipantStatus, WorkflowStatus
from ..schemas import ExecutionJob, LogAction, ParticipantState
from .collaborators import CohortResolver
from .enrollment import EnrollmentService
from .exceptions import ConcurrentModificationError
from .executor import finish_participant, terminal_metrics
from .graph import WorkflowGraph
from .messaging import JobQueue
from .participant_repository import ParticipantRepository
from .timing import Clock, utcnow
from .workflow_repository import WorkflowRepository

__all__ = ["SCHEDULED_JOB_PREFIX", "WorkflowScheduler"]

logger = logging.getLogger(__name__)

SCHEDULED_JOB_PREFIX = "scheduled-"


class WorkflowScheduler:
    """Owns the sweep, stall recovery and cron jobs of one engine process."""

    def __init__(
        self,
        workflows: WorkflowRepository,
        participants: ParticipantRepository,
        enrollment: EnrollmentService,
        jobs: JobQueue,
        cohorts: CohortResolver,
        *,
        clock: Clock = utcnow,
        sweep_interval_seconds: int = 60,
        sweep_batch_size: int = 500,
        stall_timeout_seconds: int = 900,
        schedule_sync_interval_seconds: int = 300,
    ) -> None:
        self._workflows = workflows
        self._participants = participants
        self._enrollment = enrollment
        self._jobs = jobs
        self._cohorts = cohorts
        self._clock = clock
        self.sweep_interval_seconds = sweep_interval_seconds
        self.sweep_batch_size = sweep_batch_size
        self.stall_timeout = timedelta(seconds=stall_timeout_seconds)
        self.schedule_sync_interval_seconds = schedule_sync_interval_seconds

        self._scheduler: AsyncIOScheduler | None = None

    # ------------------------------------------------------------------ lifecycle

    async def start(self) -> None:
        if self._scheduler is not None:
            logger.warning("Workflow scheduler already running")
            return

        scheduler = AsyncIOScheduler(timezone="UTC")
        self._scheduler = scheduler
        scheduler.add_job(
            self.sweep,
            IntervalTrigger(seconds=self.sweep_interval_seconds),
            id="sweep-waiting",
            name="Resume waiting participants",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        scheduler.add_job(
            self.requeue_stalled,
            IntervalTrigger(seconds=self.sweep_interval_seconds),
            id="requeue-stalled",
            name="Re-queue stalled participants",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        scheduler.add_job(
            self.sync_scheduled_workflows,
            IntervalTrigger(seconds=self.schedule_sync_interval_seconds),
            id="sync-scheduled",
            name="Synchronise cron-triggered workflows",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        scheduler.start()
        await self.sync_scheduled_workflows()
        logger.info(
            "Workflow scheduler started",
            extra={"sweep_interval_seconds": self.sweep_interval_seconds},
        )

    async def shutdown(self) -> None:
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("Workflow scheduler stopped")

    # ------------------------------------------------------------------ sweep

    async def sweep(self) -> int:
        """Resume every due waiting participant; returns how many were resumed."""

        now = self._clock()
        due = await self._participants.list_due(now, self.sweep_batch_size)
        resumed = 0
        for state in due:
            try:
                if await self._resume(state):
                    resumed += 1
            except ConcurrentModificationError:
                logger.debug(
                    "Participant claimed by another sweeper",
                    extra={"participant_id": str(state.id)},
                )
            except Exception:
                logger.exception(
                    "Failed to resume participant",
                    extra={"participant_id": str(state.id)},
                )
        if due:
            logger.info("Sweep finished", extra={"due": len(due), "resumed": resumed})
        return resumed

    async def _resume(self, state: ParticipantState) -> bool:
        workflow = await self._workflows.get_definition(state.workflow_id)
        if workflow is None or workflow.status != WorkflowStatus.ACTIVE:
            return False

        now = self._clock()
        graph = WorkflowGraph(workflow.nodes, workflow.edges)
        wait_node = graph.node(state.current_node_id)

        new = state.model_copy(deep=True)
        new.status = ParticipantStatus.ACTIVE
        new.waiting_until = None
        new.append_log(
            node_id=state.current_node_id or "unknown",
            node_type=getattr(wait_node, "type", "wait"),
            node_name=wait_node.label if wait_node is not None else "Wait",
            action=LogAction.RESUMED,
            result="Wait finished",
            timestamp=now,
        )

        next_id = graph.next_node_id(state.current_node_id) if state.current_node_id else None
        if wait_node is not None and next_id is None:
            finish_participant(new, ParticipantStatus.COMPLETED, now)
            await self._participants.commit(new, terminal_metrics(new, "completed"))
            logger.info(
                "Participant completed after final wait",
                extra={"participant_id": str(state.id), "workflow_id": str(workflow.id)},
            )
            return True

        # A vanished wait node is left for the executor to fail.
        if next_id is not None:
            new.current_node_id = next_id
        committed = await self._participants.commit(new)
        await self._jobs.enqueue(ExecutionJob(participant_id=committed.id, reason="resumed"))
        return True

    async def requeue_stalled(self) -> int:
        """Re-enqueue active participants whose execution job was lost."""

        cutoff = self._clock() - self.stall_timeout
        stalled = await self._participants.list_stalled(cutoff, self.sweep_batch_size)
        for state in stalled:
            await self._jobs.enqueue(ExecutionJob(participant_id=state.id, reason="stalled"))
        if stalled:
            logger.warning("Re-queued stalled participants", extra={"count": len(stalled)})
        return len(stalled)

    # ------------------------------------------------------------------ cron triggers

    async def run_scheduled_trigger(self, workflow_id: UUID) -> int:
        """Enroll the cohort of a scheduled workflow; returns the number enrolled."""

        workflow = await self._workflows.get_definition(workflow_id)
        if workflow is None or workflow.status != WorkflowStatus.ACTIVE:
            logger.info(
                "Skipping tick for inactive scheduled workflow",
                extra={"workflow_id": str(workflow_id)},
            )
            return 0

        lead_ids = await self._cohorts.resolve(str(workflow.id), workflow.trigger.config.segment_id)
        tick = self._clock()
        enrolled = 0
        for lead_id in lead_ids:
            try:
                participant = await self._enrollment.enroll(
                    workflow,
                    lead_id,
                    {"event_type": "scheduled", "timestamp": tick.isoformat()},
                )
            except Exception:
                logger.exception(
                    "Failed to enroll lead from scheduled tick",
                    extra={"workflow_id": str(workflow.id), "lead_id": lead_id},
                )
                continue
            if participant is not None:
                enrolled += 1

        logger.info(
            "Scheduled trigger fired",
            extra={"workflow_id": str(workflow.id), "cohort": len(lead_ids), "enrolled": enrolled},
        )
        return enrolled

    async def sync_scheduled_workflows(self) -> set[str]:
        """Align cron jobs with the currently active scheduled workflows."""

        workflows = await self._workflows.list_active_scheduled()
        wanted: dict[str, tuple[UUID, str]] = {
            f"{SCHEDULED_JOB_PREFIX}{workflow.id}": (workflow.id, workflow.trigger.config.schedule)
            for workflow in workflows
            if workflow.trigger.config.schedule
        }
        timezones = {
            f"{SCHEDULED_JOB_PREFIX}{workflow.id}": workflow.settings.timezone
            for workflow in workflows
        }
        if self._scheduler is None:
            return set(wanted)

        for job in self._scheduler.get_jobs():
            if job.id.startswith(SCHEDULED_JOB_PREFIX) and job.id not in wanted:
                job.remove()
                logger.info("Removed cron job", extra={"job_id": job.id})

        for job_id, (workflow_id, schedule) in wanted.items():
            existing = self._scheduler.get_job(job_id)
            if existing is not None and existing.kwargs.get("schedule") == schedule:
                continue
            self._scheduler.add_job(
                self._fire,
                CronTrigger.from_crontab(schedule, timezone=timezones[job_id]),
                id=job_id,
                name=f"Scheduled workflow {workflow_id}",
                kwargs={"workflow_id": workflow_id, "schedule": schedule},
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
            logger.info("Registered cron job", extra={"job_id": job_id, "schedule": schedule})
        return set(wanted)

    async def _fire(self, workflow_id: UUID, schedule: str) -> None:
        try:
            await self.run_scheduled_trigger(workflow_id)
        except Exception:
            logger.exception(
                "Scheduled trigger failed",
                extra={"workflow_id": str(workflow_id), "schedule": schedule},
            )
