"""Enrollment of leads into workflows."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID, uuid4

from ..models import WorkflowStatus
from ..schemas import ExecutionJob, LogAction, ParticipantState, WorkflowDefinition
from .collaborators import LeadStore
from .exceptions import EnrollmentError, WorkflowNotFoundError
from .graph import WorkflowGraph
from .messaging import JobQueue
from .participant_repository import ParticipantRepository, exclusive_key_for
from .timing import Clock, utcnow
from .workflow_repository import WorkflowRepository

__all__ = ["Eligibility", "EnrollmentService"]

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Eligibility:
    """Outcome of the enrollment rules for one (workflow, lead) pair."""

    eligible: bool
    reason: str | None = None
    previous_enrollments: int = 0


class EnrollmentService:
    """Creates participants at the workflow entry node and queues their first step."""

    def __init__(
        self,
        workflows: WorkflowRepository,
        participants: ParticipantRepository,
        jobs: JobQueue,
        leads: LeadStore,
        *,
        clock: Clock = utcnow,
    ) -> None:
        self._workflows = workflows
        self._participants = participants
        self._jobs = jobs
        self._leads = leads
        self._clock = clock

    async def check_eligibility(
        self,
        workflow: WorkflowDefinition,
        lead_id: str,
        *,
        now: datetime | None = None,
    ) -> Eligibility:
        now = now or self._clock()

        if workflow.status != WorkflowStatus.ACTIVE:
            return Eligibility(False, f"Workflow is {workflow.status.value}")

        settings = workflow.settings
        in_flight = await self._participants.find_in_flight(workflow.id, lead_id)
        previous, latest_entry = await self._participants.enrollment_history(workflow.id, lead_id)

        if in_flight is not None and not settings.allow_reentry:
            return Eligibility(False, "Lead is already enrolled", previous)

        if settings.allow_reentry:
            if settings.reentry_delay_days and latest_entry is not None:
                if now - latest_entry < timedelta(days=settings.reentry_delay_days):
                    return Eligibility(
                        False,
                        f"Lead must wait {settings.reentry_delay_days:g} days before re-entering",
                        previous,
                    )
            if settings.max_enrollments is not None and previous >= settings.max_enrollments:
                return Eligibility(False, "Maximum enrollments reached", previous)

        return Eligibility(True, None, previous)

    async def enroll(
        self,
        workflow: WorkflowDefinition,
        lead_id: str,
        trigger_data: dict[str, Any] | None = None,
    ) -> ParticipantState | None:
        """Enroll ``lead_id`` if eligible; returns ``None`` when it is skipped."""

        try:
            return await self._enroll(workflow, lead_id, trigger_data or {})
        except EnrollmentError as exc:
            logger.debug(
                "Skipping enrollment",
                extra={"workflow_id": str(workflow.id), "lead_id": lead_id, "reason": str(exc)},
            )
            return None

    async def enroll_manual(
        self,
        workflow_id: UUID,
        lead_id: str,
        trigger_data: dict[str, Any] | None = None,
    ) -> ParticipantState:
        """Administrative enrollment; ineligibility is reported as :class:`EnrollmentError`."""

        workflow = await self._workflows.get_definition(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(f"Workflow {workflow_id} not found")
        data = {"source": "manual", **(trigger_data or {})}
        return await self._enroll(workflow, lead_id, data)

    async def _enroll(
        self,
        workflow: WorkflowDefinition,
        lead_id: str,
        trigger_data: dict[str, Any],
    ) -> ParticipantState:
        now = self._clock()
        eligibility = await self.check_eligibility(workflow, lead_id, now=now)
        if not eligibility.eligible:
            raise EnrollmentError(eligibility.reason or "Lead is not eligible")

        if await self._leads.get_lead(lead_id) is None:
            raise EnrollmentError(f"Lead {lead_id} not found")

        graph = WorkflowGraph(workflow.nodes, workflow.edges)
        trigger_node = graph.trigger_node
        if trigger_node is None:
            raise EnrollmentError(f"Workflow {workflow.id} has no trigger node")

        state = ParticipantState(
            id=uuid4(),
            workflow_id=workflow.id,
            lead_id=lead_id,
            current_node_id=graph.entry_node_id(),
            entered_at=now,
            last_activity_at=now,
            trigger_data=dict(trigger_data),
            enrollment_count=eligibility.previous_enrollments + 1,
            exclusive_key=(
                None if workflow.settings.allow_reentry else exclusive_key_for(workflow.id, lead_id)
            ),
        )
        state.append_log(
            node_id=trigger_node.id,
            node_type=trigger_node.type,
            node_name=trigger_node.label,
            action=LogAction.ENTERED,
            timestamp=now,
            metadata=trigger_data,
        )

        state = await self._participants.create(
            state, {"total_entered": 1, "currently_active": 1}
        )
        logger.info(
            "Lead enrolled in workflow",
            extra={
                "workflow_id": str(workflow.id),
                "participant_id": str(state.id),
                "lead_id": lead_id,
                "enrollment_count": state.enrollment_count,
            },
        )

        await self._jobs.enqueue(ExecutionJob(participant_id=state.id, reason="enrolled"))
        return state
