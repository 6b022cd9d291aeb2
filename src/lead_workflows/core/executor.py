"""The participant state machine: execute nodes and persist transitions."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from ..models import ParticipantStatus, WorkflowStatus
from ..schemas import ExecutionJob, LeadProfile, LogAction, ParticipantState
from ..schemas.workflows import NodeBase
from .collaborators import LeadStore
from .exceptions import (
    CollaboratorError,
    ConcurrentModificationError,
    DefinitionError,
    ParticipantNotFoundError,
)
from .graph import WorkflowGraph
from .messaging import JobQueue
from .nodes import NodeHandlers, NodeResult, StepContext
from .participant_repository import MetricsDelta, ParticipantRepository
from .timing import Clock, utcnow
from .workflow_repository import WorkflowRepository

__all__ = [
    "MANUAL_EXIT_REASON",
    "NodeExecutor",
    "StepOutcome",
    "finish_participant",
    "terminal_metrics",
]

logger = logging.getLogger(__name__)

MANUAL_EXIT_REASON = "Manually exited"


def terminal_metrics(state: ParticipantState, counter: str) -> MetricsDelta:
    metrics = {"currently_active": -1, counter: 1}
    if state.goal_achieved:
        metrics["goal_achieved"] = 1
    return metrics


def finish_participant(
    state: ParticipantState,
    status: ParticipantStatus,
    now: datetime,
    *,
    reason: str | None = None,
    node_id: str | None = None,
) -> None:
    """Apply a completed or exited transition to ``state`` in place."""

    if status == ParticipantStatus.COMPLETED:
        state.completed_at = now
        state.append_log(
            node_id=node_id or "end",
            node_type="end",
            node_name="Workflow Complete",
            action=LogAction.COMPLETED,
            timestamp=now,
        )
    else:
        state.exited_at = now
        state.exit_reason = reason
        state.append_log(
            node_id=node_id or state.current_node_id or "exit",
            node_type="exit",
            node_name="Exit",
            action=LogAction.EXITED,
            result=reason,
            timestamp=now,
        )
    state.status = status
    state.current_node_id = None
    state.waiting_until = None
    state.exclusive_key = None


@dataclass(slots=True)
class StepOutcome:
    """Summary of one ``execute_step`` invocation."""

    participant_id: UUID
    status: ParticipantStatus | None
    steps: int = 0
    continued: bool = False
    conflict: bool = False
    reason: str | None = None


class NodeExecutor:
    """Walks a participant through its workflow graph.

    The walk is iterative and stops at a wait, a terminal transition, a
    paused workflow, or after ``max_steps`` nodes, in which case a
    continuation job is queued. Each transition is persisted before the next
    node runs.
    """

    def __init__(
        self,
        workflows: WorkflowRepository,
        participants: ParticipantRepository,
        handlers: NodeHandlers,
        leads: LeadStore,
        jobs: JobQueue,
        *,
        clock: Clock = utcnow,
        max_steps: int = 50,
        lead_timeout_seconds: float = 10.0,
    ) -> None:
        self._workflows = workflows
        self._participants = participants
        self._handlers = handlers
        self._leads = leads
        self._jobs = jobs
        self._clock = clock
        self._max_steps = max_steps
        self._lead_timeout = lead_timeout_seconds

    async def execute_step(self, participant_id: UUID) -> StepOutcome:
        state = await self._participants.get_state(participant_id)
        if state is None:
            logger.warning("Participant not found", extra={"participant_id": str(participant_id)})
            return StepOutcome(participant_id, None, reason="Participant not found")

        try:
            return await self._run(state)
        except ConcurrentModificationError as exc:
            logger.info(
                "Participant advanced by a concurrent writer; stopping",
                extra={"participant_id": str(participant_id), "error": str(exc)},
            )
            return StepOutcome(participant_id, None, conflict=True, reason=str(exc))

    async def _run(self, state: ParticipantState) -> StepOutcome:
        steps = 0
        lead: LeadProfile | None = None

        while True:
            if state.status != ParticipantStatus.ACTIVE:
                return StepOutcome(state.id, state.status, steps)

            try:
                workflow = await self._workflows.get_definition(state.workflow_id)
            except DefinitionError as exc:
                return await self._fail(state, str(exc), steps=steps)
            if workflow is None:
                return await self._fail(state, "Workflow not found", steps=steps)
            if workflow.status != WorkflowStatus.ACTIVE:
                return StepOutcome(
                    state.id, state.status, steps, reason=f"Workflow is {workflow.status.value}"
                )

            if steps >= self._max_steps:
                await self._jobs.enqueue(
                    ExecutionJob(participant_id=state.id, reason="continuation")
                )
                logger.info(
                    "Step limit reached; continuation queued",
                    extra={"participant_id": str(state.id), "steps": steps},
                )
                return StepOutcome(state.id, state.status, steps, continued=True)

            graph = WorkflowGraph(workflow.nodes, workflow.edges)
            node = graph.node(state.current_node_id)
            if node is None:
                return await self._fail(
                    state, f"Node {state.current_node_id} not found in workflow", steps=steps
                )

            if lead is None:
                lead = await self._load_lead(state.lead_id)
                if lead is None:
                    return await self._fail(state, "Lead not found", node=node, steps=steps)

            now = self._clock()
            ctx = StepContext(workflow=workflow, participant=state, lead=lead, now=now)
            try:
                result = await self._handlers.run(node, ctx)
            except Exception as exc:
                logger.exception(
                    "Node execution failed",
                    extra={
                        "participant_id": str(state.id),
                        "workflow_id": str(workflow.id),
                        "node_id": node.id,
                    },
                )
                error = str(exc) or type(exc).__name__
                return await self._fail(state, error, node=node, steps=steps)

            state = await self._transition(state, node, graph, result, now, workflow.id)
            steps += 1

    async def _load_lead(self, lead_id: str) -> LeadProfile | None:
        try:
            return await asyncio.wait_for(self._leads.get_lead(lead_id), timeout=self._lead_timeout)
        except asyncio.TimeoutError as exc:
            raise CollaboratorError(f"Lead lookup for {lead_id} timed out") from exc

    async def _transition(
        self,
        state: ParticipantState,
        node: NodeBase,
        graph: WorkflowGraph,
        result: NodeResult,
        now: datetime,
        workflow_id: UUID,
    ) -> ParticipantState:
        new = state.model_copy(deep=True)
        node_type = getattr(node, "type", "unknown")
        metrics: MetricsDelta = {}

        if result.split_variant_id is not None:
            new.split_variant_id = result.split_variant_id
        if result.goal_achieved and not new.goal_achieved:
            new.goal_achieved = True
            new.goal_achieved_at = now

        if result.wait:
            action = LogAction.WAITING
        elif result.skipped:
            action = LogAction.SKIPPED
        else:
            action = LogAction.EXECUTED
        new.append_log(
            node_id=node.id,
            node_type=node_type,
            node_name=node.label,
            action=action,
            result=result.message,
            error=result.error,
            timestamp=now,
            metadata=result.metadata,
        )

        if result.wait:
            new.status = ParticipantStatus.WAITING
            new.waiting_until = result.wait_until
        elif result.exit:
            reason = result.exit_reason or "Exited"
            finish_participant(new, ParticipantStatus.EXITED, now, reason=reason)
            metrics = terminal_metrics(new, "exited")
        else:
            if result.branch_label is not None:
                new.branch_path.append(result.branch_label)
            next_id = result.next_node_id or graph.next_node_id(node.id, result.branch_label)
            if next_id is None:
                finish_participant(new, ParticipantStatus.COMPLETED, now)
                metrics = terminal_metrics(new, "completed")
            else:
                new.current_node_id = next_id

        committed = await self._participants.commit(new, metrics)
        if committed.status.is_terminal or committed.status == ParticipantStatus.WAITING:
            logger.info(
                "Participant transitioned",
                extra={
                    "participant_id": str(committed.id),
                    "workflow_id": str(workflow_id),
                    "status": committed.status.value,
                    "waiting_until": (
                        committed.waiting_until.isoformat() if committed.waiting_until else None
                    ),
                    "exit_reason": committed.exit_reason,
                },
            )
        return committed

    async def _fail(
        self,
        state: ParticipantState,
        error: str,
        *,
        node: NodeBase | None = None,
        steps: int = 0,
    ) -> StepOutcome:
        """Mark the participant failed; failures are terminal and never retried."""

        now = self._clock()
        new = state.model_copy(deep=True)
        new.append_log(
            node_id=node.id if node is not None else (state.current_node_id or "unknown"),
            node_type=getattr(node, "type", "error"),
            node_name=node.label if node is not None else "Error",
            action=LogAction.FAILED,
            error=error,
            timestamp=now,
        )
        new.status = ParticipantStatus.FAILED
        new.exited_at = now
        new.exit_reason = f"Error: {error}"
        new.current_node_id = None
        new.waiting_until = None
        new.exclusive_key = None

        committed = await self._participants.commit(new, {"currently_active": -1})
        logger.error(
            "Participant failed",
            extra={
                "participant_id": str(committed.id),
                "workflow_id": str(committed.workflow_id),
                "error": error,
            },
        )
        return StepOutcome(committed.id, committed.status, steps, reason=error)

    async def exit_participant(
        self,
        participant_id: UUID,
        reason: str = MANUAL_EXIT_REASON,
    ) -> ParticipantState:
        """Administrative exit of an active or waiting participant.

        Terminal participants are returned unchanged.
        """

        state = await self._participants.get_state(participant_id)
        if state is None:
            raise ParticipantNotFoundError(f"Participant {participant_id} not found")
        if not state.is_in_flight:
            return state

        now = self._clock()
        new = state.model_copy(deep=True)
        finish_participant(new, ParticipantStatus.EXITED, now, reason=reason)
        committed = await self._participants.commit(new, terminal_metrics(new, "exited"))
        logger.info(
            "Participant exited manually",
            extra={"participant_id": str(participant_id), "reason": reason},
        )
        return committed
