"""Async repository for participant rows and the workflow metrics they drive.

Every participant write is a compare-and-set on ``version``; metric deltas are
applied in SQL inside the same transaction as the participant write.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from uuid import UUID

from sqlalchemy import Select, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..models import (
    IN_FLIGHT_STATUSES,
    METRIC_COLUMNS,
    ParticipantModel,
    ParticipantStatus,
    WorkflowModel,
    WorkflowStatus,
)
from ..schemas import ParticipantState
from .exceptions import (
    ConcurrentModificationError,
    EnrollmentError,
    ParticipantRepositoryError,
)
from .serialization import model_to_participant, participant_to_row

__all__ = ["MetricsDelta", "ParticipantRepository", "exclusive_key_for"]

MetricsDelta = Mapping[str, int]


def exclusive_key_for(workflow_id: UUID, lead_id: str) -> str:
    return f"{workflow_id}:{lead_id}"


class ParticipantRepository:
    """Data access layer for participant state."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get_state(self, participant_id: UUID) -> ParticipantState | None:
        try:
            async with self._session_factory() as session:
                model = await session.get(ParticipantModel, participant_id)
                return model_to_participant(model) if model is not None else None
        except SQLAlchemyError as exc:  # pragma: no cover - database errors
            raise ParticipantRepositoryError("Failed to fetch participant by id") from exc

    async def find_in_flight(self, workflow_id: UUID, lead_id: str) -> ParticipantState | None:
        """Return the lead's active or waiting participant in the workflow, if any."""

        stmt = (
            select(ParticipantModel)
            .where(ParticipantModel.workflow_id == workflow_id)
            .where(ParticipantModel.lead_id == lead_id)
            .where(ParticipantModel.status.in_(IN_FLIGHT_STATUSES))
            .order_by(ParticipantModel.entered_at.desc())
            .limit(1)
        )
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                model = result.scalars().first()
                return model_to_participant(model) if model is not None else None
        except SQLAlchemyError as exc:  # pragma: no cover - database errors
            raise ParticipantRepositoryError("Failed to look up in-flight participant") from exc

    async def enrollment_history(
        self, workflow_id: UUID, lead_id: str
    ) -> tuple[int, datetime | None]:
        """Return ``(previous enrollments, latest entered_at)`` for the lead."""

        stmt = (
            select(func.count(ParticipantModel.id), func.max(ParticipantModel.entered_at))
            .where(ParticipantModel.workflow_id == workflow_id)
            .where(ParticipantModel.lead_id == lead_id)
        )
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                count, latest = result.one()
                return int(count or 0), latest
        except SQLAlchemyError as exc:  # pragma: no cover - database errors
            raise ParticipantRepositoryError("Failed to read enrollment history") from exc

    async def create(
        self,
        state: ParticipantState,
        metrics: MetricsDelta | None = None,
    ) -> ParticipantState:
        """Insert a new participant and apply ``metrics`` atomically.

        A collision on the exclusive key means another enrollment for the same
        lead won the race.
        """

        model = ParticipantModel(
            id=state.id,
            workflow_id=state.workflow_id,
            lead_id=state.lead_id,
            entered_at=state.entered_at,
            version=1,
            **participant_to_row(state),
        )
        try:
            async with self._session_factory() as session:
                session.add(model)
                await session.flush()
                await self._apply_metrics(session, state.workflow_id, metrics)
                await session.commit()
        except IntegrityError as exc:
            raise EnrollmentError(
                f"Lead {state.lead_id} is already enrolled in workflow {state.workflow_id}"
            ) from exc
        except SQLAlchemyError as exc:  # pragma: no cover - database errors
            raise ParticipantRepositoryError("Failed to create participant") from exc
        return state.model_copy(update={"version": 1})

    async def commit(
        self,
        state: ParticipantState,
        metrics: MetricsDelta | None = None,
    ) -> ParticipantState:
        """Persist ``state`` if nobody else wrote the row since it was read.

        Returns the state carrying the new version; raises
        :class:`ConcurrentModificationError` when the stored version moved on.
        """

        stmt = (
            update(ParticipantModel)
            .where(ParticipantModel.id == state.id)
            .where(ParticipantModel.version == state.version)
            .values(**participant_to_row(state), version=state.version + 1)
            .execution_options(synchronize_session=False)
        )
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                if result.rowcount != 1:
                    await session.rollback()
                    raise ConcurrentModificationError(
                        f"Participant {state.id} changed since version {state.version}"
                    )
                await self._apply_metrics(session, state.workflow_id, metrics)
                await session.commit()
        except SQLAlchemyError as exc:  # pragma: no cover - database errors
            raise ParticipantRepositoryError("Failed to update participant") from exc
        return state.model_copy(update={"version": state.version + 1})

    async def list_due(self, now: datetime, limit: int = 500) -> list[ParticipantState]:
        """Waiting participants whose wake time has arrived, in active workflows only."""

        stmt = (
            self._with_active_workflow(select(ParticipantModel))
            .where(ParticipantModel.status == ParticipantStatus.WAITING)
            .where(ParticipantModel.waiting_until <= now)
            .order_by(ParticipantModel.waiting_until)
            .limit(limit)
        )
        return await self._list(stmt, "Failed to list due participants")

    async def list_stalled(self, cutoff: datetime, limit: int = 500) -> list[ParticipantState]:
        """Active participants with no recorded progress since ``cutoff``."""

        stmt = (
            self._with_active_workflow(select(ParticipantModel))
            .where(ParticipantModel.status == ParticipantStatus.ACTIVE)
            .where(ParticipantModel.last_activity_at < cutoff)
            .order_by(ParticipantModel.last_activity_at)
            .limit(limit)
        )
        return await self._list(stmt, "Failed to list stalled participants")

    async def _list(
        self, stmt: Select[tuple[ParticipantModel]], error: str
    ) -> list[ParticipantState]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                return [model_to_participant(model) for model in result.scalars().all()]
        except SQLAlchemyError as exc:  # pragma: no cover - database errors
            raise ParticipantRepositoryError(error) from exc

    @staticmethod
    def _with_active_workflow(
        stmt: Select[tuple[ParticipantModel]],
    ) -> Select[tuple[ParticipantModel]]:
        return stmt.join(WorkflowModel, WorkflowModel.id == ParticipantModel.workflow_id).where(
            WorkflowModel.status == WorkflowStatus.ACTIVE
        )

    @staticmethod
    async def _apply_metrics(
        session: AsyncSession,
        workflow_id: UUID,
        metrics: MetricsDelta | None,
    ) -> None:
        changes = {
            column: getattr(WorkflowModel, column) + delta
            for column, delta in (metrics or {}).items()
            if delta and column in METRIC_COLUMNS
        }
        if not changes:
            return
        await session.execute(
            update(WorkflowModel)
            .where(WorkflowModel.id == workflow_id)
            .values(**changes)
            .execution_options(synchronize_session=False)
        )
