"""Async repository responsible for CRUD operations on WorkflowModel rows."""

from __future__ import annotations

from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy import Select, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..models import TriggerType, WorkflowModel, WorkflowStatus
from ..schemas import WorkflowCreate, WorkflowDefinition, WorkflowUpdate
from .exceptions import DefinitionError, WorkflowNotFoundError, WorkflowRepositoryError
from .graph import validate_definition, validate_for_activation
from .serialization import definition_to_model_data, model_to_definition

__all__ = ["WorkflowRepository"]

# Changing any of these produces a new definition version.
_VERSIONED_FIELDS = ("trigger", "nodes", "edges")


class WorkflowRepository:
    """Data access layer for persisted workflow definitions."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def create(self, workflow_create: WorkflowCreate) -> WorkflowModel:
        """Validate and persist a new workflow in ``draft`` status."""

        validate_definition(workflow_create.trigger, workflow_create.nodes, workflow_create.edges)

        model = WorkflowModel(**definition_to_model_data(workflow_create))
        model.status = WorkflowStatus.DRAFT
        try:
            async with self._session_factory() as session:
                session.add(model)
                await session.commit()
                await session.refresh(model)
                return model
        except SQLAlchemyError as exc:  # pragma: no cover - database errors
            raise WorkflowRepositoryError("Failed to create workflow") from exc

    async def get(self, workflow_id: UUID) -> WorkflowModel | None:
        """Return a single workflow by primary key."""

        try:
            async with self._session_factory() as session:
                return await session.get(WorkflowModel, workflow_id)
        except SQLAlchemyError as exc:  # pragma: no cover - database errors
            raise WorkflowRepositoryError("Failed to fetch workflow by id") from exc

    async def get_definition(self, workflow_id: UUID) -> WorkflowDefinition | None:
        """Return the engine snapshot of a workflow, or ``None`` when it is gone."""

        model = await self.get(workflow_id)
        if model is None:
            return None
        return model_to_definition(model)

    async def list_active_by_trigger(self, trigger_type: TriggerType) -> list[WorkflowDefinition]:
        """Return active workflows listening for ``trigger_type``."""

        stmt: Select[tuple[WorkflowModel]] = (
            select(WorkflowModel)
            .where(WorkflowModel.status == WorkflowStatus.ACTIVE)
            .where(WorkflowModel.trigger_type == trigger_type)
            .order_by(WorkflowModel.created_at)
        )
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                models = list(result.scalars().all())
        except SQLAlchemyError as exc:  # pragma: no cover - database errors
            raise WorkflowRepositoryError("Failed to list workflows by trigger") from exc
        return [model_to_definition(model) for model in models]

    async def update(
        self,
        workflow_id: UUID,
        workflow_update: WorkflowUpdate,
    ) -> WorkflowModel:
        """Apply a partial update; graph changes are re-validated and bump ``version``.

        The trigger and graph of an active workflow are frozen so in-flight
        participants always point at existing nodes. Pause it first.
        """

        try:
            async with self._session_factory() as session:
                model = await session.get(WorkflowModel, workflow_id)
                if model is None:
                    raise WorkflowNotFoundError(f"Workflow {workflow_id} not found")

                changes = workflow_update.model_dump(exclude_unset=True, exclude_none=True)
                graph_changes = sorted(field for field in _VERSIONED_FIELDS if field in changes)
                if model.status == WorkflowStatus.ACTIVE and graph_changes:
                    raise DefinitionError(
                        f"Cannot change {', '.join(graph_changes)} of an active workflow;"
                        " pause it first"
                    )

                current = model_to_definition(model)
                trigger = workflow_update.trigger or current.trigger
                nodes = current.nodes if workflow_update.nodes is None else workflow_update.nodes
                edges = current.edges if workflow_update.edges is None else workflow_update.edges
                validate_definition(trigger, nodes, edges)

                merged = WorkflowCreate(
                    name=workflow_update.name or current.name,
                    description=(
                        workflow_update.description
                        if "description" in changes
                        else current.description
                    ),
                    trigger=trigger,
                    nodes=nodes,
                    edges=edges,
                    settings=workflow_update.settings or current.settings,
                    tags=workflow_update.tags if workflow_update.tags is not None else current.tags,
                )
                for field, value in definition_to_model_data(merged).items():
                    setattr(model, field, value)

                if graph_changes:
                    model.version = (model.version or 1) + 1

                await session.commit()
                await session.refresh(model)
                return model
        except SQLAlchemyError as exc:  # pragma: no cover - database errors
            raise WorkflowRepositoryError("Failed to update workflow") from exc

    async def set_status(
        self,
        workflow_id: UUID,
        status: WorkflowStatus,
        *,
        now: datetime | None = None,
    ) -> WorkflowModel:
        """Move a workflow between lifecycle states.

        Activation runs the stricter branch-coverage checks. Pausing and
        archiving only stop new enrollments and further progress; they never
        touch participant rows.
        """

        try:
            async with self._session_factory() as session:
                model = await session.get(WorkflowModel, workflow_id)
                if model is None:
                    raise WorkflowNotFoundError(f"Workflow {workflow_id} not found")

                if status == WorkflowStatus.ACTIVE:
                    definition = model_to_definition(model)
                    validate_for_activation(definition.trigger, definition.nodes, definition.edges)
                    model.activated_at = now or datetime.now(timezone.utc)

                model.status = status
                await session.commit()
                await session.refresh(model)
                return model
        except SQLAlchemyError as exc:  # pragma: no cover - database errors
            raise WorkflowRepositoryError("Failed to change workflow status") from exc

    async def list_active_scheduled(self) -> list[WorkflowDefinition]:
        return await self.list_active_by_trigger(TriggerType.SCHEDULED)
