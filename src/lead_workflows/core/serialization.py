"""Utilities for converting between ORM rows and engine schemas."""

from __future__ import annotations

from typing import Any

from pydantic import ValidationError
from pydantic_core import to_jsonable_python

from ..models import METRIC_COLUMNS, ParticipantModel, WorkflowModel
from ..schemas import (
    ParticipantState,
    WorkflowCreate,
    WorkflowDefinition,
    WorkflowMetrics,
    WorkflowResponse,
)
from .exceptions import DefinitionError

__all__ = [
    "definition_to_model_data",
    "model_to_definition",
    "model_to_participant",
    "model_to_response",
    "participant_to_row",
]


def _definition_payload(model: WorkflowModel) -> dict[str, Any]:
    return {
        "id": model.id,
        "name": model.name,
        "description": model.description,
        "status": model.status,
        "version": model.version,
        "trigger": {"type": model.trigger_type, "config": dict(model.trigger_config or {})},
        "nodes": list(model.nodes or []),
        "edges": list(model.edges or []),
        "settings": dict(model.settings or {}),
        "tags": list(model.tags or []),
        "metrics": WorkflowMetrics(
            **{column: getattr(model, column) or 0 for column in METRIC_COLUMNS}
        ),
        "activated_at": model.activated_at,
    }


def model_to_definition(model: WorkflowModel) -> WorkflowDefinition:
    """Convert a persisted workflow row into the immutable engine snapshot."""

    try:
        return WorkflowDefinition.model_validate(_definition_payload(model))
    except ValidationError as exc:
        raise DefinitionError(
            f"Stored workflow {model.id} is not a valid definition: {exc}"
        ) from exc


def model_to_response(model: WorkflowModel) -> WorkflowResponse:
    payload = _definition_payload(model)
    payload["created_at"] = model.created_at
    payload["updated_at"] = model.updated_at
    return WorkflowResponse.model_validate(payload)


def definition_to_model_data(definition: WorkflowCreate) -> dict[str, Any]:
    """Flatten a definition payload into a dict consumable by the ORM model."""

    return {
        "name": definition.name,
        "description": definition.description,
        "trigger_type": definition.trigger.type,
        "trigger_config": definition.trigger.config.model_dump(mode="json", exclude_none=True),
        "nodes": [node.model_dump(mode="json", exclude_none=True) for node in definition.nodes],
        "edges": [edge.model_dump(mode="json", exclude_none=True) for edge in definition.edges],
        "settings": definition.settings.model_dump(mode="json"),
        "tags": list(definition.tags),
    }


def model_to_participant(model: ParticipantModel) -> ParticipantState:
    return ParticipantState.model_validate(model)


def participant_to_row(state: ParticipantState) -> dict[str, Any]:
    """Column values written for a participant, excluding identity and version."""

    return {
        "status": state.status,
        "current_node_id": state.current_node_id,
        "completed_at": state.completed_at,
        "exited_at": state.exited_at,
        "exit_reason": state.exit_reason,
        "waiting_until": state.waiting_until,
        "last_activity_at": state.last_activity_at,
        "branch_path": list(state.branch_path),
        "split_variant_id": state.split_variant_id,
        "goal_achieved": state.goal_achieved,
        "goal_achieved_at": state.goal_achieved_at,
        "log": [entry.model_dump(mode="json") for entry in state.log],
        "trigger_data": to_jsonable_python(state.trigger_data),
        "enrollment_count": state.enrollment_count,
        "exclusive_key": state.exclusive_key,
    }
