"""Workflow definition and lifecycle endpoints."""

from __future__ import annotations

from typing import Any
from uuid import UUID

from fastapi import APIRouter, HTTPException, status
from pydantic import Field

from ...core.exceptions import WorkflowEngineError
from ...core.serialization import model_to_response
from ...models import WorkflowStatus
from ...schemas import (
    ORMModel,
    ParticipantResponse,
    WorkflowCreate,
    WorkflowResponse,
    WorkflowUpdate,
)
from ..deps import EnrollmentDep, WorkflowRepo
from .errors import raise_http_error

router = APIRouter()


class ManualEnrollment(ORMModel):
    """Payload for enrolling a lead by hand."""

    lead_id: str = Field(min_length=1)
    data: dict[str, Any] = Field(default_factory=dict)


@router.post("/", response_model=WorkflowResponse, status_code=status.HTTP_201_CREATED)
async def create_workflow(workflow: WorkflowCreate, repo: WorkflowRepo) -> WorkflowResponse:
    """Persist a new workflow definition in draft status."""

    try:
        record = await repo.create(workflow)
    except WorkflowEngineError as exc:
        raise_http_error(exc)
    return model_to_response(record)


@router.get("/{workflow_id}", response_model=WorkflowResponse)
async def get_workflow(workflow_id: UUID, repo: WorkflowRepo) -> WorkflowResponse:
    try:
        record = await repo.get(workflow_id)
    except WorkflowEngineError as exc:
        raise_http_error(exc)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Workflow not found")
    return model_to_response(record)


@router.patch("/{workflow_id}", response_model=WorkflowResponse)
async def update_workflow(
    workflow_id: UUID,
    workflow: WorkflowUpdate,
    repo: WorkflowRepo,
) -> WorkflowResponse:
    """Apply partial updates; graph changes produce a new definition version."""

    try:
        record = await repo.update(workflow_id, workflow)
    except WorkflowEngineError as exc:
        raise_http_error(exc)
    return model_to_response(record)


async def _set_status(
    repo: WorkflowRepo,
    workflow_id: UUID,
    new_status: WorkflowStatus,
) -> WorkflowResponse:
    try:
        record = await repo.set_status(workflow_id, new_status)
    except WorkflowEngineError as exc:
        raise_http_error(exc)
    return model_to_response(record)


@router.post("/{workflow_id}/activate", response_model=WorkflowResponse)
async def activate_workflow(workflow_id: UUID, repo: WorkflowRepo) -> WorkflowResponse:
    """Validate branch coverage and start accepting enrollments."""

    return await _set_status(repo, workflow_id, WorkflowStatus.ACTIVE)


@router.post("/{workflow_id}/pause", response_model=WorkflowResponse)
async def pause_workflow(workflow_id: UUID, repo: WorkflowRepo) -> WorkflowResponse:
    return await _set_status(repo, workflow_id, WorkflowStatus.PAUSED)


@router.post("/{workflow_id}/archive", response_model=WorkflowResponse)
async def archive_workflow(workflow_id: UUID, repo: WorkflowRepo) -> WorkflowResponse:
    return await _set_status(repo, workflow_id, WorkflowStatus.ARCHIVED)


@router.post(
    "/{workflow_id}/participants",
    response_model=ParticipantResponse,
    status_code=status.HTTP_201_CREATED,
)
async def enroll_lead(
    workflow_id: UUID,
    payload: ManualEnrollment,
    enrollment: EnrollmentDep,
) -> ParticipantResponse:
    """Enroll a lead manually; eligibility rules still apply."""

    try:
        participant = await enrollment.enroll_manual(workflow_id, payload.lead_id, payload.data)
    except WorkflowEngineError as exc:
        raise_http_error(exc)
    return ParticipantResponse.model_validate(participant.model_dump())


__all__ = ["ManualEnrollment", "router"]
