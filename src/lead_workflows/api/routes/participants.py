"""Participant inspection and administrative exit endpoints."""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, HTTPException, status

from ...core.exceptions import WorkflowEngineError
from ...core.executor import MANUAL_EXIT_REASON
from ...schemas import ORMModel, ParticipantResponse
from ..deps import ExecutorDep, ParticipantRepo
from .errors import raise_http_error

router = APIRouter()


class ExitRequest(ORMModel):
    reason: str = MANUAL_EXIT_REASON


@router.get("/{participant_id}", response_model=ParticipantResponse)
async def get_participant(participant_id: UUID, repo: ParticipantRepo) -> ParticipantResponse:
    """Return a participant with its full execution log."""

    try:
        state = await repo.get_state(participant_id)
    except WorkflowEngineError as exc:
        raise_http_error(exc)
    if state is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Participant not found")
    return ParticipantResponse.model_validate(state.model_dump())


@router.post("/{participant_id}/exit", response_model=ParticipantResponse)
async def exit_participant(
    participant_id: UUID,
    executor: ExecutorDep,
    payload: ExitRequest | None = None,
) -> ParticipantResponse:
    """Exit an in-flight participant; finished participants are returned as-is."""

    reason = payload.reason if payload is not None else MANUAL_EXIT_REASON
    try:
        state = await executor.exit_participant(participant_id, reason)
    except WorkflowEngineError as exc:
        raise_http_error(exc)
    return ParticipantResponse.model_validate(state.model_dump())


__all__ = ["ExitRequest", "router"]
