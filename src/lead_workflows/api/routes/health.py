"""Liveness and readiness checks for the API process."""

from __future__ import annotations

from fastapi import APIRouter
from sqlalchemy import func, select

from ...models import WorkflowModel, WorkflowStatus
from ..deps import DbSession

router = APIRouter()


@router.get("/health")
async def health_check() -> dict[str, str]:
    return {"status": "healthy"}


@router.get("/health/ready")
async def readiness_check(db: DbSession) -> dict[str, str | int]:
    """Report ready once the workflow tables answer a query.

    The count of active workflows doubles as a check that migrations ran.
    """

    active = await db.scalar(
        select(func.count())
        .select_from(WorkflowModel)
        .where(WorkflowModel.status == WorkflowStatus.ACTIVE)
    )
    return {"status": "ready", "database": "connected", "active_workflows": active or 0}


__all__ = ["router"]
