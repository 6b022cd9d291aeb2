"""Pydantic building blocks shared by API payloads, engine snapshots and stream messages."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any
from uuid import UUID

from pydantic import AfterValidator, BaseModel, ConfigDict, Field

Metadata = dict[str, Any]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # Producers outside the engine may send naive timestamps; those are UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


UTCDatetime = Annotated[datetime, AfterValidator(_as_utc)]


class ORMModel(BaseModel):
    """Base model readable from ORM rows and accepting field names or aliases."""

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)


class TimestampedSchema(ORMModel):
    created_at: datetime = Field(description="Creation timestamp")
    updated_at: datetime = Field(description="Last update timestamp")


class IdentifiedSchema(TimestampedSchema):
    """Persisted record as returned by the API."""

    id: UUID


__all__ = [
    "IdentifiedSchema",
    "Metadata",
    "ORMModel",
    "TimestampedSchema",
    "UTCDatetime",
    "utc_now",
]
