"""Declarative base, column types and mixins shared by workflow and participant rows.

Rows must round-trip identically on PostgreSQL (production) and SQLite (tests),
so UUIDs, JSON documents and timestamps go through the type decorators below.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar
from uuid import UUID, uuid4

from sqlalchemy import DateTime, Enum as SqlEnum, Integer, MetaData, func
from sqlalchemy.dialects.postgresql import JSONB, UUID as PGUUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import CHAR, JSON, TypeDecorator

NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


class GUID(TypeDecorator[UUID]):
    """UUID column: native on PostgreSQL, 36-character text elsewhere."""

    impl = CHAR(36)
    cache_ok = True

    def load_dialect_impl(self, dialect):  # type: ignore[override]
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PGUUID(as_uuid=True))
        return dialect.type_descriptor(CHAR(36))

    def process_bind_param(self, value: UUID | str | None, dialect):  # type: ignore[override]
        if value is None:
            return None
        return str(value if isinstance(value, UUID) else UUID(str(value)))

    def process_result_value(self, value: str | UUID | None, dialect):  # type: ignore[override]
        if value is None or isinstance(value, UUID):
            return value
        return UUID(str(value))


# Node graphs, logs and trigger payloads are stored as documents.
JSONBType = JSON().with_variant(JSONB(), "postgresql")


class UTCDateTime(TypeDecorator[datetime]):
    """Timezone-aware datetime column that always round-trips as UTC.

    Wake times are compared in SQL, so every dialect must store the same
    instant. SQLite drops tzinfo on the way back; naive values read from it
    are re-tagged as UTC and aware values are stored as naive UTC.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect):  # type: ignore[override]
        if value is None:
            return value
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "postgresql":
            return value
        return value.replace(tzinfo=None)

    def process_result_value(self, value: datetime | None, dialect):  # type: ignore[override]
        if value is None:
            return value
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def enum_column(enum_cls: type[Enum], name: str) -> SqlEnum:
    """Named database enum storing member values rather than member names."""

    return SqlEnum(
        enum_cls,
        name=name,
        values_callable=lambda members: [member.value for member in members],
    )


class Base(DeclarativeBase):
    """Declarative base for the engine's tables."""

    metadata = MetaData(naming_convention=NAMING_CONVENTION)
    type_annotation_map: ClassVar[dict[type[Any], Any]] = {
        dict[str, Any]: JSONBType,
        list[str]: JSONBType,
        list[dict[str, Any]]: JSONBType,
        datetime: UTCDateTime,
    }


class UUIDPrimaryKey:
    id: Mapped[UUID] = mapped_column(GUID(), primary_key=True, default=uuid4)


class TimestampMixin:
    """Row bookkeeping timestamps, maintained by the database."""

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class VersionedMixin:
    """Monotonic ``version`` counter.

    Participants use it for compare-and-set writes; workflows bump it when
    their graph or trigger changes.
    """

    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)


__all__ = [
    "Base",
    "GUID",
    "JSONBType",
    "NAMING_CONVENTION",
    "TimestampMixin",
    "UTCDateTime",
    "UUIDPrimaryKey",
    "VersionedMixin",
    "enum_column",
]
