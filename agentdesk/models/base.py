"""Shared base fields and helpers for all models."""

import uuid
from datetime import datetime, timezone

from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_uuid() -> uuid.UUID:
    return uuid.uuid4()


class CreatedAtMixin(SQLModel):
    """Creation timestamp for append-only records (messages, audit events)."""

    created_at: datetime = Field(default_factory=utcnow, nullable=False, index=True)


class TimestampMixin(CreatedAtMixin):
    """Created / updated timestamps for mutable records."""

    updated_at: datetime = Field(default_factory=utcnow, nullable=False)
