"""UsageLog model — immutable audit trail of billable actions."""

import uuid
from datetime import datetime
from enum import StrEnum
from typing import Any

from sqlalchemy import JSON
from sqlmodel import Column, Field, SQLModel

from agentdesk.models.base import CreatedAtMixin, new_uuid


class UsageEventType(StrEnum):
    FORM_COMPLETED = "form_completed"
    CHAT_MESSAGE = "chat_message"


class UsageLog(CreatedAtMixin, SQLModel, table=True):
    __tablename__ = "usage_logs"

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    user_id: uuid.UUID = Field(foreign_key="user_profiles.id", nullable=False, index=True)
    session_id: uuid.UUID | None = Field(default=None, foreign_key="agent_sessions.id", index=True)

    # Idempotency key of a turn charge: at most one event per assistant message.
    # Not a foreign key: the charge may land before a delayed message write.
    message_id: uuid.UUID | None = Field(default=None, unique=True)

    event_type: UsageEventType = Field(nullable=False)
    event_data: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON, nullable=True))
    cost_cents: int = Field(default=0, nullable=False)


# ── Pydantic schemas ─────────────────────────────────────────

class UsageLogRead(SQLModel):
    id: uuid.UUID
    user_id: uuid.UUID
    session_id: uuid.UUID | None
    message_id: uuid.UUID | None
    event_type: UsageEventType
    event_data: dict[str, Any] | None
    cost_cents: int
    created_at: datetime
