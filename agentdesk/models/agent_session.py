"""AgentSession model — one user's engagement with one agent persona."""

import uuid
from datetime import datetime
from enum import StrEnum
from typing import Any

from sqlalchemy import JSON, Text
from sqlmodel import Column, Field, SQLModel

from agentdesk.models.base import TimestampMixin, new_uuid, utcnow
from agentdesk.models.message import ChatMessageRead


class AgentType(StrEnum):
    ARQUITECTO_DECISIONES = "arquitecto-decisiones"


class SessionStatus(StrEnum):
    ACTIVE = "active"
    COMPLETED = "completed"
    ABANDONED = "abandoned"
    ERROR = "error"


# Forward-only, except that a completed session may be reopened.
ALLOWED_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.ACTIVE: frozenset(
        {SessionStatus.COMPLETED, SessionStatus.ABANDONED, SessionStatus.ERROR}
    ),
    SessionStatus.COMPLETED: frozenset({SessionStatus.ACTIVE}),
    SessionStatus.ABANDONED: frozenset(),
    SessionStatus.ERROR: frozenset(),
}


def can_transition(current: SessionStatus, target: SessionStatus) -> bool:
    return current == target or target in ALLOWED_TRANSITIONS[current]


class AgentSession(TimestampMixin, SQLModel, table=True):
    __tablename__ = "agent_sessions"

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    user_id: uuid.UUID = Field(foreign_key="user_profiles.id", nullable=False, index=True)
    agent_type: AgentType = Field(nullable=False)

    # Intake form answers, persona-specific (see services.prompt_composer)
    form_data: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    generated_prompt: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    prompt_template_id: uuid.UUID | None = Field(default=None, foreign_key="prompt_templates.id")

    status: SessionStatus = Field(default=SessionStatus.ACTIVE)
    session_metadata: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON, nullable=True))

    # Accumulated model cost; only grows, only through the usage ledger
    cost_cents: int = Field(default=0, nullable=False)

    completed_at: datetime | None = Field(default=None)
    last_activity_at: datetime = Field(default_factory=utcnow, nullable=False)


# ── Pydantic schemas ─────────────────────────────────────────

class AgentSessionRead(SQLModel):
    id: uuid.UUID
    user_id: uuid.UUID
    agent_type: AgentType
    form_data: dict[str, Any]
    status: SessionStatus
    cost_cents: int
    created_at: datetime
    completed_at: datetime | None = None
    last_activity_at: datetime


class AgentSessionDetail(AgentSessionRead):
    generated_prompt: str | None = None
    messages: list[ChatMessageRead] = Field(default_factory=list)
