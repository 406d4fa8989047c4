"""ChatMessage model — a single turn in an AgentSession transcript."""

import uuid
from datetime import datetime
from enum import StrEnum

from sqlalchemy import Text
from sqlmodel import Column, Field, SQLModel

from agentdesk.models.base import CreatedAtMixin, new_uuid


class MessageRole(StrEnum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class ChatMessage(CreatedAtMixin, SQLModel, table=True):
    __tablename__ = "chat_messages"

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    session_id: uuid.UUID = Field(foreign_key="agent_sessions.id", nullable=False, index=True)

    role: MessageRole = Field(nullable=False)
    content: str = Field(sa_column=Column(Text, nullable=False))

    # Position in the transcript; clients reference turns by this or by id
    turn_index: int = Field(default=0, nullable=False)

    # Set for assistant messages once the model reports final usage
    tokens_used: int | None = Field(default=None)
    response_time_ms: int | None = Field(default=None)


# ── Pydantic schemas ─────────────────────────────────────────

class ChatMessageRead(SQLModel):
    id: uuid.UUID
    session_id: uuid.UUID
    role: MessageRole
    content: str
    turn_index: int
    tokens_used: int | None = None
    response_time_ms: int | None = None
    created_at: datetime
