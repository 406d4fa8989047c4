"""PromptTemplate model — versioned system prompts per agent type.

Templates are authored elsewhere; this service only reads the active one.
"""

import uuid
from typing import Any

from sqlalchemy import JSON, Text
from sqlmodel import Column, Field, SQLModel

from agentdesk.models.base import CreatedAtMixin, new_uuid


class PromptTemplate(CreatedAtMixin, SQLModel, table=True):
    __tablename__ = "prompt_templates"

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    agent_type: str = Field(max_length=100, nullable=False, index=True)
    version: str = Field(max_length=50, nullable=False)
    template_content: str = Field(sa_column=Column(Text, nullable=False))
    variables: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON, nullable=True))
    is_active: bool = Field(default=False)
    performance_score: float | None = Field(default=None)
