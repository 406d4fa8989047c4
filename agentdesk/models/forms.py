"""Intake form schemas, one per agent persona.

The wire format uses the camelCase keys the web client submits; the same
keys are stored verbatim in ``AgentSession.form_data``.
"""

from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, StringConstraints
from pydantic.alias_generators import to_camel

NonEmptyStr = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]

Timeline = Literal["urgente", "2-4-semanas", "1-2-meses", "flexible"]


class DecisionArchitectForm(BaseModel):
    """Answers collected by the strategic-decision intake form."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    contexto_decision: str = Field(min_length=50, max_length=1000)
    timeline: Timeline
    alternativas: list[NonEmptyStr] = Field(min_length=2, max_length=6)
    criterios: list[NonEmptyStr] = Field(min_length=3, max_length=8)
    informacion_faltante: str = Field(min_length=20, max_length=500)
    contexto_personal: str | None = Field(default=None, max_length=300)

    def to_record(self) -> dict:
        """Serialize with wire keys, dropping unset optional sections."""
        return self.model_dump(by_alias=True, exclude_none=True)
