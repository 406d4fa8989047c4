"""Prompt composer — builds the system message for a model request.

First turn of a session: render the persona template from the intake form.
Later turns: use the active stored template for the agent type, falling back
to a hardcoded persona prompt and finally to a generic assistant prompt.
Composition never raises.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from agentdesk.core.prompts import (
    DECISION_ARCHITECT_TEMPLATE,
    FALLBACK_PROMPTS,
    GENERIC_PROMPT,
    PERSONAL_CONTEXT_SECTION,
    TIMELINE_LABELS,
)
from agentdesk.models.agent_session import AgentType
from agentdesk.models.forms import DecisionArchitectForm
from agentdesk.models.prompt_template import PromptTemplate

logger = logging.getLogger(__name__)

# Intake form schema per agent type
FORM_SCHEMAS: dict[str, type[DecisionArchitectForm]] = {
    AgentType.ARQUITECTO_DECISIONES: DecisionArchitectForm,
}


def _numbered(items: list[str]) -> str:
    return "\n".join(f"{i}. {item}" for i, item in enumerate(items, 1))


def render_decision_prompt(form: DecisionArchitectForm) -> str:
    """Render the decision-architect persona from a validated intake form."""
    personal = (form.contexto_personal or "").strip()
    return DECISION_ARCHITECT_TEMPLATE.format(
        contexto_decision=form.contexto_decision,
        timeline=TIMELINE_LABELS[form.timeline],
        alternativas=_numbered(form.alternativas),
        criterios=_numbered(form.criterios),
        informacion_faltante=form.informacion_faltante,
        contexto_personal_section=(
            PERSONAL_CONTEXT_SECTION.format(contexto_personal=personal) if personal else ""
        ),
    )


def validate_form(agent_type: str, form_data: Mapping[str, Any]) -> DecisionArchitectForm:
    """Validate raw form data for an agent type. Raises ValueError / ValidationError."""
    schema = FORM_SCHEMAS.get(agent_type)
    if schema is None:
        raise ValueError(f"Unknown agent type {agent_type!r}")
    return schema.model_validate(form_data)


def render_form_prompt(agent_type: str, form_data: Mapping[str, Any]) -> str:
    form = validate_form(agent_type, form_data)
    return render_decision_prompt(form)


def fallback_prompt(agent_type: str) -> str:
    return FALLBACK_PROMPTS.get(agent_type, GENERIC_PROMPT)


async def get_active_template(session: AsyncSession, agent_type: str) -> str:
    """Return the active template for an agent type, or its fallback."""
    try:
        stmt = (
            select(PromptTemplate)
            .where(
                PromptTemplate.agent_type == agent_type,
                PromptTemplate.is_active.is_(True),  # type: ignore[attr-defined]
            )
            .order_by(PromptTemplate.created_at.desc())  # type: ignore[attr-defined]
            .limit(1)
        )
        result = await session.execute(stmt)
        template = result.scalars().first()
    except Exception:
        logger.exception("Error fetching prompt template for %s", agent_type)
        return fallback_prompt(agent_type)

    if template is None or not template.template_content.strip():
        logger.warning("No active prompt template for %s, using fallback", agent_type)
        return fallback_prompt(agent_type)
    return template.template_content


async def compose_system_prompt(
    session: AsyncSession,
    agent_type: str,
    form_data: Mapping[str, Any] | None = None,
) -> str:
    """Build the system prompt for one chat turn.

    Args:
        session: DB session used for the optional template read.
        agent_type: Persona selector (``AgentType`` value).
        form_data: Intake answers; pass them only on the first turn.
    """
    if form_data:
        try:
            return render_form_prompt(agent_type, form_data)
        except (ValueError, ValidationError):
            logger.warning(
                "Stored form data for %s does not render, using active template",
                agent_type,
                exc_info=True,
            )
    return await get_active_template(session, agent_type)
