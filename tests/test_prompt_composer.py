"""Prompt composer: form rendering, active templates and the fallback chain."""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from conftest import VALID_FORM
from pydantic import ValidationError

from agentdesk.core.prompts import FALLBACK_PROMPTS, GENERIC_PROMPT
from agentdesk.models.base import utcnow
from agentdesk.models.prompt_template import PromptTemplate
from agentdesk.services.prompt_composer import (
    compose_system_prompt,
    fallback_prompt,
    get_active_template,
    render_form_prompt,
    validate_form,
)

AGENT = "arquitecto-decisiones"


def test_first_turn_prompt_renders_form():
    prompt = render_form_prompt(AGENT, VALID_FORM)

    assert "TIMELINE PARA LA DECISIÓN: URGENTE (esta semana)" in prompt
    assert "ALTERNATIVAS IDENTIFICADAS:\n1. A\n2. B" in prompt
    assert "1. Ingresos\n2. Familia\n3. Crecimiento" in prompt
    assert VALID_FORM["contextoDecision"] in prompt
    assert "CONTEXTO PERSONAL" not in prompt
    assert "{" not in prompt


def test_personal_context_section_included_when_present():
    form = {**VALID_FORM, "contextoPersonal": "Tengo dos hijos pequeños."}
    prompt = render_form_prompt(AGENT, form)
    assert "CONTEXTO PERSONAL:\nTengo dos hijos pequeños." in prompt


def test_blank_personal_context_is_omitted():
    form = {**VALID_FORM, "contextoPersonal": "   "}
    assert "CONTEXTO PERSONAL" not in render_form_prompt(AGENT, form)


@pytest.mark.parametrize("timeline, label", [
    ("2-4-semanas", "2-4 semanas"),
    ("1-2-meses", "1-2 meses"),
    ("flexible", "Sin prisa específica"),
])
def test_timeline_labels(timeline, label):
    prompt = render_form_prompt(AGENT, {**VALID_FORM, "timeline": timeline})
    assert f"TIMELINE PARA LA DECISIÓN: {label}" in prompt


@pytest.mark.parametrize("override", [
    {"contextoDecision": "muy corto"},
    {"alternativas": ["solo una"]},
    {"criterios": ["uno", "dos"]},
    {"timeline": "ayer"},
    {"informacionFaltante": "poco"},
    {"alternativas": ["A", "  "]},
])
def test_invalid_forms_rejected(override):
    with pytest.raises(ValidationError):
        validate_form(AGENT, {**VALID_FORM, **override})


def test_unknown_agent_type_rejected():
    with pytest.raises(ValueError):
        validate_form("coach-financiero", VALID_FORM)


def test_fallback_prompt_per_agent():
    assert fallback_prompt(AGENT) == FALLBACK_PROMPTS[AGENT]
    assert fallback_prompt("coach-financiero") == GENERIC_PROMPT


@pytest.mark.asyncio
async def test_active_template_used_after_first_turn(session):
    session.add(PromptTemplate(
        agent_type=AGENT, version="1", template_content="old", is_active=True,
        created_at=utcnow() - timedelta(days=1),
    ))
    session.add(PromptTemplate(
        agent_type=AGENT, version="2", template_content="current", is_active=True,
    ))
    session.add(PromptTemplate(
        agent_type=AGENT, version="3", template_content="draft", is_active=False,
    ))
    await session.commit()

    assert await compose_system_prompt(session, AGENT) == "current"


@pytest.mark.asyncio
async def test_missing_template_falls_back(session):
    assert await get_active_template(session, AGENT) == FALLBACK_PROMPTS[AGENT]
    assert await get_active_template(session, "coach-financiero") == GENERIC_PROMPT


@pytest.mark.asyncio
async def test_template_read_error_falls_back():
    broken = AsyncMock()
    broken.execute.side_effect = RuntimeError("connection reset")

    prompt = await compose_system_prompt(broken, AGENT)
    assert prompt == FALLBACK_PROMPTS[AGENT]


@pytest.mark.asyncio
async def test_unrenderable_form_uses_template(session):
    """Stored form data that no longer validates does not break the turn."""
    prompt = await compose_system_prompt(session, AGENT, {"timeline": "urgente"})
    assert prompt == FALLBACK_PROMPTS[AGENT]


@pytest.mark.asyncio
async def test_form_takes_precedence_over_template(session):
    session.add(PromptTemplate(
        agent_type=AGENT, version="1", template_content="template", is_active=True,
    ))
    await session.commit()

    prompt = await compose_system_prompt(session, AGENT, VALID_FORM)
    assert prompt.startswith("Eres el Arquitecto de Decisiones")
