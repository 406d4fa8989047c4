"""Agent session endpoints — create from the intake form, fetch, update status."""

import uuid
from typing import Any

from fastapi import APIRouter, status
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel
from sqlmodel import select

from agentdesk.api.deps import Auth, Session
from agentdesk.core.errors import ApiError, InvalidTransition, SessionNotFound
from agentdesk.models.agent_session import (
    AgentSession,
    AgentSessionDetail,
    AgentSessionRead,
    AgentType,
    SessionStatus,
    can_transition,
)
from agentdesk.models.base import utcnow
from agentdesk.models.message import ChatMessageRead
from agentdesk.models.usage_log import UsageEventType
from agentdesk.services.conversation import get_owned_session, list_messages
from agentdesk.services.prompt_composer import render_decision_prompt, validate_form
from agentdesk.services.usage_ledger import log_event

router = APIRouter(prefix="/sessions", tags=["sessions"])


# ── Schemas ──────────────────────────────────────────────────

class SessionCreate(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    agent_type: AgentType
    form_data: dict[str, Any]


class SessionUpdate(BaseModel):
    status: SessionStatus


class SessionEnvelope(BaseModel):
    session: AgentSessionRead


class SessionDetailEnvelope(BaseModel):
    session: AgentSessionDetail


class InvalidForm(ApiError):
    status_code = status.HTTP_422_UNPROCESSABLE_CONTENT
    message = "Invalid form data"
    error_type = "validation_error"


# ── Routes ───────────────────────────────────────────────────

@router.post("", response_model=SessionEnvelope, status_code=status.HTTP_201_CREATED)
async def create_session(body: SessionCreate, auth: Auth, session: Session) -> SessionEnvelope:
    """Start a session from a submitted intake form."""
    try:
        form = validate_form(body.agent_type, body.form_data)
    except ValidationError as exc:
        first = exc.errors()[0]
        field = ".".join(str(p) for p in first["loc"])
        raise InvalidForm(f"formData.{field}: {first['msg']}") from exc

    agent_session = AgentSession(
        user_id=auth.user_id,
        agent_type=body.agent_type,
        form_data=form.to_record(),
        generated_prompt=render_decision_prompt(form),
        status=SessionStatus.ACTIVE,
    )
    session.add(agent_session)
    await session.flush()

    log_event(
        session,
        auth.user_id,
        UsageEventType.FORM_COMPLETED,
        session_id=agent_session.id,
        event_data={"agent_type": body.agent_type},
    )
    await session.commit()
    await session.refresh(agent_session)
    return SessionEnvelope(session=AgentSessionRead.model_validate(agent_session))


@router.get("", response_model=list[AgentSessionRead])
async def list_sessions(auth: Auth, session: Session, limit: int = 5) -> list[AgentSessionRead]:
    """The caller's most recent sessions, newest first."""
    stmt = (
        select(AgentSession)
        .where(AgentSession.user_id == auth.user_id)
        .order_by(AgentSession.created_at.desc())  # type: ignore[attr-defined]
        .limit(max(1, min(limit, 100)))
    )
    result = await session.execute(stmt)
    return [AgentSessionRead.model_validate(s) for s in result.scalars().all()]


@router.get("/{session_id}", response_model=SessionDetailEnvelope)
async def get_session_detail(
    session_id: uuid.UUID, auth: Auth, session: Session
) -> SessionDetailEnvelope:
    """Session record plus its ordered transcript."""
    agent_session = await get_owned_session(session, session_id, auth.user_id)
    if agent_session is None:
        raise SessionNotFound()

    messages = await list_messages(session, agent_session.id)
    detail = AgentSessionDetail.model_validate(agent_session)
    detail.messages = [ChatMessageRead.model_validate(m) for m in messages]
    return SessionDetailEnvelope(session=detail)


@router.patch("/{session_id}", response_model=SessionEnvelope)
async def update_session(
    session_id: uuid.UUID, body: SessionUpdate, auth: Auth, session: Session
) -> SessionEnvelope:
    """Change a session's status; stamps ``completed_at`` on completion, clears it on reopen."""
    agent_session = await get_owned_session(session, session_id, auth.user_id)
    if agent_session is None:
        raise SessionNotFound()

    if not can_transition(agent_session.status, body.status):
        raise InvalidTransition(
            f"Cannot change session status from {agent_session.status} to {body.status}"
        )

    if agent_session.status != body.status:
        agent_session.status = body.status
        if body.status == SessionStatus.COMPLETED:
            agent_session.completed_at = utcnow()
        elif body.status == SessionStatus.ACTIVE:
            agent_session.completed_at = None
        agent_session.updated_at = utcnow()
        session.add(agent_session)
        await session.commit()
        await session.refresh(agent_session)

    return SessionEnvelope(session=AgentSessionRead.model_validate(agent_session))
