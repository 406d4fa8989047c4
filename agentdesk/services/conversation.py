"""Conversation store — append-only chat turns scoped to an agent session."""

import uuid
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from agentdesk.models.agent_session import AgentSession
from agentdesk.models.message import ChatMessage, MessageRole


async def get_owned_session(
    db: AsyncSession, session_id: uuid.UUID, user_id: uuid.UUID
) -> AgentSession | None:
    """Load a session only if it belongs to ``user_id``.

    Unknown ids and other users' sessions are indistinguishable (both None).
    """
    stmt = (
        select(AgentSession)
        .where(AgentSession.id == session_id, AgentSession.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def next_turn_index(
    db: AsyncSession, session_id: uuid.UUID, role: MessageRole | None = None
) -> int:
    """Index for the next message in ``session_id``.

    A user message that follows an unanswered one skips a slot, so a reply
    finalized late still lands right after the turn it answers.
    """
    stmt = (
        select(ChatMessage.turn_index, ChatMessage.role)
        .where(ChatMessage.session_id == session_id)
        .order_by(ChatMessage.turn_index.desc())  # type: ignore[attr-defined]
        .limit(1)
    )
    last = (await db.execute(stmt)).first()
    if last is None:
        return 0
    if role == MessageRole.USER and last.role == MessageRole.USER:
        return last.turn_index + 2
    return last.turn_index + 1


async def append_message(
    db: AsyncSession,
    session_id: uuid.UUID,
    role: MessageRole,
    content: str,
    *,
    message_id: uuid.UUID | None = None,
    tokens_used: int | None = None,
    response_time_ms: int | None = None,
    turn_index: int | None = None,
    created_at: datetime | None = None,
) -> ChatMessage:
    """Stage a new message. Caller commits.

    ``turn_index`` and ``created_at`` pin a message to an earlier position;
    by default it goes at the end of the transcript, stamped now.
    """
    if turn_index is None:
        turn_index = await next_turn_index(db, session_id, role)
    message = ChatMessage(
        session_id=session_id,
        role=role,
        content=content,
        turn_index=turn_index,
        tokens_used=tokens_used,
        response_time_ms=response_time_ms,
    )
    if message_id is not None:
        message.id = message_id
    if created_at is not None:
        message.created_at = created_at
    db.add(message)
    await db.flush()
    return message


async def get_message(db: AsyncSession, message_id: uuid.UUID) -> ChatMessage | None:
    return await db.get(ChatMessage, message_id)


async def list_messages(db: AsyncSession, session_id: uuid.UUID) -> list[ChatMessage]:
    """Full transcript in conversation order."""
    stmt = (
        select(ChatMessage)
        .where(ChatMessage.session_id == session_id)
        .order_by(
            ChatMessage.created_at.asc(),  # type: ignore[attr-defined]
            ChatMessage.turn_index.asc(),  # type: ignore[attr-defined]
        )
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())
