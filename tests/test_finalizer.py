"""Turn finalizer and usage ledger — idempotent persistence and billing."""

import uuid
from dataclasses import replace
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func
from sqlmodel import select

from agentdesk.models.agent_session import AgentSession, AgentType
from agentdesk.models.base import utcnow
from agentdesk.models.message import ChatMessage, MessageRole
from agentdesk.models.profile import UserProfile
from agentdesk.models.usage_log import UsageLog
from agentdesk.services.conversation import append_message, list_messages
from agentdesk.services.finalizer import CompletedTurn, finalize_turn
from agentdesk.services.usage_ledger import TurnCharge, record_turn_charge


@pytest.fixture
async def turn(session) -> CompletedTurn:
    profile = UserProfile(email=f"{uuid.uuid4().hex[:8]}.final@example.com", password_hash="x")
    session.add(profile)
    await session.flush()
    agent_session = AgentSession(
        user_id=profile.id, agent_type=AgentType.ARQUITECTO_DECISIONES, form_data={},
    )
    session.add(agent_session)
    await session.commit()
    return CompletedTurn(
        message_id=uuid.uuid4(),
        session_id=agent_session.id,
        user_id=profile.id,
        content="Primero, resumamos la decisión.",
        total_tokens=600,
        is_first_message=False,
        response_time_ms=850,
    )


async def _state(session, turn: CompletedTurn) -> tuple[int, int, int, int]:
    profile = await session.get(UserProfile, turn.user_id, populate_existing=True)
    agent_session = await session.get(AgentSession, turn.session_id, populate_existing=True)
    messages = (await session.execute(
        select(func.count()).select_from(ChatMessage).where(ChatMessage.id == turn.message_id)
    )).scalar_one()
    logs = (await session.execute(
        select(func.count()).select_from(UsageLog).where(UsageLog.message_id == turn.message_id)
    )).scalar_one()
    return profile.usage_count, agent_session.cost_cents, messages, logs


@pytest.mark.asyncio
async def test_finalize_stores_and_charges(session, test_session_factory, turn):
    result = await finalize_turn(test_session_factory, turn, rate_cents=0.002)

    assert result.ok
    assert result.message_saved and result.charge_applied
    assert await _state(session, turn) == (1, 1, 1, 1)

    message = await session.get(ChatMessage, turn.message_id)
    assert message.role == MessageRole.ASSISTANT
    assert message.tokens_used == 600
    assert message.response_time_ms == 850


@pytest.mark.asyncio
async def test_finalize_twice_counts_once(session, test_session_factory, turn):
    await finalize_turn(test_session_factory, turn, rate_cents=0.002)
    again = await finalize_turn(test_session_factory, turn, rate_cents=0.002)

    assert again.ok
    assert again.charge_applied is False
    assert await _state(session, turn) == (1, 1, 1, 1)


@pytest.mark.asyncio
async def test_retry_completes_partial_finalization(session, test_session_factory, turn):
    failing = AsyncMock(side_effect=RuntimeError("connection lost"))
    with patch("agentdesk.services.finalizer.append_message", failing):
        first = await finalize_turn(test_session_factory, turn, rate_cents=0.002)

    assert first.failed_steps == ["message"]
    assert first.charge_applied is True
    assert await _state(session, turn) == (1, 1, 0, 1)

    second = await finalize_turn(test_session_factory, turn, rate_cents=0.002)
    assert second.ok
    assert await _state(session, turn) == (1, 1, 1, 1)


@pytest.mark.asyncio
async def test_concurrent_charge_loses_race_cleanly(session, test_session_factory, turn):
    charge = TurnCharge(
        message_id=turn.message_id, user_id=turn.user_id, session_id=turn.session_id,
        total_tokens=600, cost_cents=1, is_first_message=False,
    )
    async with test_session_factory() as db:
        assert await record_turn_charge(db, charge) is True

    # Second writer passed the pre-check before the first committed
    with patch("agentdesk.services.usage_ledger.is_charged", AsyncMock(return_value=False)):
        async with test_session_factory() as db:
            assert await record_turn_charge(db, charge) is False

    usage, cost, _, logs = await _state(session, turn)
    assert (usage, cost, logs) == (1, 1, 1)


@pytest.mark.asyncio
async def test_zero_token_turn_still_counts_message(session, test_session_factory, turn):
    free = replace(turn, message_id=uuid.uuid4(), total_tokens=0)
    await finalize_turn(test_session_factory, free, rate_cents=0.002)

    profile = await session.get(UserProfile, turn.user_id, populate_existing=True)
    agent_session = await session.get(AgentSession, turn.session_id, populate_existing=True)
    assert profile.usage_count == 1
    assert agent_session.cost_cents == 0


@pytest.mark.asyncio
async def test_payload_round_trip(turn):
    payload = turn.to_payload()
    assert payload["message_id"] == str(turn.message_id)
    assert CompletedTurn.from_payload(payload) == turn

    pinned = replace(turn, turn_index=3, completed_at=utcnow())
    assert CompletedTurn.from_payload(pinned.to_payload()) == pinned


@pytest.mark.asyncio
async def test_late_reply_keeps_its_place(session, test_session_factory, turn):
    started = utcnow() - timedelta(minutes=5)
    question = await append_message(
        session, turn.session_id, MessageRole.USER, "¿Me mudo?", created_at=started,
    )
    await session.commit()
    late = replace(
        turn,
        turn_index=question.turn_index + 1,
        completed_at=started + timedelta(seconds=20),
    )

    failing = AsyncMock(side_effect=RuntimeError("connection lost"))
    with patch("agentdesk.services.finalizer.append_message", failing):
        first = await finalize_turn(test_session_factory, late, rate_cents=0.002)
    assert first.failed_steps == ["message"]

    # The user moves on before the reply is written
    follow_up = await append_message(session, turn.session_id, MessageRole.USER, "¿Y si no?")
    await session.commit()
    assert follow_up.turn_index == 2

    retried = await finalize_turn(test_session_factory, late, rate_cents=0.002)
    assert retried.ok

    async with test_session_factory() as db:
        transcript = await list_messages(db, turn.session_id)
    assert [(m.role, m.turn_index) for m in transcript] == [
        (MessageRole.USER, 0),
        (MessageRole.ASSISTANT, 1),
        (MessageRole.USER, 2),
    ]
    assert transcript[1].id == turn.message_id
    assert transcript[1].created_at == late.completed_at
