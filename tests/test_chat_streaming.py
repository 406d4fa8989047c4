"""Streaming chat endpoint — SSE responses with mocked LLM streaming."""

import json
import uuid
from unittest.mock import patch

import pytest
from conftest import create_session, register, set_usage
from httpx import AsyncClient
from sqlmodel import select
from streaming import FakeStream, make_usage, stream_mock, word_chunks

from agentdesk.models.agent_session import AgentSession
from agentdesk.models.message import ChatMessage, MessageRole
from agentdesk.models.profile import UserProfile


def _parse_sse_events(text: str) -> list[dict]:
    """Parse ``data: <json>`` frames into a list of payloads."""
    return [
        json.loads(line[len("data: "):])
        for line in text.split("\n")
        if line.startswith("data: ")
    ]


async def _setup_chat(client: AsyncClient, email: str) -> dict:
    user = await register(client, email)
    agent_session = await create_session(client, user["headers"])
    return {**user, "session_id": agent_session["id"]}


async def _send(client: AsyncClient, ctx: dict, message: str = "¿Por dónde empiezo?", **extra):
    return await client.post("/v1/chat/stream", json={
        "sessionId": ctx["session_id"],
        "message": message,
        **extra,
    }, headers=ctx["headers"])


async def _transcript(session, session_id: str) -> list[ChatMessage]:
    result = await session.execute(
        select(ChatMessage)
        .where(ChatMessage.session_id == uuid.UUID(session_id))
        .order_by(ChatMessage.turn_index)
    )
    return list(result.scalars().all())


async def _usage_count(session, user_id: str) -> int:
    profile = await session.get(UserProfile, uuid.UUID(user_id), populate_existing=True)
    return profile.usage_count


@pytest.mark.asyncio
async def test_stream_first_message(client: AsyncClient, session):
    ctx = await _setup_chat(client, "first.chat@example.com")
    fake = FakeStream(word_chunks("Resumen ejecutivo: conviene esperar.", make_usage(900, 350)))

    with patch("agentdesk.services.llm_stream.acompletion", stream_mock(fake)):
        resp = await _send(client, ctx, isFirstMessage=True)

    assert resp.status_code == 200
    assert "text/event-stream" in resp.headers["content-type"]
    assert resp.headers["cache-control"] == "no-cache"

    events = _parse_sse_events(resp.text)
    tokens = [e["token"] for e in events if "token" in e]
    assert "".join(tokens) == "Resumen ejecutivo: conviene esperar."
    assert events[-1]["complete"] is True
    assert events[-1]["usage"] == {"total_tokens": 1250}
    assert sum(1 for e in events if "complete" in e or "error" in e) == 1

    transcript = await _transcript(session, ctx["session_id"])
    assert [m.role for m in transcript] == [MessageRole.USER, MessageRole.ASSISTANT]
    assert transcript[1].content == "".join(tokens)
    assert str(transcript[1].id) == events[-1]["message_id"]

    assert await _usage_count(session, ctx["user_id"]) == 1
    agent_session = await session.get(
        AgentSession, uuid.UUID(ctx["session_id"]), populate_existing=True,
    )
    assert agent_session.cost_cents == 3


@pytest.mark.asyncio
async def test_stream_requires_auth(client: AsyncClient):
    resp = await client.post("/v1/chat/stream", json={
        "sessionId": str(uuid.uuid4()), "message": "hola",
    })
    assert resp.status_code == 401
    assert resp.json() == {"error": "Unauthorized"}


@pytest.mark.asyncio
async def test_stream_foreign_session_is_404(client: AsyncClient, session):
    owner = await _setup_chat(client, "owner.chat@example.com")
    other = await register(client, "other.chat@example.com")

    with patch("agentdesk.services.llm_stream.acompletion", stream_mock(FakeStream([]))) as mock:
        foreign = await _send(client, {**other, "session_id": owner["session_id"]})
        missing = await _send(client, {**other, "session_id": str(uuid.uuid4())})

    assert foreign.status_code == missing.status_code == 404
    assert foreign.json() == missing.json() == {"error": "Session not found"}
    assert mock.call_count == 0
    assert await _transcript(session, owner["session_id"]) == []


@pytest.mark.asyncio
async def test_stream_quota_reached(client: AsyncClient, session):
    ctx = await _setup_chat(client, "quota.chat@example.com")
    await set_usage(session, ctx["user_id"], usage_count=100)

    with patch("agentdesk.services.llm_stream.acompletion", stream_mock(FakeStream([]))) as mock:
        resp = await _send(client, ctx)

    assert resp.status_code == 403
    assert resp.json() == {"error": "Usage limit reached", "type": "usage_limit"}
    assert mock.call_count == 0
    assert await _transcript(session, ctx["session_id"]) == []


@pytest.mark.asyncio
async def test_pro_user_last_message_then_denied(client: AsyncClient, session):
    ctx = await _setup_chat(client, "pro.chat@example.com")
    await set_usage(session, ctx["user_id"], plan="pro", usage_count=999)

    with patch(
        "agentdesk.services.llm_stream.acompletion",
        stream_mock(FakeStream(word_chunks("Última respuesta."))),
    ):
        resp = await _send(client, ctx)
    assert resp.status_code == 200
    assert _parse_sse_events(resp.text)[-1]["complete"] is True
    assert await _usage_count(session, ctx["user_id"]) == 1000

    with patch(
        "agentdesk.services.llm_stream.acompletion",
        stream_mock(FakeStream(word_chunks("No debería llegar."))),
    ):
        resp = await _send(client, ctx)
    assert resp.status_code == 403
    assert resp.json()["type"] == "usage_limit"


@pytest.mark.asyncio
async def test_stream_model_failure_sends_error_event(client: AsyncClient, session):
    ctx = await _setup_chat(client, "failure.chat@example.com")
    fake = FakeStream(word_chunks("uno dos tres cuatro"), fail_after=2)

    with patch("agentdesk.services.llm_stream.acompletion", stream_mock(fake)):
        resp = await _send(client, ctx)

    assert resp.status_code == 200
    events = _parse_sse_events(resp.text)
    assert [e["token"] for e in events if "token" in e] == ["uno", " dos"]
    assert events[-1] == {"error": "Error processing response"}
    assert not any("complete" in e for e in events)

    # The user turn stays, nothing is billed
    transcript = await _transcript(session, ctx["session_id"])
    assert [m.role for m in transcript] == [MessageRole.USER]
    assert await _usage_count(session, ctx["user_id"]) == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("body", [
    {"message": "hola"},
    {"sessionId": "not-a-uuid", "message": "hola"},
    {"sessionId": str(uuid.uuid4()), "message": ""},
    {"sessionId": str(uuid.uuid4())},
])
async def test_stream_malformed_request(client: AsyncClient, body):
    user = await register(client, f"{uuid.uuid4().hex[:8]}.chat@example.com")

    resp = await client.post("/v1/chat/stream", json=body, headers=user["headers"])
    assert resp.status_code == 422
    assert resp.json()["type"] == "validation_error"


@pytest.mark.asyncio
async def test_session_detail_shows_turns_in_order(client: AsyncClient):
    ctx = await _setup_chat(client, "history.chat@example.com")

    for reply in ("Primera respuesta.", "Segunda respuesta."):
        with patch(
            "agentdesk.services.llm_stream.acompletion",
            stream_mock(FakeStream(word_chunks(reply))),
        ):
            resp = await _send(client, ctx, message=f"Pregunta para {reply}")
            assert resp.status_code == 200

    resp = await client.get(f"/v1/sessions/{ctx['session_id']}", headers=ctx["headers"])
    messages = resp.json()["session"]["messages"]
    assert [m["role"] for m in messages] == ["user", "assistant", "user", "assistant"]
    assert [m["turn_index"] for m in messages] == [0, 1, 2, 3]
    assert messages[3]["content"] == "Segunda respuesta."
