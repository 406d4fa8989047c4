"""Chat endpoint — streams one assistant reply as server-sent events."""

import asyncio
import logging
import uuid
from collections.abc import AsyncGenerator

from fastapi import APIRouter
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from agentdesk.api.deps import Auth, ModelClient, SessionFactory
from agentdesk.services.event_sink import SSEEventSink
from agentdesk.services.stream_relay import (
    ChatTurnRequest,
    PreparedTurn,
    StreamRelay,
    spawn_background,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/chat", tags=["chat"])


# ── Request schema ────────────────────────────────────────────

class ChatStreamRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    session_id: uuid.UUID
    message: str = Field(min_length=1, max_length=32000)
    is_first_message: bool = False


# ── Route ─────────────────────────────────────────────────────

@router.post("/stream")
async def stream_chat(
    body: ChatStreamRequest,
    auth: Auth,
    session_factory: SessionFactory,
    model_client: ModelClient,
) -> StreamingResponse:
    """Send a message and stream the assistant's reply.

    Authorization, quota and the user-message write happen before the
    response starts, so their failures come back as plain JSON errors
    (404, 403 ``usage_limit``, 500). After that the body is a
    ``text/event-stream`` of ``{token}`` events ending in exactly one
    ``{complete, usage}`` or ``{error}`` event.
    """
    relay = StreamRelay(session_factory, model_client)
    turn = await relay.prepare(ChatTurnRequest(
        session_id=body.session_id,
        user_id=auth.user_id,
        message=body.message,
        is_first_message=body.is_first_message,
    ))

    return StreamingResponse(
        _relay_events(relay, turn),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


# ── SSE streaming generator ──────────────────────────────────

async def _relay_events(relay: StreamRelay, turn: PreparedTurn) -> AsyncGenerator[str, None]:
    """Run the relay in its own task and yield the frames it emits."""
    sink = SSEEventSink()
    cancel = asyncio.Event()
    task = spawn_background(relay.run(turn, sink, cancel))
    finished = False
    try:
        async for frame in sink.frames():
            yield frame
        finished = True
    finally:
        if not finished and not task.done():
            # The client stopped reading before the terminal event
            logger.info("Client disconnected from session %s stream", turn.request.session_id)
            cancel.set()
            sink.disconnect()
            task.cancel()
