"""Stream relay — one chat turn from user message to closed event stream.

States per request::

    AUTHENTICATING → AUTHORIZING → PERSISTING_USER_TURN → STREAMING
        → FINALIZING → CLOSED

with ERRORED reachable from any non-terminal state. Authentication happens
in the ``Auth`` route dependency; ``prepare`` covers authorization and the
user-turn write (failures raise ``ApiError`` before any stream exists), and
``run`` covers everything after the HTTP response has started.

Guarantees:
  - fragments reach the sink immediately and in model emission order;
  - a cancelled or failed stream persists no assistant message and bills
    nothing;
  - once FINALIZING starts it runs to completion even if the request is
    cancelled.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agentdesk.core.errors import ApiError, InternalError, QuotaExceeded, SessionNotFound
from agentdesk.core.quota import QuotaDecision, check_quota
from agentdesk.models.base import utcnow
from agentdesk.models.message import MessageRole
from agentdesk.models.profile import UserProfile
from agentdesk.services.conversation import append_message, get_owned_session
from agentdesk.services.event_sink import ClientDisconnected, EventSink
from agentdesk.services.finalizer import CompletedTurn, FinalizeResult, finalize_turn
from agentdesk.services.llm_stream import (
    FinalUsage,
    ModelStreamClient,
    ModelStreamError,
    TextFragment,
)
from agentdesk.services.prompt_composer import compose_system_prompt
from agentdesk.services.reconciliation import enqueue_finalize_retry

logger = logging.getLogger(__name__)

STREAM_ERROR_MESSAGE = "Error processing response"
INTERNAL_ERROR_MESSAGE = "Internal server error"

# Strong references to fire-and-forget tasks so they are not collected early
_background_tasks: set[asyncio.Task] = set()


def spawn_background(coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
    task = asyncio.create_task(coro)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


class RelayState(StrEnum):
    AUTHENTICATING = "authenticating"
    AUTHORIZING = "authorizing"
    PERSISTING_USER_TURN = "persisting_user_turn"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    CLOSED = "closed"
    ERRORED = "errored"


@dataclass(frozen=True)
class ChatTurnRequest:
    session_id: uuid.UUID
    user_id: uuid.UUID
    message: str
    is_first_message: bool = False


@dataclass(frozen=True)
class PreparedTurn:
    """A turn that passed authorization and has its user message stored."""
    request: ChatTurnRequest
    agent_type: str
    form_data: dict[str, Any] | None
    user_message_id: uuid.UUID
    user_turn_index: int
    quota: QuotaDecision


class StreamRelay:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        model_client: ModelStreamClient,
        *,
        rate_cents: float | None = None,
        reconcile: Callable[[CompletedTurn], Awaitable[bool]] = enqueue_finalize_retry,
    ) -> None:
        self._session_factory = session_factory
        self._model = model_client
        self._rate_cents = rate_cents
        self._reconcile = reconcile
        self.state = RelayState.AUTHENTICATING

    def _transition(self, state: RelayState) -> None:
        logger.debug("Relay %s -> %s", self.state, state)
        self.state = state

    # ── Authorizing + persisting the user turn ───────────────

    async def prepare(self, request: ChatTurnRequest) -> PreparedTurn:
        """Authorize the turn and store the user message.

        Raises ``ApiError`` subclasses; nothing is written unless the turn is
        admitted.
        """
        self._transition(RelayState.AUTHORIZING)
        try:
            async with self._session_factory() as db:
                agent_session = await get_owned_session(db, request.session_id, request.user_id)
                if agent_session is None:
                    raise SessionNotFound()

                decision = await self._check_quota(db, request.user_id)
                if not decision.allowed:
                    logger.info("Quota denied for user %s: %s", request.user_id, decision.reason)
                    raise QuotaExceeded()

                self._transition(RelayState.PERSISTING_USER_TURN)
                try:
                    user_message = await append_message(
                        db, agent_session.id, MessageRole.USER, request.message,
                    )
                    await db.commit()
                except Exception as exc:
                    logger.exception("Failed to store user message for session %s", request.session_id)
                    raise InternalError("Error saving message") from exc

                return PreparedTurn(
                    request=request,
                    agent_type=agent_session.agent_type,
                    form_data=agent_session.form_data if request.is_first_message else None,
                    user_message_id=user_message.id,
                    user_turn_index=user_message.turn_index,
                    quota=decision,
                )
        except ApiError:
            self._transition(RelayState.ERRORED)
            raise
        except Exception as exc:
            self._transition(RelayState.ERRORED)
            logger.exception("Failed to authorize chat turn for session %s", request.session_id)
            raise InternalError() from exc

    async def _check_quota(self, db: AsyncSession, user_id: uuid.UUID) -> QuotaDecision:
        try:
            profile = await db.get(UserProfile, user_id)
        except Exception as exc:
            logger.exception("Failed to load profile %s", user_id)
            raise InternalError("Error verifying profile") from exc
        if profile is None:
            logger.error("Authenticated user %s has no profile", user_id)
            raise InternalError("Error verifying profile")
        return check_quota(profile.subscription_plan, profile.usage_count)

    # ── Streaming → finalizing → closed ──────────────────────

    async def run(
        self,
        turn: PreparedTurn,
        sink: EventSink,
        cancel: asyncio.Event | None = None,
    ) -> RelayState:
        """Relay the model stream into ``sink`` and finalize on completion.

        ``cancel`` is the request's cancellation token: once set, the model
        stream is released at the next fragment and nothing is finalized.
        Cancelling the task running ``run`` has the same effect while
        streaming.
        """
        cancel = cancel or asyncio.Event()
        try:
            completed = await self._stream(turn, sink, cancel)
            if completed is None:
                return self.state

            self._transition(RelayState.FINALIZING)
            # Shielded: a disconnect from here on must not interrupt bookkeeping
            await asyncio.shield(spawn_background(self._finalize(completed)))

            self._transition(RelayState.CLOSED)
            try:
                await sink.complete(
                    {"total_tokens": completed.total_tokens},
                    message_id=str(completed.message_id),
                )
            except ClientDisconnected:
                logger.info("Client left before the completion event of %s", completed.message_id)
            return self.state
        except asyncio.CancelledError:
            if self.state == RelayState.STREAMING:
                self._transition(RelayState.CLOSED)
            raise
        except Exception:
            logger.exception("Chat relay failed for session %s", turn.request.session_id)
            self._transition(RelayState.ERRORED)
            await self._send_error(sink, INTERNAL_ERROR_MESSAGE)
            return self.state
        finally:
            await sink.close()

    async def _stream(
        self, turn: PreparedTurn, sink: EventSink, cancel: asyncio.Event
    ) -> CompletedTurn | None:
        self._transition(RelayState.STREAMING)
        async with self._session_factory() as db:
            system_prompt = await compose_system_prompt(db, turn.agent_type, turn.form_data)

        fragments: list[str] = []
        usage: FinalUsage | None = None
        stream = self._model.open_stream(system_prompt, turn.request.message)
        try:
            async for item in stream:
                if cancel.is_set():
                    break
                if isinstance(item, TextFragment):
                    fragments.append(item.text)
                    await sink.fragment(item.text)
                elif isinstance(item, FinalUsage):
                    usage = item
        except ModelStreamError:
            logger.exception(
                "Model stream failed for session %s after %d fragments",
                turn.request.session_id, len(fragments),
            )
            self._transition(RelayState.ERRORED)
            await self._send_error(sink, STREAM_ERROR_MESSAGE)
            return None
        except ClientDisconnected:
            cancel.set()
        finally:
            await stream.aclose()

        if cancel.is_set():
            logger.info(
                "Chat turn for session %s cancelled after %d fragments",
                turn.request.session_id, len(fragments),
            )
            self._transition(RelayState.CLOSED)
            return None

        return CompletedTurn(
            message_id=uuid.uuid4(),
            session_id=turn.request.session_id,
            user_id=turn.request.user_id,
            content="".join(fragments),
            total_tokens=usage.total_tokens if usage else 0,
            is_first_message=turn.request.is_first_message,
            response_time_ms=usage.duration_ms if usage else None,
            turn_index=turn.user_turn_index + 1,
            completed_at=utcnow(),
        )

    async def _finalize(self, completed: CompletedTurn) -> FinalizeResult:
        result = await finalize_turn(self._session_factory, completed, self._rate_cents)
        if not result.ok:
            logger.error(
                "Turn %s delivered but not fully finalized (failed: %s)",
                completed.message_id, ", ".join(result.failed_steps),
            )
            spawn_background(self._reconcile(completed))
        return result

    async def _send_error(self, sink: EventSink, message: str) -> None:
        try:
            await sink.error(message)
        except ClientDisconnected:
            logger.debug("Client gone, dropping error event")
