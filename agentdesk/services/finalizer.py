"""Turn finalizer — post-stream persistence and billing for one turn.

Runs two independent steps for a completed turn:

  (a) store the assembled assistant message under its pre-assigned id;
  (b) charge the turn in the usage ledger (audit event, usage counter,
      session cost and activity), keyed by the same id.

Both steps are idempotent, so the whole thing can be re-run from the
reconciliation worker after a partial failure without double counting.
A failure in one step is logged and does not undo or skip the other.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agentdesk.core.pricing import calc_cost_cents
from agentdesk.models.message import MessageRole
from agentdesk.services.conversation import append_message, get_message
from agentdesk.services.usage_ledger import TurnCharge, record_turn_charge

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompletedTurn:
    """Everything needed to finalize a turn, serializable for the job queue.

    ``turn_index`` and ``completed_at`` pin the reply to the slot right after
    its user message, so a late retry cannot reorder the transcript.
    """
    message_id: uuid.UUID
    session_id: uuid.UUID
    user_id: uuid.UUID
    content: str
    total_tokens: int
    is_first_message: bool
    response_time_ms: int | None = None
    turn_index: int | None = None
    completed_at: datetime | None = None

    def to_payload(self) -> dict[str, Any]:
        payload = asdict(self)
        for key in ("message_id", "session_id", "user_id"):
            payload[key] = str(payload[key])
        if self.completed_at is not None:
            payload["completed_at"] = self.completed_at.isoformat()
        return payload

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> CompletedTurn:
        completed_at = payload.get("completed_at")
        return cls(
            message_id=uuid.UUID(payload["message_id"]),
            session_id=uuid.UUID(payload["session_id"]),
            user_id=uuid.UUID(payload["user_id"]),
            content=payload["content"],
            total_tokens=int(payload["total_tokens"]),
            is_first_message=bool(payload["is_first_message"]),
            response_time_ms=payload.get("response_time_ms"),
            turn_index=payload.get("turn_index"),
            completed_at=datetime.fromisoformat(completed_at) if completed_at else None,
        )


@dataclass
class FinalizeResult:
    message_saved: bool = False
    charge_applied: bool = False
    failed_steps: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed_steps


async def _save_assistant_message(db: AsyncSession, turn: CompletedTurn) -> None:
    if await get_message(db, turn.message_id) is not None:
        logger.info("Assistant message %s already stored", turn.message_id)
        return
    await append_message(
        db,
        turn.session_id,
        MessageRole.ASSISTANT,
        turn.content,
        message_id=turn.message_id,
        tokens_used=turn.total_tokens,
        response_time_ms=turn.response_time_ms,
        turn_index=turn.turn_index,
        created_at=turn.completed_at,
    )
    await db.commit()


async def finalize_turn(
    session_factory: async_sessionmaker[AsyncSession],
    turn: CompletedTurn,
    rate_cents: float | None = None,
) -> FinalizeResult:
    result = FinalizeResult()

    try:
        async with session_factory() as db:
            await _save_assistant_message(db, turn)
        result.message_saved = True
    except Exception:
        logger.exception(
            "Failed to store assistant message %s for session %s",
            turn.message_id, turn.session_id,
        )
        result.failed_steps.append("message")

    charge = TurnCharge(
        message_id=turn.message_id,
        user_id=turn.user_id,
        session_id=turn.session_id,
        total_tokens=turn.total_tokens,
        cost_cents=calc_cost_cents(turn.total_tokens, rate_cents),
        is_first_message=turn.is_first_message,
    )
    try:
        async with session_factory() as db:
            result.charge_applied = await record_turn_charge(db, charge)
    except Exception:
        logger.exception(
            "Failed to charge turn %s for user %s", turn.message_id, turn.user_id,
        )
        result.failed_steps.append("charge")

    return result
