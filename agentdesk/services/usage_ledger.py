"""Usage ledger — usage counters, session cost and the audit trail.

A completed turn is charged exactly once. The charge is keyed by the
assistant message id: the ``chat_message`` audit event carries that id under a
unique constraint, and the counter increment and session cost update commit
in the same transaction as the event. Re-running a charge for the same
message id is a no-op.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from agentdesk.models.agent_session import AgentSession
from agentdesk.models.base import utcnow
from agentdesk.models.profile import UserProfile, first_day_of_next_month
from agentdesk.models.usage_log import UsageEventType, UsageLog

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TurnCharge:
    message_id: uuid.UUID
    user_id: uuid.UUID
    session_id: uuid.UUID
    total_tokens: int
    cost_cents: int
    is_first_message: bool


def log_event(
    db: AsyncSession,
    user_id: uuid.UUID,
    event_type: UsageEventType,
    *,
    session_id: uuid.UUID | None = None,
    event_data: dict[str, Any] | None = None,
    cost_cents: int = 0,
) -> UsageLog:
    """Stage an audit event. Caller commits."""
    event = UsageLog(
        user_id=user_id,
        session_id=session_id,
        event_type=event_type,
        event_data=event_data,
        cost_cents=cost_cents,
    )
    db.add(event)
    return event


async def increment_usage(db: AsyncSession, user_id: uuid.UUID) -> None:
    """Atomic ``usage_count + 1`` in SQL, never read-modify-write."""
    await db.execute(
        update(UserProfile)
        .where(UserProfile.id == user_id)
        .values(usage_count=UserProfile.usage_count + 1, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )


async def add_session_cost(db: AsyncSession, session_id: uuid.UUID, cost_cents: int) -> None:
    """Accumulate cost and touch the activity timestamp."""
    now = utcnow()
    await db.execute(
        update(AgentSession)
        .where(AgentSession.id == session_id)
        .values(
            cost_cents=AgentSession.cost_cents + max(cost_cents, 0),
            last_activity_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )


async def is_charged(db: AsyncSession, message_id: uuid.UUID) -> bool:
    stmt = select(UsageLog.id).where(UsageLog.message_id == message_id)
    result = await db.execute(stmt)
    return result.scalar_one_or_none() is not None


async def record_turn_charge(db: AsyncSession, charge: TurnCharge) -> bool:
    """Charge one completed turn. Returns False if it was already charged."""
    if await is_charged(db, charge.message_id):
        logger.info("Turn %s already charged, skipping", charge.message_id)
        return False

    try:
        db.add(UsageLog(
            user_id=charge.user_id,
            session_id=charge.session_id,
            message_id=charge.message_id,
            event_type=UsageEventType.CHAT_MESSAGE,
            event_data={
                "tokens_used": charge.total_tokens,
                "is_first_message": charge.is_first_message,
                "message_id": str(charge.message_id),
            },
            cost_cents=charge.cost_cents,
        ))
        await db.flush()
        await increment_usage(db, charge.user_id)
        await add_session_cost(db, charge.session_id, charge.cost_cents)
        await db.commit()
    except IntegrityError:
        # A concurrent finalizer won the race on the message id
        await db.rollback()
        logger.info("Turn %s charged concurrently, skipping", charge.message_id)
        return False
    return True


async def reset_monthly_usage(db: AsyncSession, now: datetime | None = None) -> int:
    """Zero the counters whose reset date has passed. Returns rows touched."""
    now = now or utcnow()
    result = await db.execute(
        update(UserProfile)
        .where(UserProfile.monthly_usage_reset <= now)  # type: ignore[operator]
        .values(
            usage_count=0,
            monthly_usage_reset=first_day_of_next_month(now),
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount or 0
