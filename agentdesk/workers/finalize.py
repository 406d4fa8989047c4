"""Reconciliation task — re-run finalization for a delivered turn."""

from __future__ import annotations

import logging

from arq import Retry

from agentdesk.core.database import async_session_factory
from agentdesk.services.finalizer import CompletedTurn, finalize_turn

logger = logging.getLogger(__name__)

# Seconds to wait before the next attempt, multiplied by the try number
RETRY_BACKOFF = 30


async def retry_finalize_turn(ctx: dict, payload: dict) -> dict:
    """ARQ task: finalize a turn whose first finalization partly failed.

    Safe to run any number of times for the same turn: the message write and
    the charge are both keyed by the assistant message id.
    """
    turn = CompletedTurn.from_payload(payload)
    result = await finalize_turn(async_session_factory, turn)

    if not result.ok:
        attempt = ctx.get("job_try", 1)
        logger.warning(
            "Finalize retry %d for turn %s still failing (%s)",
            attempt, turn.message_id, ", ".join(result.failed_steps),
        )
        raise Retry(defer=attempt * RETRY_BACKOFF)

    logger.info("Reconciled turn %s", turn.message_id)
    return {
        "message_id": str(turn.message_id),
        "message_saved": result.message_saved,
        "charge_applied": result.charge_applied,
    }
