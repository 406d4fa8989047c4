"""Reconciliation queue for turns that were delivered but not fully finalized.

When finalization partly fails after the client already has the full reply,
the turn is handed to the ARQ worker, which re-runs the idempotent finalizer
(see ``agentdesk.workers.finalize``).
"""

import json
import logging

from arq import create_pool
from arq.connections import RedisSettings

from agentdesk.core.config import get_settings
from agentdesk.services.finalizer import CompletedTurn

logger = logging.getLogger(__name__)

RETRY_FINALIZE_JOB = "retry_finalize_turn"


def redis_settings() -> RedisSettings:
    """Parse REDIS_URL into ARQ RedisSettings."""
    return RedisSettings.from_dsn(get_settings().redis_url)


def finalize_job_id(turn: CompletedTurn) -> str:
    # One queued retry per assistant message
    return f"finalize:{turn.message_id}"


async def enqueue_finalize_retry(turn: CompletedTurn) -> bool:
    """Queue a finalizer retry. Returns False if the queue is unreachable."""
    payload = turn.to_payload()
    try:
        pool = await create_pool(redis_settings())
        try:
            await pool.enqueue_job(RETRY_FINALIZE_JOB, payload, _job_id=finalize_job_id(turn))
        finally:
            await pool.aclose()
    except Exception:
        # Last resort: the payload in the log is enough to replay the turn by hand
        logger.critical(
            "Could not queue finalize retry for turn %s; manual reconciliation needed: %s",
            turn.message_id,
            json.dumps(payload, ensure_ascii=False),
            exc_info=True,
        )
        return False

    logger.warning("Queued finalize retry for turn %s", turn.message_id)
    return True
