"""Periodic job — restart monthly usage counters whose period has ended."""

from __future__ import annotations

import logging

from agentdesk.core.database import async_session_factory
from agentdesk.services.usage_ledger import reset_monthly_usage

logger = logging.getLogger(__name__)


async def reset_monthly_usage_job(ctx: dict) -> dict:
    async with async_session_factory() as session:
        reset = await reset_monthly_usage(session)
    logger.info("Monthly usage reset: %d profiles", reset)
    return {"reset": reset}
