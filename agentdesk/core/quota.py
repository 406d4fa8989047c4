"""Subscription plan ceilings and the per-turn admission check.

The check is advisory: it reads the usage counter once at admission time and
does not lock it, so two concurrent turns may both pass when a single slot
remains. The counter itself is only ever moved by an atomic SQL increment.
"""

import logging
from dataclasses import dataclass

from agentdesk.models.profile import SubscriptionPlan

logger = logging.getLogger(__name__)

# Monthly message ceiling per plan.
PLAN_LIMITS: dict[SubscriptionPlan, int] = {
    SubscriptionPlan.FREE: 100,
    SubscriptionPlan.PRO: 1000,
    SubscriptionPlan.ELITE: 2000,
}


class UnknownPlanError(ValueError):
    """The profile carries a plan with no configured ceiling."""


@dataclass(frozen=True)
class QuotaDecision:
    allowed: bool
    limit: int
    usage_count: int
    reason: str | None = None

    @property
    def remaining(self) -> int:
        return max(self.limit - self.usage_count, 0)


def get_plan_limit(plan: str) -> int:
    try:
        return PLAN_LIMITS[SubscriptionPlan(plan)]
    except (KeyError, ValueError) as exc:
        raise UnknownPlanError(f"No usage ceiling configured for plan {plan!r}") from exc


def effective_plan_limit(plan: str) -> int:
    """Ceiling to enforce for ``plan``; unknown plans get the pro ceiling."""
    try:
        return get_plan_limit(plan)
    except UnknownPlanError as exc:
        logger.error("%s; applying the pro ceiling", exc)
        return PLAN_LIMITS[SubscriptionPlan.PRO]


def check_quota(plan: str, usage_count: int) -> QuotaDecision:
    """Admit a new chat turn unless the plan ceiling has been reached."""
    limit = effective_plan_limit(plan)
    if usage_count >= limit:
        return QuotaDecision(
            allowed=False,
            limit=limit,
            usage_count=usage_count,
            reason=f"Monthly limit of {limit} messages reached for plan {plan}",
        )
    return QuotaDecision(allowed=True, limit=limit, usage_count=usage_count)
