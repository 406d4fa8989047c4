"""Token cost accounting.

Every completed turn is billed at a flat per-token rate, expressed in
integer cents. The rate lives in settings (``COST_PER_TOKEN_CENTS``).
"""

import math

from agentdesk.core.config import get_settings


def calc_cost_cents(total_tokens: int, rate_cents: float | None = None) -> int:
    """Cents charged for one turn, rounded half-up to an integer."""
    if rate_cents is None:
        rate_cents = get_settings().cost_per_token_cents
    return max(math.floor(max(total_tokens, 0) * rate_cents + 0.5), 0)
