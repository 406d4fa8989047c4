"""UserProfile model — the account, its plan and its monthly usage counter."""

import uuid
from datetime import datetime
from enum import StrEnum

from sqlmodel import Field, SQLModel

from agentdesk.models.base import TimestampMixin, new_uuid, utcnow


class SubscriptionPlan(StrEnum):
    FREE = "free"
    PRO = "pro"
    ELITE = "elite"


def first_day_of_next_month(moment: datetime | None = None) -> datetime:
    moment = moment or utcnow()
    if moment.month == 12:
        return datetime(moment.year + 1, 1, 1)
    return datetime(moment.year, moment.month + 1, 1)


class UserProfile(TimestampMixin, SQLModel, table=True):
    __tablename__ = "user_profiles"

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    email: str = Field(max_length=320, nullable=False, unique=True, index=True)
    password_hash: str = Field(nullable=False)
    full_name: str | None = Field(default=None, max_length=255)
    avatar_url: str | None = Field(default=None, max_length=1000)

    subscription_plan: SubscriptionPlan = Field(default=SubscriptionPlan.FREE)
    # Only ever changed through an atomic SQL increment (see services.usage_ledger)
    usage_count: int = Field(default=0, nullable=False)
    monthly_usage_reset: datetime = Field(default_factory=first_day_of_next_month, nullable=False)


# ── Pydantic schemas ─────────────────────────────────────────

class ProfileRead(SQLModel):
    id: uuid.UUID
    email: str
    full_name: str | None = None
    avatar_url: str | None = None
    subscription_plan: SubscriptionPlan
    usage_count: int
    monthly_usage_reset: datetime
    created_at: datetime
