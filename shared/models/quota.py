"""Pydantic models for plans, entitlements and usage allowances."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class Plan(str, Enum):
    """Subscription tiers, lowest first."""

    FREE = "free"
    STARTER = "starter"
    PRO = "pro"
    MAX = "max"


class QuotaScope(str, Enum):
    MESSAGES = "messages"
    UPLOADS = "uploads"


class PlanLimits(BaseModel):
    """Limits of one plan. None means unlimited."""

    messages_per_day: int | None
    uploads_total: int | None


class Entitlement(BaseModel):
    """A user's stored subscription record.

    The stored plan only applies while the entitlement is active and not
    past expires_at; otherwise the user is on the free tier.
    """

    user_id: str
    plan: Plan = Plan.FREE
    active: bool = True
    expires_at: datetime | None = None


class UsageCounters(BaseModel):
    """Current usage of one user. messages_used_today belongs to the requested UTC day."""

    messages_used_today: int = 0
    uploads_used_total: int = 0


class Allowance(BaseModel):
    """Result of a usage gate check."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    allowed: bool
    plan: Plan
    scope: QuotaScope
    used: int
    limit: int | None = None


class UsageSummary(BaseModel):
    """Effective plan and both allowances of a user, as shown by GET /api/usage."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    user_id: str
    plan: Plan
    gating_enabled: bool
    messages: Allowance
    uploads: Allowance
