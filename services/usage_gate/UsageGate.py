"""Per-user usage gate.

Every query and every ingestion passes the gate before the external AI
service is called. The check is read-only; usage is recorded separately,
exactly once per logical request, right after the check passed.
admit_message() and admit_upload() do both under one lock so concurrent
requests of a user cannot all read the same counter.
"""

import asyncio
from datetime import date, datetime
from typing import Callable

import pytz

from shared.clients.repo.RepoClientInterface import RepoClientInterface
from shared.helper.HelperConfig import HelperConfig
from shared.models.errors import QuotaExceededError
from shared.models.quota import Allowance, Entitlement, Plan, PlanLimits, QuotaScope, UsageSummary

DEFAULT_PLAN_LIMITS: dict[Plan, PlanLimits] = {
    Plan.FREE: PlanLimits(messages_per_day=5, uploads_total=10),
    Plan.STARTER: PlanLimits(messages_per_day=100, uploads_total=100),
    Plan.PRO: PlanLimits(messages_per_day=1000, uploads_total=500),
    Plan.MAX: PlanLimits(messages_per_day=None, uploads_total=1000),
}


def utc_now() -> datetime:
    return datetime.now(pytz.utc)


class UsageGate:
    """Checks and records message and upload allowances per user."""

    def __init__(
        self,
        helper_config: HelperConfig,
        repo_client: RepoClientInterface,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.logging = helper_config.get_logger()
        self._repo = repo_client
        self._clock = clock
        self._admission_lock = asyncio.Lock()
        self.gating_enabled = helper_config.get_bool_val("USAGE_GATING_ENABLED", default=True)
        self.plan_limits = self._load_plan_limits(helper_config)

    @staticmethod
    def _load_plan_limits(helper_config: HelperConfig) -> dict[Plan, PlanLimits]:
        limits: dict[Plan, PlanLimits] = {}
        for plan, defaults in DEFAULT_PLAN_LIMITS.items():
            prefix = f"PLAN_{plan.value.upper()}"
            limits[plan] = PlanLimits(
                messages_per_day=helper_config.get_limit_val(f"{prefix}_MESSAGES_PER_DAY", default=defaults.messages_per_day),
                uploads_total=helper_config.get_limit_val(f"{prefix}_UPLOADS_TOTAL", default=defaults.uploads_total),
            )
        return limits

    ##########################################
    ################ GETTER ##################
    ##########################################

    def now(self) -> datetime:
        now = self._clock()
        if now.tzinfo is None:
            now = pytz.utc.localize(now)
        return now.astimezone(pytz.utc)

    def today(self) -> date:
        """The current UTC day. Message counters reset when it changes."""
        return self.now().date()

    def resolve_plan(self, entitlement: Entitlement | None) -> Plan:
        """Return the plan in effect. Missing, inactive or expired entitlements fall back to free."""
        if entitlement is None or not entitlement.active:
            return Plan.FREE
        expires_at = entitlement.expires_at
        if expires_at is not None:
            if expires_at.tzinfo is None:
                expires_at = pytz.utc.localize(expires_at)
            if expires_at <= self.now():
                return Plan.FREE
        return entitlement.plan

    async def get_plan(self, user_id: str) -> Plan:
        return self.resolve_plan(await self._repo.do_get_entitlement(user_id))

    ##########################################
    ################ CHECKS ##################
    ##########################################

    def _build_allowance(self, plan: Plan, scope: QuotaScope, used: int) -> Allowance:
        if not self.gating_enabled:
            return Allowance(allowed=True, plan=plan, scope=scope, used=used, limit=None)
        limits = self.plan_limits[plan]
        limit = limits.messages_per_day if scope == QuotaScope.MESSAGES else limits.uploads_total
        allowed = limit is None or used < limit
        return Allowance(allowed=allowed, plan=plan, scope=scope, used=used, limit=limit)

    async def check_message_allowance(self, user_id: str) -> Allowance:
        """Check whether the user may send one more message today.

        Args:
            user_id (str): The requesting user.

        Returns:
            Allowance: Whether the message is allowed, with plan, usage and limit.
        """
        plan = await self.get_plan(user_id)
        usage = await self._repo.do_get_usage(user_id, self.today())
        return self._build_allowance(plan, QuotaScope.MESSAGES, usage.messages_used_today)

    async def check_upload_allowance(self, user_id: str) -> Allowance:
        """Check whether the user may index one more document."""
        plan = await self.get_plan(user_id)
        usage = await self._repo.do_get_usage(user_id, self.today())
        return self._build_allowance(plan, QuotaScope.UPLOADS, usage.uploads_used_total)

    async def ensure_message_allowance(self, user_id: str) -> Allowance:
        """Like check_message_allowance(), but raises when the message is not allowed.

        Raises:
            QuotaExceededError: If the daily message limit is reached.
        """
        allowance = await self.check_message_allowance(user_id)
        if not allowance.allowed:
            self.logging.info("Message quota exhausted for user %s (%d/%s, plan %s).", user_id, allowance.used, allowance.limit, allowance.plan.value)
            raise QuotaExceededError(scope=allowance.scope, used=allowance.used, limit=allowance.limit, plan=allowance.plan)
        return allowance

    async def ensure_upload_allowance(self, user_id: str) -> Allowance:
        """Like check_upload_allowance(), but raises when the upload is not allowed.

        Raises:
            QuotaExceededError: If the upload limit is reached.
        """
        allowance = await self.check_upload_allowance(user_id)
        if not allowance.allowed:
            self.logging.info("Upload quota exhausted for user %s (%d/%s, plan %s).", user_id, allowance.used, allowance.limit, allowance.plan.value)
            raise QuotaExceededError(scope=allowance.scope, used=allowance.used, limit=allowance.limit, plan=allowance.plan)
        return allowance

    ##########################################
    ############### RECORDING ################
    ##########################################

    async def record_message_used(self, user_id: str) -> int:
        return await self._repo.do_increment_message_usage(user_id, self.today())

    async def record_upload_used(self, user_id: str) -> int:
        return await self._repo.do_increment_upload_usage(user_id)

    async def admit_message(self, user_id: str) -> int:
        """Check the message allowance and record one message in a single step.

        Returns:
            int: Messages used today, including this one.

        Raises:
            QuotaExceededError: If the daily message limit is reached.
        """
        async with self._admission_lock:
            await self.ensure_message_allowance(user_id)
            return await self.record_message_used(user_id)

    async def admit_upload(self, user_id: str) -> int:
        """Check the upload allowance and record one upload in a single step.

        Raises:
            QuotaExceededError: If the upload limit is reached.
        """
        async with self._admission_lock:
            await self.ensure_upload_allowance(user_id)
            return await self.record_upload_used(user_id)

    async def get_summary(self, user_id: str) -> UsageSummary:
        """Effective plan and both allowances of a user."""
        plan = await self.get_plan(user_id)
        usage = await self._repo.do_get_usage(user_id, self.today())
        return UsageSummary(
            user_id=user_id,
            plan=plan,
            gating_enabled=self.gating_enabled,
            messages=self._build_allowance(plan, QuotaScope.MESSAGES, usage.messages_used_today),
            uploads=self._build_allowance(plan, QuotaScope.UPLOADS, usage.uploads_used_total),
        )
