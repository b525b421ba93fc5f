"""Quota gate -- decides whether a tenant may proceed and owns the plan usage counters.

A tenant is over quota when:
- it has no plan or a free plan and its contact count is above the free limit
- it has a free plan and has used the free merge-group allowance
- it has a paid plan whose payment status is not active
- it has a paid plan with a contact limit and its contact count reaches it

A tenant with no plan whose count is within the free limit gets a free plan
provisioned on first check.
"""

from __future__ import annotations

import structlog

from src.dedupe.duplicates.errors import QuotaExceeded
from src.dedupe.duplicates.provisioning import PlanProvisioner
from src.dedupe.duplicates.repository import DedupeRepository
from src.dedupe.duplicates.schemas import (
    ACTIVE_PAYMENT_STATUS,
    MergeUsage,
    Plan,
    PlanType,
    QuotaDecision,
    QuotaOutcome,
)

logger = structlog.get_logger(__name__)

DEFAULT_FREE_CONTACT_LIMIT = 500_000
DEFAULT_FREE_MERGE_GROUP_LIMIT = 20

_ALLOW = QuotaDecision(outcome=QuotaOutcome.ALLOW)


def _exceed(reason: str) -> QuotaDecision:
    return QuotaDecision(outcome=QuotaOutcome.EXCEED, reason=reason)


class QuotaGate:
    """Per-tenant quota decisions and usage accounting.

    Args:
        repository: DedupeRepository for counter writes and run lookups.
        provisioner: Source of truth for plan type and payment status.
        free_contact_limit: Contacts a free tenant may process.
        free_merge_group_limit: Groups a free tenant may merge.
    """

    def __init__(
        self,
        repository: DedupeRepository,
        provisioner: PlanProvisioner,
        free_contact_limit: int = DEFAULT_FREE_CONTACT_LIMIT,
        free_merge_group_limit: int = DEFAULT_FREE_MERGE_GROUP_LIMIT,
    ) -> None:
        self._repository = repository
        self._provisioner = provisioner
        self._free_contact_limit = free_contact_limit
        self._free_merge_group_limit = free_merge_group_limit

    def evaluate(self, plan: Plan | None, contact_count: int) -> QuotaDecision:
        """Pure quota rule over a plan snapshot."""
        if plan is None or plan.plan_type == PlanType.FREE:
            if contact_count > self._free_contact_limit:
                return _exceed(
                    f"Contact count exceeds free plan limit ({self._free_contact_limit:,}). "
                    "Please upgrade your plan."
                )
            if plan is not None and plan.merge_groups_used >= self._free_merge_group_limit:
                return _exceed(
                    f"Free plan merge limit reached ({self._free_merge_group_limit} groups). "
                    "Please upgrade your plan."
                )
            return _ALLOW

        if plan.payment_status != ACTIVE_PAYMENT_STATUS:
            return _exceed(
                f"Payment status is '{plan.payment_status}'. Please update your billing."
            )
        if plan.contact_limit is not None and contact_count >= plan.contact_limit:
            return _exceed(
                f"Contact count exceeds plan limit ({plan.contact_limit:,}). "
                "Please upgrade your plan."
            )
        return _ALLOW

    async def check(self, tenant_id: str, contact_count: int) -> QuotaDecision:
        """Decide allow/exceed for ``contact_count`` and keep the plan's count current."""
        plan = await self._provisioner.get_plan(tenant_id)

        if plan is None:
            decision = self.evaluate(None, contact_count)
            if decision.allowed:
                await self._provisioner.create_plan(tenant_id, PlanType.FREE, contact_count)
        else:
            if plan.contact_count != contact_count:
                await self._repository.update_plan(tenant_id, contact_count=contact_count)
            decision = self.evaluate(plan, contact_count)

        logger.info(
            "quota.checked",
            tenant_id=tenant_id,
            contact_count=contact_count,
            outcome=decision.outcome.value,
        )
        return decision

    async def ensure_merge_allowed(self, tenant_id: str) -> None:
        """Raise QuotaExceeded unless the tenant may merge another group."""
        plan = await self._provisioner.get_plan(tenant_id)
        if plan is not None:
            decision = self.evaluate(plan, plan.contact_count)
        else:
            run = await self._repository.get_latest_run(tenant_id)
            decision = await self.check(tenant_id, run.count if run is not None else 0)

        if not decision.allowed:
            logger.info("quota.merge_blocked", tenant_id=tenant_id, reason=decision.reason)
            raise QuotaExceeded(decision.reason)

    async def reserve_merge(self, tenant_id: str, group_id: int) -> bool:
        """Count one group against the plan before it is merged. Idempotent on group_id.

        A free plan's counter only moves while it is below the merge-group
        allowance, checked and incremented in one statement.

        Returns:
            True if this call moved the counter, False if the group was
            already counted.

        Raises:
            QuotaExceeded: The free allowance is used up.
        """
        plan = await self._provisioner.get_plan(tenant_id)
        # Without a plan row there is no counter to cap
        limit = (
            self._free_merge_group_limit
            if plan is not None and plan.plan_type == PlanType.FREE
            else None
        )
        usage = await self._repository.reserve_merge_usage(tenant_id, group_id, limit=limit)
        logger.info(
            "quota.merge_reserved",
            tenant_id=tenant_id,
            group_id=group_id,
            usage=usage.value,
        )
        if usage == MergeUsage.LIMIT_REACHED:
            raise QuotaExceeded(
                f"Free plan merge limit reached ({self._free_merge_group_limit} groups). "
                "Please upgrade your plan."
            )
        return usage == MergeUsage.COUNTED

    async def release_merge(self, tenant_id: str, group_id: int) -> None:
        """Give back a reservation whose merge did not complete."""
        released = await self._repository.release_merge_usage(tenant_id, group_id)
        logger.info(
            "quota.merge_released",
            tenant_id=tenant_id,
            group_id=group_id,
            released=released,
        )
