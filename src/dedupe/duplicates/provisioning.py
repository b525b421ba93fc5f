"""Plan provisioning collaborator -- where plan types and payment status come from.

Payment capture lives outside this service. The dedupe workflow only needs
to read a tenant's plan and to provision one (the lazy free plan, or a paid
plan reported by billing). PlanProvisioner is the seam a billing integration
plugs into; RepositoryPlanProvisioner keeps plans in the dedupe database.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any

import structlog

from src.dedupe.duplicates.repository import DedupeRepository
from src.dedupe.duplicates.schemas import ACTIVE_PAYMENT_STATUS, BillingType, Plan, PlanType

logger = structlog.get_logger(__name__)


class PlanProvisioner(ABC):
    """Abstract interface for plan provisioning."""

    @abstractmethod
    async def get_plan(self, tenant_id: str) -> Plan | None:
        ...

    @abstractmethod
    async def create_plan(
        self,
        tenant_id: str,
        plan_type: PlanType,
        contact_count: int,
        billing_type: BillingType | None = None,
        contact_limit: int | None = None,
    ) -> Plan:
        ...

    @abstractmethod
    async def update_plan(self, tenant_id: str, **fields: Any) -> Plan | None:
        """Change plan_type, payment_status, contact_limit or billing fields."""
        ...


class RepositoryPlanProvisioner(PlanProvisioner):
    """Plans persisted in the dedupe database through DedupeRepository."""

    # Fields billing may change; usage counters belong to QuotaGate
    _PROVISIONED_FIELDS = frozenset(
        {
            "plan_type",
            "payment_status",
            "contact_limit",
            "billing_type",
            "activation_date",
            "billing_end_date",
        }
    )

    def __init__(self, repository: DedupeRepository) -> None:
        self._repository = repository

    async def get_plan(self, tenant_id: str) -> Plan | None:
        return await self._repository.get_plan(tenant_id)

    async def create_plan(
        self,
        tenant_id: str,
        plan_type: PlanType,
        contact_count: int,
        billing_type: BillingType | None = None,
        contact_limit: int | None = None,
    ) -> Plan:
        plan = Plan(
            tenant_id=tenant_id,
            plan_type=plan_type,
            contact_count=contact_count,
            contact_limit=contact_limit if plan_type == PlanType.PAID else None,
            payment_status=ACTIVE_PAYMENT_STATUS,
            billing_type=billing_type,
            activation_date=datetime.now(timezone.utc),
        )
        created = await self._repository.create_plan(tenant_id, plan)
        logger.info(
            "provisioning.plan_created",
            tenant_id=tenant_id,
            plan_type=created.plan_type.value,
            contact_count=created.contact_count,
        )
        return created

    async def update_plan(self, tenant_id: str, **fields: Any) -> Plan | None:
        unknown = set(fields) - self._PROVISIONED_FIELDS
        if unknown:
            raise ValueError(f"Plan fields not owned by provisioning: {sorted(unknown)}")
        plan = await self._repository.update_plan(tenant_id, **fields)
        if plan is not None:
            logger.info("provisioning.plan_updated", tenant_id=tenant_id, fields=sorted(fields))
        return plan
