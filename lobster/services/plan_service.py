from __future__ import annotations

import logging

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from lobster.drivers.base import PlanCapable
from lobster.drivers.registry import DriverRegistry
from lobster.errors import LobsterError, ProviderError
from lobster.models.plan import Plan, RegionPlan
from lobster.models.vm import VirtualMachine
from lobster.services import email as email_service

logger = logging.getLogger(__name__)


class PlanService:
    def __init__(self, db: Session, registry: DriverRegistry):
        self.db = db
        self.registry = registry

    def list(self) -> list[Plan]:
        return list(self.db.scalars(select(Plan).order_by(Plan.id)).all())

    def list_region(self, region: str) -> list[Plan]:
        """Global plans plus plans bound to ``region``."""
        bound = select(RegionPlan.plan_id).where(RegionPlan.region == region)
        stmt = select(Plan).where(Plan.is_global.is_(True) | Plan.id.in_(bound)).order_by(Plan.id)
        return list(self.db.scalars(stmt).all())

    def get(self, plan_id: int) -> Plan | None:
        return self.db.get(Plan, plan_id)

    def get_region(self, plan_id: int, region: str) -> Plan | None:
        plan = self.db.get(Plan, plan_id)
        if plan is None or not plan.available_in(region):
            return None
        return plan

    def create(
        self,
        name: str,
        price: int,
        ram: int,
        cpu: int,
        storage: int,
        bandwidth: int,
        is_global: bool = True,
    ) -> Plan:
        if not name:
            raise LobsterError("invalid_name")
        plan = Plan(
            name=name,
            price=price,
            ram=ram,
            cpu=cpu,
            storage=storage,
            bandwidth=bandwidth,
            is_global=is_global,
        )
        self.db.add(plan)
        self.db.flush()
        logger.info("Created plan %d (%s)", plan.id, name)
        return plan

    def delete(self, plan_id: int) -> None:
        plan = self.db.get(Plan, plan_id)
        if plan is None:
            raise LobsterError("invalid_plan")
        in_use = self.db.scalar(select(func.count(VirtualMachine.id)).where(VirtualMachine.plan_id == plan_id))
        if in_use:
            raise LobsterError("plan_in_use")
        self.db.delete(plan)
        self.db.flush()
        logger.info("Deleted plan %d", plan_id)

    def associate_region(self, plan_id: int, region: str, identification: str) -> None:
        if not self.registry.has(region):
            raise LobsterError("invalid_region")
        plan = self.db.get(Plan, plan_id)
        if plan is None:
            raise LobsterError("invalid_plan")
        for binding in plan.region_bindings:
            if binding.region == region:
                binding.identification = identification
                break
        else:
            plan.region_bindings.append(RegionPlan(region=region, identification=identification))
        self.db.flush()

    def deassociate_region(self, plan_id: int, region: str) -> None:
        plan = self.db.get(Plan, plan_id)
        if plan is None:
            raise LobsterError("invalid_plan")
        plan.region_bindings = [binding for binding in plan.region_bindings if binding.region != region]
        self.db.flush()

    def autopopulate(self, region: str) -> int:
        """Import provider plans not yet bound to ``region``; returns how many were added.

        New plans are region-only and priced at zero so an operator reviews
        them before they are sold.
        """
        if not self.registry.has(region):
            raise LobsterError("invalid_region")
        driver = self.registry.get(region)
        if not isinstance(driver, PlanCapable):
            raise LobsterError("region_plans_unsupported")
        try:
            provider_plans = driver.plan_list()
        except Exception as exc:
            email_service.report_error(ProviderError("plan_list", exc), "plan autopopulate failed", f"region={region}")
            raise LobsterError("provider_error") from exc

        known = set(
            self.db.scalars(select(RegionPlan.identification).where(RegionPlan.region == region)).all()
        )
        added = 0
        for provider_plan in provider_plans:
            if provider_plan.identification in known:
                continue
            plan = self.create(
                provider_plan.name,
                0,
                provider_plan.ram,
                provider_plan.cpu,
                provider_plan.storage,
                provider_plan.bandwidth,
                is_global=False,
            )
            self.associate_region(plan.id, region, provider_plan.identification)
            known.add(provider_plan.identification)
            added += 1
        logger.info("Autopopulated %d plans for region %s", added, region)
        return added
