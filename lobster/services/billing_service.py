"""Metered billing: per-VM intervals, hourly storage, and the per-user sweep.

All amounts are integer credit units (see ``BILLING_PRECISION``). Bandwidth is
tracked per ``(user, region)`` in ``region_bandwidth`` and reset monthly by
``reset_bandwidth_month``.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from lobster.config import settings
from lobster.drivers.registry import DriverRegistry, get_default_registry
from lobster.errors import ProviderError
from lobster.models.billing import RegionBandwidth
from lobster.models.user import User, UserStatus
from lobster.models.vm import VirtualMachine, VmStatus
from lobster.services import email as email_service
from lobster.services.common import BILLING_PRECISION, GIGABYTE, as_utc, giga_to_bytes, month_bounds, utcnow
from lobster.services.ledger_service import LedgerService

logger = logging.getLogger(__name__)

OVERAGE_THRESHOLD = giga_to_bytes(200)
OVERAGE_TOLERANCE = giga_to_bytes(50)
REFUND_BUFFER_GB = 15
LOW_CREDIT_RUNWAY_HOURS = 168
NOTIFY_START_PERCENT = 85
NOTIFY_STEP_PERCENT = 5
SWEEP_INTERVAL = timedelta(hours=24)


@dataclass
class BandwidthSummary:
    region: str
    used: int = 0
    allocated: int = 0
    billed: int = 0
    notified_percent: int = 0
    actual_percent: float = 0.0


class BillingService:
    def __init__(self, db: Session, registry: DriverRegistry | None = None):
        self.db = db
        self.registry = registry if registry is not None else get_default_registry()
        self.ledger = LedgerService(db, self.registry)
        self._vm_service = None

    @property
    def vm_service(self):
        if self._vm_service is None:
            from lobster.services.vm_service import VmService

            self._vm_service = VmService(self.db, self.registry)
        return self._vm_service

    def dispatch_pending(self) -> None:
        """Send background work queued by the sweep. Must be called AFTER db.commit()."""
        if self._vm_service is not None:
            self._vm_service.dispatch_pending()

    # per-VM interval billing

    def vm_billing(self, vm_id: int, terminating: bool = False) -> int:
        """Charge whole billing intervals elapsed since ``time_billed``; returns the amount.

        ``terminating`` bills the interval in progress and enforces the
        configured minimum number of intervals per VM.
        """
        vm = self.db.get(VirtualMachine, vm_id)
        if vm is None:
            return 0
        now = utcnow()
        interval = settings.billing_interval
        time_billed = as_utc(vm.time_billed)

        minutes = max(int((now - time_billed).total_seconds() // 60), 0)
        intervals = minutes // interval
        if terminating:
            intervals += 1
            minimum = settings.billing_vm_minimum
            if minimum > 1:
                already_minutes = max(int((time_billed - as_utc(vm.created_time)).total_seconds() // 60), 0)
                already = already_minutes // interval
                if already + intervals < minimum:
                    intervals = minimum - already

        if intervals == 0 or vm.status != VmStatus.active:
            return 0

        amount = intervals * vm.plan.price
        logger.info("Billing vm %d for %d intervals (amount=%d)", vm.id, intervals, amount)
        self.ledger.apply_charge(vm.user_id, vm.name, f"Plan: {vm.plan.name}", f"vm-{vm.id}", amount)
        vm.time_billed = min(time_billed + timedelta(minutes=intervals * interval), now)

        driver = self.registry.get(vm.region)
        try:
            used = driver.bandwidth_accounting(vm)
        except Exception as exc:
            email_service.report_error(
                ProviderError("bandwidth_accounting", exc, vm.id, vm.identification), "bandwidth accounting failed"
            )
            used = 0
        if used > 0:
            self._region_row(vm.user_id, vm.region)
            self.db.execute(
                update(RegionBandwidth)
                .where(RegionBandwidth.user_id == vm.user_id)
                .where(RegionBandwidth.region == vm.region)
                .values(bandwidth_used=RegionBandwidth.bandwidth_used + used)
            )
        self.db.flush()
        return amount

    def _region_row(self, user_id: int, region: str) -> RegionBandwidth:
        row = self.db.scalars(
            select(RegionBandwidth).where(RegionBandwidth.user_id == user_id).where(RegionBandwidth.region == region)
        ).first()
        if row is not None:
            return row
        try:
            with self.db.begin_nested():
                row = RegionBandwidth(user_id=user_id, region=region)
                self.db.add(row)
                self.db.flush()
        except IntegrityError:
            row = self.db.scalars(
                select(RegionBandwidth)
                .where(RegionBandwidth.user_id == user_id)
                .where(RegionBandwidth.region == region)
            ).one()
        return row

    # bandwidth allocation

    def bandwidth_summary(self, user_id: int) -> dict[str, BandwidthSummary]:
        now = utcnow()
        month_start, month_end = month_bounds(now)
        month_seconds = (month_end - month_start).total_seconds()

        summaries: dict[str, BandwidthSummary] = {}
        rows = self.db.scalars(select(RegionBandwidth).where(RegionBandwidth.user_id == user_id)).all()
        for row in rows:
            summaries[row.region] = BandwidthSummary(
                region=row.region,
                used=row.bandwidth_used,
                allocated=row.bandwidth_additional,
                billed=row.bandwidth_billed,
                notified_percent=row.bandwidth_notified_percent,
            )

        vms = self.db.scalars(
            select(VirtualMachine)
            .where(VirtualMachine.user_id == user_id)
            .where(VirtualMachine.status == VmStatus.active)
        ).all()
        for vm in vms:
            summary = summaries.setdefault(vm.region, BandwidthSummary(region=vm.region))
            plan_bytes = giga_to_bytes(vm.plan.bandwidth)
            created = as_utc(vm.created_time)
            if created < month_start:
                summary.allocated += plan_bytes
                continue
            remaining = (month_end - created).total_seconds()
            if remaining > 0:
                summary.allocated += int(plan_bytes * remaining / month_seconds)

        for summary in summaries.values():
            if summary.allocated:
                summary.actual_percent = 100 * summary.used / summary.allocated
        return summaries

    def update_additional_bandwidth(self, vm: VirtualMachine) -> int:
        """Carry the unused share of ``vm``'s allocation into the region pool.

        Called before a VM is deleted or changes plan so the bandwidth it
        already contributed this month is not lost.
        """
        now = utcnow()
        month_start, month_end = month_bounds(now)
        created = as_utc(vm.created_time)
        elapsed = now - max(created, month_start)
        factor = min(elapsed.total_seconds() / (month_end - month_start).total_seconds(), 1.0)

        plan_gb = vm.plan.bandwidth
        additional = min(int((factor * plan_gb + REFUND_BUFFER_GB) * GIGABYTE), giga_to_bytes(plan_gb))
        self._region_row(vm.user_id, vm.region)
        self.db.execute(
            update(RegionBandwidth)
            .where(RegionBandwidth.user_id == vm.user_id)
            .where(RegionBandwidth.region == vm.region)
            .values(bandwidth_additional=RegionBandwidth.bandwidth_additional + additional)
        )
        self.db.flush()
        return additional

    def reset_bandwidth_month(self) -> int:
        result = self.db.execute(
            update(RegionBandwidth).values(
                bandwidth_used=0,
                bandwidth_additional=0,
                bandwidth_billed=0,
                bandwidth_notified_percent=0,
            )
        )
        self.db.flush()
        return result.rowcount or 0

    # storage

    def service_billing(self) -> int:
        """Hourly storage billing for every active user; returns users billed."""
        from lobster.services.image_service import ImageService

        now = utcnow()
        images = ImageService(self.db, self.registry)
        users = self.db.scalars(
            select(User).where(User.status == UserStatus.active).where(User.time_billed <= now - timedelta(hours=1))
        ).all()
        billed = 0
        for user in users:
            hours = int((now - as_utc(user.time_billed)).total_seconds() // 3600)
            if hours <= 0:
                continue
            storage_bytes = images.storage_bytes(user.id)
            credit_per_gb_hour = int(settings.storage_fee * BILLING_PRECISION)
            hourly = storage_bytes * credit_per_gb_hour // 1_000_000_000
            if hourly > 0:
                total = hourly * hours
                logger.info("Charging user %d for %d bytes (amount=%d)", user.id, storage_bytes, total)
                self.ledger.apply_charge(
                    user.id,
                    "Image storage space",
                    f"{storage_bytes // 1_000_000} MB",
                    "storage",
                    total,
                )
                billed += 1
            user.time_billed = as_utc(user.time_billed) + timedelta(hours=hours)
        self.db.flush()
        return billed

    # user sweep

    def user_billing(self, user_id: int) -> None:
        self._bandwidth_billing(user_id)
        self._credit_sweep(user_id)

    def _bandwidth_billing(self, user_id: int) -> None:
        credit_per_gb = int(settings.bandwidth_overage_fee * BILLING_PRECISION)
        for region, summary in self.bandwidth_summary(user_id).items():
            if summary.used <= OVERAGE_THRESHOLD:
                continue

            if summary.used > summary.allocated + OVERAGE_TOLERANCE:
                gb_over = (summary.used - summary.allocated - summary.billed) // GIGABYTE
                if gb_over > 0:
                    self.ledger.apply_charge(
                        user_id,
                        "Bandwidth",
                        f"Bandwidth usage overage charge {region} ({settings.bandwidth_overage_fee:.4f}/GB)",
                        f"bw-{region}",
                        credit_per_gb * gb_over,
                    )
                    self.db.execute(
                        update(RegionBandwidth)
                        .where(RegionBandwidth.user_id == user_id)
                        .where(RegionBandwidth.region == region)
                        .values(bandwidth_billed=RegionBandwidth.bandwidth_billed + giga_to_bytes(gb_over))
                    )

            if summary.allocated == 0:
                continue
            util = 100 * summary.used // summary.allocated
            notified = summary.notified_percent
            if notified >= 100 or util <= NOTIFY_START_PERCENT:
                continue
            if util - notified >= NOTIFY_STEP_PERCENT or util >= 100 or util < notified:
                self.db.execute(
                    update(RegionBandwidth)
                    .where(RegionBandwidth.user_id == user_id)
                    .where(RegionBandwidth.region == region)
                    .values(bandwidth_notified_percent=util)
                )
                template = "bandwidthOverage" if util >= 100 else "bandwidthNotify"
                email_service.mail_wrap(
                    self.db,
                    user_id,
                    template,
                    {"util_percent": util, "region": region, "fee": credit_per_gb},
                )
        self.db.flush()

    def _credit_sweep(self, user_id: int) -> None:
        now = utcnow()
        user = self.db.get(User, user_id)
        if user is None or as_utc(user.last_billing_notify) >= now - SWEEP_INTERVAL:
            return
        vms = self.db.scalars(select(VirtualMachine).where(VirtualMachine.user_id == user_id)).all()
        if not vms:
            return

        hourly = sum(vm.plan.price for vm in vms)
        credit = user.credit
        hours_since_notify = int((now - as_utc(user.last_billing_notify)).total_seconds() // 3600)

        if credit > LOW_CREDIT_RUNWAY_HOURS * hourly:
            user.last_billing_notify = now
            user.billing_low_count = 0
            self.db.flush()
            return

        if credit < 0 and user.billing_low_count >= settings.billing_low_count:
            vm_service = self.vm_service
            terminate = (
                settings.billing_termination_enabled
                and credit < -LOW_CREDIT_RUNWAY_HOURS * hourly
                and 0 < hours_since_notify <= settings.billing_termination_window_hours
            )
            if terminate:
                logger.warning("Terminating all VMs of user %d (credit=%d)", user_id, credit)
                for vm in vms:
                    try:
                        vm_service.delete(vm)
                    except Exception as exc:
                        email_service.report_error(exc, "failed to delete VM", f"user_id={user_id}, vm_id={vm.id}")
                email_service.mail_wrap(self.db, user_id, "userTerminate")
            else:
                logger.warning("Suspending all VMs of user %d (credit=%d)", user_id, credit)
                for vm in vms:
                    try:
                        vm_service.suspend(vm, auto=True)
                    except Exception as exc:
                        email_service.report_error(exc, "failed to suspend VM", f"user_id={user_id}, vm_id={vm.id}")
                email_service.mail_wrap(self.db, user_id, "userSuspend")
        else:
            template = "userNegativeCredit" if credit < 0 else "userLowCredit"
            email_service.mail_wrap(
                self.db,
                user_id,
                template,
                {
                    "credit": credit,
                    "hourly": hourly,
                    "remaining_hours": credit // hourly if hourly else 0,
                },
            )

        user = self.db.get(User, user_id)
        if user is not None:
            user.last_billing_notify = now
            user.billing_low_count = user.billing_low_count + 1
        self.db.flush()
