"""VM lifecycle orchestration on top of the region's driver.

Mutating verbs go through :meth:`VmService._guard`. Background work (provider
creation, provider deletion, suspension) is queued on the service and must be
dispatched with :meth:`VmService.dispatch_pending` after the caller commits.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from lobster.config import settings
from lobster.drivers.base import (
    AddressCapable,
    IpAddress,
    RenameCapable,
    ReimageCapable,
    ResizeCapable,
    SnapshotCapable,
    VmInfo,
    VmInterface,
    VncCapable,
    probe_capabilities,
)
from lobster.drivers.registry import DriverRegistry, get_default_registry
from lobster.errors import LobsterError, NotFoundError, ProviderError
from lobster.models.image import Image, ImageStatus
from lobster.models.user import User
from lobster.models.vm import SuspendState, VirtualMachine, VmStatus
from lobster.services import email as email_service
from lobster.services.common import MAX_VM_NAME_LENGTH, MINIMUM_CREDIT, is_printable, utcnow

logger = logging.getLogger(__name__)

PENDING = "Pending"


def validate_name(name: str) -> None:
    if not name:
        raise LobsterError("invalid_name")
    if len(name) > MAX_VM_NAME_LENGTH:
        raise LobsterError("name_too_long", max=MAX_VM_NAME_LENGTH)
    if not is_printable(name):
        raise LobsterError("name_invalid_characters")


class VmService:
    def __init__(self, db: Session, registry: DriverRegistry | None = None):
        self.db = db
        self.registry = registry if registry is not None else get_default_registry()
        self._pending_tasks: list[tuple[Any, tuple, dict]] = []

    # background dispatch

    def _queue(self, task, *args, **options) -> None:
        self._pending_tasks.append((task, args, options))

    def dispatch_pending(self) -> None:
        """Send queued background tasks. Must be called AFTER db.commit()."""
        pending, self._pending_tasks = self._pending_tasks, []
        for task, args, options in pending:
            task.apply_async(args=list(args), **options)

    # lookups

    def list_vms(self, user_id: int) -> list[VirtualMachine]:
        stmt = select(VirtualMachine).where(VirtualMachine.user_id == user_id).order_by(VirtualMachine.id)
        return list(self.db.scalars(stmt).all())

    def list_vms_region(self, user_id: int, region: str) -> list[VirtualMachine]:
        stmt = (
            select(VirtualMachine)
            .where(VirtualMachine.user_id == user_id)
            .where(VirtualMachine.region == region)
            .order_by(VirtualMachine.id)
        )
        return list(self.db.scalars(stmt).all())

    def list_all(self) -> list[VirtualMachine]:
        return list(self.db.scalars(select(VirtualMachine).order_by(VirtualMachine.id)).all())

    def get_vm(self, user_id: int, vm_id: int) -> VirtualMachine:
        vm = self.db.get(VirtualMachine, vm_id)
        if vm is None or vm.user_id != user_id:
            raise NotFoundError("vm_not_found")
        return vm

    def get_vm_any(self, vm_id: int) -> VirtualMachine:
        vm = self.db.get(VirtualMachine, vm_id)
        if vm is None:
            raise NotFoundError("vm_not_found")
        return vm

    # helpers

    def driver(self, vm: VirtualMachine) -> VmInterface:
        return self.registry.get(vm.region)

    def _guard(self, vm: VirtualMachine, ignore_suspended: bool = False) -> None:
        if not vm.identification or vm.status != VmStatus.active:
            raise LobsterError("vm_not_ready")
        if not ignore_suspended and vm.suspended != SuspendState.no:
            raise LobsterError(f"vm_suspended_{vm.suspended.value}")
        if vm.task_pending:
            raise LobsterError("vm_has_pending_task")

    def _capable(self, vm: VirtualMachine, capability: type):
        driver = self.driver(vm)
        if not isinstance(driver, capability):
            raise LobsterError("operation_unsupported")
        return driver

    def _provider_error(self, operation: str, exc: Exception, vm: VirtualMachine) -> LobsterError:
        error = ProviderError(operation, exc, vm.id, vm.identification)
        email_service.report_error(error, f"failed to {operation} VM")
        return LobsterError("provider_error")

    # creation

    def create(self, user_id: int, name: str, plan_id: int, image_id: int) -> int:
        from lobster.services.image_service import ImageService
        from lobster.services.region_service import RegionService
        from lobster.tasks.vms import provision_vm

        user = self.db.get(User, user_id)
        if user is None:
            raise LobsterError("invalid_account")
        if user.credit < MINIMUM_CREDIT:
            raise LobsterError("insufficient_credit")
        count = self.db.scalar(select(func.count(VirtualMachine.id)).where(VirtualMachine.user_id == user_id))
        if count >= user.vm_limit:
            raise LobsterError("vm_limit_exceeded")
        validate_name(name)

        image = ImageService(self.db, self.registry).get(user_id, image_id)
        if image is None:
            raise LobsterError("invalid_image")
        if image.status != ImageStatus.active:
            raise LobsterError("image_not_ready")
        if not RegionService(self.db, self.registry).is_enabled(image.region):
            raise LobsterError("invalid_region")

        from lobster.services.plan_service import PlanService

        plan = PlanService(self.db, self.registry).get_region(plan_id, image.region)
        if plan is None:
            raise LobsterError("invalid_plan")

        now = utcnow()
        vm = VirtualMachine(
            user_id=user_id,
            region=image.region,
            plan_id=plan.id,
            name=name,
            status=VmStatus.provisioning,
            created_time=now,
            time_billed=now,
        )
        self.db.add(vm)
        self.db.flush()
        logger.info("Created vm %d (%s) for user %d in %s", vm.id, name, user_id, image.region)
        self._queue(provision_vm, vm.id, image.identification)
        return vm.id

    # power and actions

    def start(self, vm: VirtualMachine) -> None:
        logger.info("vm_start(%d)", vm.id)
        self._guard(vm)
        try:
            self.driver(vm).vm_start(vm)
        except Exception as exc:
            raise self._provider_error("start", exc, vm) from exc

    def stop(self, vm: VirtualMachine) -> None:
        logger.info("vm_stop(%d)", vm.id)
        self._guard(vm, ignore_suspended=True)
        try:
            self.driver(vm).vm_stop(vm)
        except Exception as exc:
            raise self._provider_error("stop", exc, vm) from exc

    def reboot(self, vm: VirtualMachine) -> None:
        logger.info("vm_reboot(%d)", vm.id)
        self._guard(vm)
        try:
            self.driver(vm).vm_reboot(vm)
        except Exception as exc:
            raise self._provider_error("reboot", exc, vm) from exc

    def action(self, vm: VirtualMachine, action: str, value: str = "") -> None:
        logger.info("vm_action(%d, %s)", vm.id, action)
        self._guard(vm)
        try:
            self.driver(vm).vm_action(vm, action, value)
        except Exception as exc:
            raise self._provider_error(f"run action {action} on", exc, vm) from exc

    def vnc(self, vm: VirtualMachine) -> str:
        logger.info("vm_vnc(%d)", vm.id)
        self._guard(vm)
        driver = self._capable(vm, VncCapable)
        try:
            return driver.vm_vnc(vm)
        except Exception as exc:
            raise self._provider_error("retrieve VNC URL for", exc, vm) from exc

    def reimage(self, vm: VirtualMachine, image_id: int) -> None:
        from lobster.services.image_service import ImageService

        image = ImageService(self.db, self.registry).get(vm.user_id, image_id)
        if image is None or image.region != vm.region:
            raise LobsterError("invalid_image")
        if image.status != ImageStatus.active:
            raise LobsterError("image_not_ready")
        self._guard(vm)
        driver = self._capable(vm, ReimageCapable)
        logger.info("vm_reimage(%d, %d)", vm.id, image_id)
        try:
            driver.vm_reimage(vm, image.identification)
        except Exception as exc:
            raise self._provider_error("reimage", exc, vm) from exc

    def snapshot(self, vm: VirtualMachine, name: str) -> int:
        if not name:
            raise LobsterError("snapshot_name_required")
        self._guard(vm)
        driver = self._capable(vm, SnapshotCapable)
        try:
            identification = driver.vm_snapshot(vm)
        except Exception as exc:
            raise self._provider_error("snapshot", exc, vm) from exc
        image = Image(
            user_id=vm.user_id,
            region=vm.region,
            name=name,
            identification=identification,
            status=ImageStatus.pending,
            source_vm_id=vm.id,
        )
        self.db.add(image)
        self.db.flush()
        logger.info("Snapshot of vm %d queued as image %d", vm.id, image.id)
        return image.id

    def resize(self, vm: VirtualMachine, plan_id: int) -> None:
        from lobster.services.billing_service import BillingService
        from lobster.services.plan_service import PlanService

        plan = PlanService(self.db, self.registry).get_region(plan_id, vm.region)
        if plan is None:
            raise LobsterError("invalid_plan")
        self._guard(vm)
        driver = self._capable(vm, ResizeCapable)
        try:
            driver.vm_resize(vm, plan.identification_for(vm.region), plan.ram, plan.cpu, plan.storage)
        except Exception as exc:
            raise self._provider_error("resize", exc, vm) from exc

        # the old plan's share is refunded, the new plan starts a fresh pro-rata period
        BillingService(self.db, self.registry).update_additional_bandwidth(vm)
        vm.plan_id = plan.id
        vm.plan = plan
        vm.created_time = utcnow()
        self.db.flush()
        logger.info("Resized vm %d to plan %d", vm.id, plan.id)

    def rename(self, vm: VirtualMachine, name: str) -> None:
        validate_name(name)
        self._guard(vm)
        vm.name = name
        self.db.flush()
        driver = self.driver(vm)
        if isinstance(driver, RenameCapable):
            try:
                driver.vm_rename(vm, name)
            except Exception as exc:
                email_service.report_error(
                    ProviderError("rename", exc, vm.id, vm.identification), "failed to rename VM at provider"
                )

    # addresses

    def load_addresses(self, vm: VirtualMachine) -> list[IpAddress]:
        if not vm.identification or vm.status != VmStatus.active:
            raise LobsterError("vm_not_ready")
        driver = self._capable(vm, AddressCapable)
        try:
            return driver.vm_addresses(vm)
        except Exception as exc:
            raise self._provider_error("list addresses of", exc, vm) from exc

    def add_address(self, vm: VirtualMachine) -> None:
        maximum = settings.vm_maximum_ips
        if maximum <= 0:
            raise LobsterError("addresses_disabled")
        if len(self.load_addresses(vm)) >= maximum:
            raise LobsterError("max_addresses", max=maximum)
        self._guard(vm)
        driver = self._capable(vm, AddressCapable)
        try:
            driver.vm_add_address(vm)
        except Exception as exc:
            raise self._provider_error("add address to", exc, vm) from exc

    def remove_address(self, vm: VirtualMachine, ip: str, private_ip: str = "") -> None:
        self._guard(vm)
        driver = self._capable(vm, AddressCapable)
        try:
            driver.vm_remove_address(vm, ip, private_ip)
        except Exception as exc:
            raise self._provider_error("remove address from", exc, vm) from exc

    def set_rdns(self, vm: VirtualMachine, ip: str, hostname: str) -> None:
        self._guard(vm)
        driver = self._capable(vm, AddressCapable)
        try:
            driver.vm_set_rdns(vm, ip, hostname)
        except Exception as exc:
            raise self._provider_error("set reverse DNS on", exc, vm) from exc

    # deletion and suspension

    def delete(self, vm: VirtualMachine) -> None:
        from lobster.services.billing_service import BillingService
        from lobster.tasks.vms import delete_vm_at_provider

        if vm.status == VmStatus.provisioning:
            raise LobsterError("vm_provisioning")
        if vm.task_pending:
            raise LobsterError("vm_has_pending_task")
        logger.info("vm_delete(%d)", vm.id)

        if vm.identification:
            self._queue(
                delete_vm_at_provider,
                vm.id,
                vm.region,
                vm.identification,
                {entry.k: entry.v for entry in vm.metadata_entries},
            )

        billing = BillingService(self.db, self.registry)
        billing.vm_billing(vm.id, terminating=True)
        billing.update_additional_bandwidth(vm)

        user_id, vm_id, name = vm.user_id, vm.id, vm.name
        self.db.delete(vm)
        self.db.flush()
        email_service.mail_wrap(self.db, user_id, "vmDeleted", {"id": vm_id, "name": name}, cc_admin=True)

    def suspend(self, vm: VirtualMachine, auto: bool) -> None:
        from lobster.tasks.vms import suspend_vm

        if auto:
            self.db.execute(
                update(VirtualMachine)
                .where(VirtualMachine.id == vm.id)
                .where(VirtualMachine.suspended == SuspendState.no)
                .values(suspended=SuspendState.auto)
            )
        else:
            vm.suspended = SuspendState.manual
        self.db.flush()
        self.db.refresh(vm)
        logger.info("Suspended vm %d (%s)", vm.id, vm.suspended.value)
        if vm.identification and vm.status == VmStatus.active:
            self._queue(suspend_vm, vm.id)

    def unsuspend(self, vm: VirtualMachine) -> None:
        vm.suspended = SuspendState.no
        self.db.flush()
        logger.info("Unsuspended vm %d", vm.id)
        try:
            self.start(vm)
        except LobsterError as exc:
            # the suspension stays lifted; provider failures were already reported
            logger.warning("Could not start vm %d after unsuspend: %s", vm.id, exc.code)

    # info

    def load_info(self, vm: VirtualMachine) -> VmInfo:
        if vm.status != VmStatus.active or not vm.identification:
            return VmInfo(ip=PENDING, private_ip=PENDING, status=vm.status.value.title(), hostname=vm.name)

        driver = self.driver(vm)
        try:
            info = driver.vm_info(vm)
        except Exception as exc:
            email_service.report_error(
                ProviderError("info", exc, vm.id, vm.identification), "failed to get VM info"
            )
            info = VmInfo()

        if not info.hostname:
            info.hostname = vm.name
        if not info.ip:
            info.ip = PENDING
        elif vm.external_ip != info.ip or vm.private_ip != info.private_ip:
            vm.external_ip = info.ip
            vm.private_ip = info.private_ip
            self.db.flush()
        if not info.private_ip:
            info.private_ip = PENDING
        if not info.status:
            info.status = "Unknown"
        return probe_capabilities(driver, info)
