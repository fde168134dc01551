"""Driver that fronts another lobster control plane through its signed API."""

from __future__ import annotations

import logging

from lobster.client import LobsterClient
from lobster.drivers.base import (
    AddressCapable,
    ImageCapable,
    ImageInfo,
    IpAddress,
    PlanCapable,
    ProviderImage,
    ProviderPlan,
    ReimageCapable,
    RenameCapable,
    ResizeCapable,
    SnapshotCapable,
    VmAction,
    VmInfo,
    VmInterface,
    VncCapable,
    counter_delta,
)
from lobster.models.image import ImageStatus
from lobster.models.vm import VirtualMachine
from lobster.schemas import api as schemas
from lobster.services.common import uid

logger = logging.getLogger(__name__)


class PlanUnavailableError(Exception):
    pass


class RemoteLobsterDriver(
    VmInterface,
    VncCapable,
    RenameCapable,
    ReimageCapable,
    SnapshotCapable,
    ResizeCapable,
    AddressCapable,
    ImageCapable,
    PlanCapable,
):
    def __init__(self, client: LobsterClient, region: str):
        self.client = client
        self.region = region

    @staticmethod
    def _remote_id(vm: VirtualMachine) -> int:
        return int(vm.identification)

    def _find_matching_plan(self, ram: int, storage: int, cpu: int) -> schemas.Plan:
        for plan in self.client.plan_list():
            if plan.ram == ram and plan.storage == storage and plan.cpu == cpu:
                return plan
        raise PlanUnavailableError("plan not available in this region")

    def _remote_plan_id(self, vm: VirtualMachine) -> int:
        if vm.plan_identification:
            return int(vm.plan_identification)
        return self._find_matching_plan(vm.plan.ram, vm.plan.storage, vm.plan.cpu).id

    def vm_create(self, vm: VirtualMachine, image_identification: str) -> str:
        remote_id = self.client.vm_create(vm.name, self._remote_plan_id(vm), int(image_identification))
        return str(remote_id)

    def vm_delete(self, vm: VirtualMachine) -> None:
        self.client.vm_delete(self._remote_id(vm))

    def vm_info(self, vm: VirtualMachine) -> VmInfo:
        details = self.client.vm_info(self._remote_id(vm)).details
        # the remote side already probed its own driver
        return VmInfo(
            ip=details.ip,
            private_ip=details.private_ip,
            status=details.status,
            hostname=details.hostname,
            bandwidth_used=details.bandwidth_used,
            login_details=details.login_details,
            details=dict(details.details),
            actions=[
                VmAction(
                    action=action.action,
                    name=action.name,
                    options=action.options,
                    description=action.description,
                    dangerous=action.dangerous,
                )
                for action in details.actions
            ],
            override_capabilities=True,
            can_vnc=details.can_vnc,
            can_rename=details.can_rename,
            can_reimage=details.can_reimage,
            can_snapshot=details.can_snapshot,
            can_resize=details.can_resize,
            can_addresses=details.can_addresses,
        )

    def vm_start(self, vm: VirtualMachine) -> None:
        self.client.vm_action(self._remote_id(vm), "start")

    def vm_stop(self, vm: VirtualMachine) -> None:
        self.client.vm_action(self._remote_id(vm), "stop")

    def vm_reboot(self, vm: VirtualMachine) -> None:
        self.client.vm_action(self._remote_id(vm), "reboot")

    def vm_action(self, vm: VirtualMachine, action: str, value: str) -> None:
        self.client.vm_action(self._remote_id(vm), action, value)

    def bandwidth_accounting(self, vm: VirtualMachine) -> int:
        # remote reports a cumulative counter
        try:
            info = self.client.vm_info(self._remote_id(vm))
        except Exception as exc:
            logger.warning("Bandwidth query failed for vm %s: %s", vm.id, exc)
            return 0
        return counter_delta(vm, info.details.bandwidth_used)

    def vm_vnc(self, vm: VirtualMachine) -> str:
        return self.client.vm_vnc(self._remote_id(vm))

    def vm_rename(self, vm: VirtualMachine, name: str) -> None:
        self.client.vm_action(self._remote_id(vm), "rename", name)

    def vm_reimage(self, vm: VirtualMachine, image_identification: str) -> None:
        self.client.vm_reimage(self._remote_id(vm), int(image_identification))

    def vm_snapshot(self, vm: VirtualMachine) -> str:
        # remote image name is irrelevant, the local row carries the user's name
        return str(self.client.vm_snapshot(self._remote_id(vm), uid(16)))

    def vm_resize(self, vm: VirtualMachine, plan_identification: str, ram: int, cpu: int, storage: int) -> None:
        if plan_identification:
            remote_plan = int(plan_identification)
        else:
            remote_plan = self._find_matching_plan(ram, storage, cpu).id
        self.client.vm_resize(self._remote_id(vm), remote_plan)

    def vm_addresses(self, vm: VirtualMachine) -> list[IpAddress]:
        return [
            IpAddress(ip=address.ip, private_ip=address.private_ip, can_rdns=address.can_rdns, hostname=address.hostname)
            for address in self.client.vm_addresses(self._remote_id(vm))
        ]

    def vm_add_address(self, vm: VirtualMachine) -> None:
        self.client.vm_add_address(self._remote_id(vm))

    def vm_remove_address(self, vm: VirtualMachine, ip: str, private_ip: str) -> None:
        self.client.vm_remove_address(self._remote_id(vm), ip, private_ip)

    def vm_set_rdns(self, vm: VirtualMachine, ip: str, hostname: str) -> None:
        self.client.vm_set_rdns(self._remote_id(vm), ip, hostname)

    def image_fetch(self, url: str, image_format: str) -> str:
        return str(self.client.image_fetch(self.region, uid(16), url, image_format))

    def image_info(self, image_identification: str) -> ImageInfo:
        details = self.client.image_info(int(image_identification)).details
        try:
            status = ImageStatus(details.status)
        except ValueError:
            status = ImageStatus.pending
        return ImageInfo(size=details.size, status=status, details=dict(details.details))

    def image_delete(self, image_identification: str) -> None:
        self.client.image_delete(int(image_identification))

    def image_list(self) -> list[ProviderImage]:
        return [
            ProviderImage(name=image.name, identification=str(image.id))
            for image in self.client.image_list()
            if image.region == self.region
        ]

    def plan_list(self) -> list[ProviderPlan]:
        return [
            ProviderPlan(
                name=plan.name,
                ram=plan.ram,
                cpu=plan.cpu,
                storage=plan.storage,
                bandwidth=plan.bandwidth,
                identification=str(plan.id),
            )
            for plan in self.client.plan_list()
        ]
