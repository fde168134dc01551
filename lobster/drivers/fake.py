"""In-memory driver for development and tests."""

from __future__ import annotations

import random
from collections import Counter

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
)
from lobster.models.image import ImageStatus
from lobster.models.vm import VirtualMachine

ADDRESSES_KEY = "addresses"
POWER_KEY = "power"


class FakeDriverError(Exception):
    pass


class FakeDriver(
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
    """Pretends every operation succeeds.

    ``bandwidth`` is returned from every ``bandwidth_accounting`` call and
    operation names listed in ``fail_on`` raise :class:`FakeDriverError`.
    With ``vnc_target`` set, VNC requests are proxied to that ``host:port``.
    """

    def __init__(
        self,
        bandwidth: int = 0,
        fail_on: set[str] | None = None,
        images: list[ProviderImage] | None = None,
        plans: list[ProviderPlan] | None = None,
        status: str = "Online",
        vnc_target: str | None = None,
    ):
        self.bandwidth = bandwidth
        self.fail_on = set(fail_on or ())
        self.images = list(images or [])
        self.plans = list(plans or [])
        self.status = status
        self.vnc_target = vnc_target
        self.calls: Counter[str] = Counter()

    def _call(self, operation: str) -> None:
        self.calls[operation] += 1
        if operation in self.fail_on:
            raise FakeDriverError(f"{operation} failed")

    def vm_create(self, vm: VirtualMachine, image_identification: str) -> str:
        self._call("create")
        vm.set_metadata(ADDRESSES_KEY, "127.0.0.1:")
        return f"fake-{vm.id}"

    def vm_delete(self, vm: VirtualMachine) -> None:
        self._call("delete")

    def vm_info(self, vm: VirtualMachine) -> VmInfo:
        self._call("info")
        info = VmInfo(
            status=vm.get_metadata(POWER_KEY, self.status),
            login_details="fingerprint login supported",
            actions=[VmAction(action="rescue", name="Rescue", description="Boot into rescue mode", dangerous=True)],
        )
        addresses = self.vm_addresses(vm)
        if addresses:
            info.ip = addresses[0].ip
            info.private_ip = addresses[0].private_ip
        return info

    def vm_start(self, vm: VirtualMachine) -> None:
        self._call("start")
        vm.set_metadata(POWER_KEY, "Online")

    def vm_stop(self, vm: VirtualMachine) -> None:
        self._call("stop")
        vm.set_metadata(POWER_KEY, "Offline")

    def vm_reboot(self, vm: VirtualMachine) -> None:
        self._call("reboot")

    def vm_action(self, vm: VirtualMachine, action: str, value: str) -> None:
        self._call("action")
        if action != "rescue":
            raise FakeDriverError("operation not supported")

    def bandwidth_accounting(self, vm: VirtualMachine) -> int:
        self.calls["bandwidth"] += 1
        return self.bandwidth

    def vm_vnc(self, vm: VirtualMachine) -> str:
        self._call("vnc")
        if self.vnc_target:
            from lobster.services.websockify import handle_websockify

            return handle_websockify(self.vnc_target, vm.get_metadata("password", "fake"))
        return f"https://vnc.example.com/?vm={vm.id}"

    def vm_rename(self, vm: VirtualMachine, name: str) -> None:
        self._call("rename")

    def vm_reimage(self, vm: VirtualMachine, image_identification: str) -> None:
        self._call("reimage")

    def vm_snapshot(self, vm: VirtualMachine) -> str:
        self._call("snapshot")
        return f"fake-snapshot-{vm.id}"

    def vm_resize(self, vm: VirtualMachine, plan_identification: str, ram: int, cpu: int, storage: int) -> None:
        self._call("resize")

    def vm_addresses(self, vm: VirtualMachine) -> list[IpAddress]:
        addresses = []
        for chunk in vm.get_metadata(ADDRESSES_KEY, "").split(","):
            chunk = chunk.strip()
            if not chunk:
                continue
            ip, _, hostname = chunk.partition(":")
            addresses.append(IpAddress(ip=ip, private_ip="255.255.255.255", can_rdns=True, hostname=hostname))
        return addresses

    def _save_addresses(self, vm: VirtualMachine, addresses: list[IpAddress]) -> None:
        vm.set_metadata(ADDRESSES_KEY, ",".join(f"{address.ip}:{address.hostname}" for address in addresses))

    def vm_add_address(self, vm: VirtualMachine) -> None:
        self._call("add_address")
        addresses = self.vm_addresses(vm)
        addresses.append(IpAddress(ip=f"127.0.0.{random.randint(1, 255)}"))
        self._save_addresses(vm, addresses)

    def vm_remove_address(self, vm: VirtualMachine, ip: str, private_ip: str) -> None:
        self._call("remove_address")
        self._save_addresses(vm, [address for address in self.vm_addresses(vm) if address.ip != ip])

    def vm_set_rdns(self, vm: VirtualMachine, ip: str, hostname: str) -> None:
        self._call("set_rdns")
        addresses = self.vm_addresses(vm)
        for address in addresses:
            if address.ip == ip:
                address.hostname = hostname
        self._save_addresses(vm, addresses)

    def image_fetch(self, url: str, image_format: str) -> str:
        self._call("image_fetch")
        return "fake-image"

    def image_info(self, image_identification: str) -> ImageInfo:
        self._call("image_info")
        return ImageInfo(size=1024 * 1024 * 1024, status=ImageStatus.active)

    def image_delete(self, image_identification: str) -> None:
        self._call("image_delete")

    def image_list(self) -> list[ProviderImage]:
        self._call("image_list")
        return list(self.images)

    def plan_list(self) -> list[ProviderPlan]:
        self._call("plan_list")
        return list(self.plans)
