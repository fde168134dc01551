"""Driver contract shared by every compute provider backend.

A driver implements :class:`VmInterface` and may additionally subclass any of
the capability bases below. The orchestrator probes a driver with
``isinstance`` to discover which optional operations it supports, so a driver
that subclasses a capability must implement all of its methods.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from lobster.models.image import ImageStatus
    from lobster.models.vm import VirtualMachine

logger = logging.getLogger(__name__)

BANDWIDTH_ANCHOR_KEY = "bandwidth_anchor"


@dataclass
class VmAction:
    """An extra operation a driver advertises for one VM."""

    action: str
    name: str
    options: dict[str, str] | None = None
    description: str = ""
    dangerous: bool = False


@dataclass
class VmInfo:
    ip: str = ""
    private_ip: str = ""
    status: str = ""
    hostname: str = ""
    bandwidth_used: int = 0
    login_details: str = ""
    details: dict[str, str] = field(default_factory=dict)
    actions: list[VmAction] = field(default_factory=list)

    # Filled in by the orchestrator from capability probing unless the driver
    # sets override_capabilities.
    can_vnc: bool = False
    can_rename: bool = False
    can_reimage: bool = False
    can_snapshot: bool = False
    can_resize: bool = False
    can_addresses: bool = False
    override_capabilities: bool = False


@dataclass
class IpAddress:
    ip: str
    private_ip: str = ""
    can_rdns: bool = False
    hostname: str = ""


@dataclass
class ImageInfo:
    size: int
    status: ImageStatus
    details: dict[str, str] = field(default_factory=dict)


@dataclass
class ProviderImage:
    name: str
    identification: str


@dataclass
class ProviderPlan:
    name: str
    ram: int
    cpu: int
    storage: int
    bandwidth: int
    identification: str


class VmInterface(ABC):
    """Mandatory operations. Failures are raised as exceptions."""

    @abstractmethod
    def vm_create(self, vm: VirtualMachine, image_identification: str) -> str:
        """Create the VM and return a non-empty provider identification.

        May store driver state on the VM with ``vm.set_metadata``.
        """

    @abstractmethod
    def vm_delete(self, vm: VirtualMachine) -> None: ...

    @abstractmethod
    def vm_info(self, vm: VirtualMachine) -> VmInfo: ...

    @abstractmethod
    def vm_start(self, vm: VirtualMachine) -> None: ...

    @abstractmethod
    def vm_stop(self, vm: VirtualMachine) -> None: ...

    @abstractmethod
    def vm_reboot(self, vm: VirtualMachine) -> None: ...

    @abstractmethod
    def vm_action(self, vm: VirtualMachine, action: str, value: str) -> None:
        """Run one of the actions advertised in ``VmInfo.actions``."""

    @abstractmethod
    def bandwidth_accounting(self, vm: VirtualMachine) -> int:
        """Bytes transferred since the previous call for this VM.

        The first call for a VM returns 0, as do drivers that cannot measure.
        """


class VncCapable(ABC):
    @abstractmethod
    def vm_vnc(self, vm: VirtualMachine) -> str:
        """Return a URL the user should be redirected to."""


class RenameCapable(ABC):
    @abstractmethod
    def vm_rename(self, vm: VirtualMachine, name: str) -> None: ...


class ReimageCapable(ABC):
    @abstractmethod
    def vm_reimage(self, vm: VirtualMachine, image_identification: str) -> None: ...


class SnapshotCapable(ABC):
    @abstractmethod
    def vm_snapshot(self, vm: VirtualMachine) -> str:
        """Start a snapshot and return the new image identification."""


class ResizeCapable(ABC):
    @abstractmethod
    def vm_resize(self, vm: VirtualMachine, plan_identification: str, ram: int, cpu: int, storage: int) -> None: ...


class AddressCapable(ABC):
    @abstractmethod
    def vm_addresses(self, vm: VirtualMachine) -> list[IpAddress]: ...

    @abstractmethod
    def vm_add_address(self, vm: VirtualMachine) -> None: ...

    @abstractmethod
    def vm_remove_address(self, vm: VirtualMachine, ip: str, private_ip: str) -> None: ...

    @abstractmethod
    def vm_set_rdns(self, vm: VirtualMachine, ip: str, hostname: str) -> None: ...


class ImageCapable(ABC):
    @abstractmethod
    def image_fetch(self, url: str, image_format: str) -> str: ...

    @abstractmethod
    def image_info(self, image_identification: str) -> ImageInfo: ...

    @abstractmethod
    def image_delete(self, image_identification: str) -> None: ...

    @abstractmethod
    def image_list(self) -> list[ProviderImage]: ...


class PlanCapable(ABC):
    @abstractmethod
    def plan_list(self) -> list[ProviderPlan]: ...


_PROBES = (
    ("can_vnc", VncCapable),
    ("can_rename", RenameCapable),
    ("can_reimage", ReimageCapable),
    ("can_snapshot", SnapshotCapable),
    ("can_resize", ResizeCapable),
    ("can_addresses", AddressCapable),
)


def probe_capabilities(driver: VmInterface, info: VmInfo) -> VmInfo:
    """Fill the ``can_*`` flags of ``info`` unless the driver overrode them."""
    if info.override_capabilities:
        return info
    for attr, capability in _PROBES:
        setattr(info, attr, isinstance(driver, capability))
    return info


def counter_delta(vm: VirtualMachine, reading: int) -> int:
    """Turn a cumulative provider counter into a since-last-call delta.

    The previous reading is kept in VM metadata so it survives restarts. The
    first reading only anchors; a reading below the anchor means the provider
    reset its counter, so we re-anchor and report nothing.
    """
    previous = vm.get_metadata(BANDWIDTH_ANCHOR_KEY, "")
    vm.set_metadata(BANDWIDTH_ANCHOR_KEY, str(reading))
    if not previous:
        return 0
    try:
        anchor = int(previous)
    except ValueError:
        logger.warning("Discarding malformed bandwidth anchor %r for vm %s", previous, vm.id)
        return 0
    if reading < anchor:
        return 0
    return reading - anchor
