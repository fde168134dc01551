from __future__ import annotations

import json
import logging
from pathlib import Path

from lobster.drivers.base import VmInterface

logger = logging.getLogger(__name__)


class UnknownRegionError(RuntimeError):
    pass


class DuplicateRegistrationError(RuntimeError):
    pass


class RegistryFrozenError(RuntimeError):
    pass


class DriverRegistry:
    """Region name to driver map, built once at startup and then frozen."""

    def __init__(self):
        self._drivers: dict[str, VmInterface] = {}
        self._frozen = False

    def register(self, region: str, driver: VmInterface) -> None:
        if self._frozen:
            raise RegistryFrozenError(f"cannot register region {region!r} after startup")
        if region in self._drivers:
            raise DuplicateRegistrationError(f"duplicate region {region!r}")
        self._drivers[region] = driver
        logger.info("Registered driver %s for region %s", type(driver).__name__, region)

    def get(self, region: str) -> VmInterface:
        try:
            return self._drivers[region]
        except KeyError:
            raise UnknownRegionError(f"no driver registered for region {region!r}") from None

    def has(self, region: str) -> bool:
        return region in self._drivers

    def regions(self) -> list[str]:
        return sorted(self._drivers)

    def freeze(self) -> None:
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen


def load_sidecar(path: str | None) -> dict:
    if not path:
        return {}
    with Path(path).open(encoding="utf-8") as handle:
        return json.load(handle)


def _build_driver(entry: dict) -> VmInterface:
    driver_type = entry.get("type")
    if driver_type == "fake":
        from lobster.drivers.fake import FakeDriver

        return FakeDriver(bandwidth=int(entry.get("bandwidth", 0)), vnc_target=entry.get("vnc_target"))
    if driver_type == "lobster":
        from lobster.client import LobsterClient
        from lobster.drivers.lobster_api import RemoteLobsterDriver

        client = LobsterClient(entry["url"], entry["api_id"], entry["api_key"])
        return RemoteLobsterDriver(client, region=entry.get("remote_region", entry["region"]))
    raise ValueError(f"unknown driver type {driver_type!r}")


def build_registry(config: dict) -> DriverRegistry:
    registry = DriverRegistry()
    for entry in config.get("drivers", []):
        registry.register(entry["region"], _build_driver(entry))
    registry.freeze()
    return registry


_default_registry: DriverRegistry | None = None


def get_default_registry() -> DriverRegistry:
    """Registry used outside request handlers, e.g. by Celery workers."""
    global _default_registry
    if _default_registry is None:
        from lobster.config import settings

        _default_registry = build_registry(load_sidecar(settings.drivers_config))
    return _default_registry


def set_default_registry(registry: DriverRegistry | None) -> None:
    global _default_registry
    _default_registry = registry
