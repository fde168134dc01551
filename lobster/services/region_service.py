from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from lobster.drivers.registry import DriverRegistry
from lobster.errors import LobsterError
from lobster.models.region import Region

logger = logging.getLogger(__name__)


class RegionService:
    """Registered regions, filtered by the operator's enable/disable toggle."""

    def __init__(self, db: Session, registry: DriverRegistry):
        self.db = db
        self.registry = registry

    def _disabled(self) -> set[str]:
        return set(self.db.scalars(select(Region.name).where(Region.enabled.is_(False))).all())

    def list(self) -> list[str]:
        disabled = self._disabled()
        return [name for name in self.registry.regions() if name not in disabled]

    def list_all(self) -> list[dict]:
        disabled = self._disabled()
        return [{"name": name, "enabled": name not in disabled} for name in self.registry.regions()]

    def is_enabled(self, name: str) -> bool:
        if not self.registry.has(name):
            return False
        row = self.db.get(Region, name)
        return row is None or row.enabled

    def _set_enabled(self, name: str, enabled: bool) -> None:
        if not self.registry.has(name):
            raise LobsterError("invalid_region")
        row = self.db.get(Region, name)
        if row is None:
            self.db.add(Region(name=name, enabled=enabled))
        else:
            row.enabled = enabled
        self.db.flush()
        logger.info("Region %s %s", name, "enabled" if enabled else "disabled")

    def enable(self, name: str) -> None:
        self._set_enabled(name, True)

    def disable(self, name: str) -> None:
        self._set_enabled(name, False)
