import enum
from datetime import UTC, datetime

from sqlalchemy import Boolean, DateTime, Enum, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from lobster.db import Base


class VmStatus(str, enum.Enum):
    provisioning = "provisioning"
    active = "active"
    error = "error"


class SuspendState(str, enum.Enum):
    no = "no"
    auto = "auto"
    manual = "manual"


class VirtualMachine(Base):
    __tablename__ = "vms"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    region: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    plan_id: Mapped[int] = mapped_column(Integer, ForeignKey("plans.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(64), nullable=False)
    identification: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    status: Mapped[VmStatus] = mapped_column(Enum(VmStatus), default=VmStatus.provisioning, nullable=False)
    task_pending: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    external_ip: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    private_ip: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    created_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(UTC))
    time_billed: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(UTC))
    suspended: Mapped[SuspendState] = mapped_column(Enum(SuspendState), default=SuspendState.no, nullable=False)

    user = relationship("User", back_populates="vms")
    plan = relationship("Plan", lazy="joined")
    metadata_entries = relationship(
        "VmMetadata",
        back_populates="vm",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    @property
    def plan_identification(self) -> str:
        """Provider plan id bound to this VM's region, empty when unbound."""
        return self.plan.identification_for(self.region) if self.plan else ""

    def get_metadata(self, key: str, default: str = "") -> str:
        for entry in self.metadata_entries:
            if entry.k == key:
                return entry.v
        return default

    def set_metadata(self, key: str, value: str) -> None:
        for entry in self.metadata_entries:
            if entry.k == key:
                entry.v = value
                return
        self.metadata_entries.append(VmMetadata(k=key, v=value))


class VmMetadata(Base):
    __tablename__ = "vm_metadata"
    __table_args__ = (UniqueConstraint("vm_id", "k", name="uq_vm_metadata_vm_key"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    vm_id: Mapped[int] = mapped_column(Integer, ForeignKey("vms.id"), nullable=False, index=True)
    k: Mapped[str] = mapped_column(String(128), nullable=False)
    v: Mapped[str] = mapped_column(Text, nullable=False, default="")

    vm = relationship("VirtualMachine", back_populates="metadata_entries")
