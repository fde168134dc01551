from sqlalchemy import BigInteger, Boolean, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from lobster.db import Base


class Plan(Base):
    __tablename__ = "plans"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    # credit units per hour
    price: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    ram: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cpu: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    storage: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # GB per month
    bandwidth: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_global: Mapped[bool] = mapped_column("global", Boolean, nullable=False, default=True)

    region_bindings = relationship(
        "RegionPlan",
        back_populates="plan",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def identification_for(self, region: str) -> str:
        for binding in self.region_bindings:
            if binding.region == region:
                return binding.identification
        return ""

    def available_in(self, region: str) -> bool:
        return self.is_global or any(binding.region == region for binding in self.region_bindings)


class RegionPlan(Base):
    __tablename__ = "region_plans"
    __table_args__ = (UniqueConstraint("plan_id", "region", name="uq_region_plans_plan_region"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    plan_id: Mapped[int] = mapped_column(Integer, ForeignKey("plans.id"), nullable=False, index=True)
    region: Mapped[str] = mapped_column(String(64), nullable=False)
    identification: Mapped[str] = mapped_column(String(255), nullable=False, default="")

    plan = relationship("Plan", back_populates="region_bindings")
