from datetime import UTC, date, datetime

from sqlalchemy import BigInteger, Date, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from lobster.db import Base


class Charge(Base):
    """One ledger row per (user, key, day); credit rows carry a NULL key."""

    __tablename__ = "charges"
    __table_args__ = (UniqueConstraint("user_id", "k", "time", name="uq_charges_user_key_day"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    detail: Mapped[str] = mapped_column(Text, nullable=False, default="")
    key: Mapped[str | None] = mapped_column("k", String(128))
    time: Mapped[date] = mapped_column(Date, nullable=False, default=lambda: datetime.now(UTC).date())
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)


class Transaction(Base):
    __tablename__ = "transactions"
    __table_args__ = (UniqueConstraint("gateway", "gateway_identifier", name="uq_transactions_gateway_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    gateway: Mapped[str] = mapped_column(String(64), nullable=False)
    gateway_identifier: Mapped[str] = mapped_column(String(255), nullable=False)
    notes: Mapped[str] = mapped_column(Text, nullable=False, default="")
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    fee: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    time: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(UTC))


class RegionBandwidth(Base):
    __tablename__ = "region_bandwidth"
    __table_args__ = (UniqueConstraint("user_id", "region", name="uq_region_bandwidth_user_region"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    region: Mapped[str] = mapped_column(String(64), nullable=False)
    bandwidth_used: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    bandwidth_additional: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    bandwidth_billed: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    bandwidth_notified_percent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
