import enum
from datetime import UTC, datetime

from sqlalchemy import BigInteger, Boolean, DateTime, Enum, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from lobster.db import Base


class UserStatus(str, enum.Enum):
    new = "new"
    active = "active"
    disabled = "disabled"


class User(Base):
    __tablename__ = "users"
    __table_args__ = (
        UniqueConstraint("username", name="uq_users_username"),
        UniqueConstraint("email", name="uq_users_email"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(128), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255))
    password_hash: Mapped[str] = mapped_column(String(512), nullable=False)
    # signed, in units of 1/BILLING_PRECISION of the account currency
    credit: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    vm_limit: Mapped[int] = mapped_column(Integer, default=10, nullable=False)
    create_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(UTC))
    last_billing_notify: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC)
    )
    billing_low_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    time_billed: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(UTC))
    status: Mapped[UserStatus] = mapped_column(Enum(UserStatus), default=UserStatus.new, nullable=False)
    admin: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    vms = relationship("VirtualMachine", back_populates="user")
