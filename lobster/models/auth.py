from datetime import UTC, datetime

from sqlalchemy import BigInteger, Boolean, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from lobster.db import Base


class ApiKey(Base):
    __tablename__ = "api_keys"
    __table_args__ = (UniqueConstraint("api_id", name="uq_api_keys_api_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    label: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    api_id: Mapped[str] = mapped_column(String(16), nullable=False)
    api_key: Mapped[str] = mapped_column(String(128), nullable=False)
    # highest nonce accepted so far
    nonce: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    restrict_action: Mapped[str | None] = mapped_column(Text)
    restrict_ip: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(UTC))


class WebSession(Base):
    __tablename__ = "sessions"
    __table_args__ = (UniqueConstraint("uid", name="uq_sessions_uid"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    uid: Mapped[str] = mapped_column(String(64), nullable=False)
    user_id: Mapped[int | None] = mapped_column(Integer)
    admin: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # admin user id while impersonating another account
    original_id: Mapped[int | None] = mapped_column(Integer)
    regenerate: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    active_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(UTC))


class FormToken(Base):
    __tablename__ = "form_tokens"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_uid: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    token: Mapped[str] = mapped_column(String(64), nullable=False)
    time: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(UTC))


class PasswordResetToken(Base):
    __tablename__ = "pwreset_tokens"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    token: Mapped[str] = mapped_column(String(64), nullable=False)
    time: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(UTC))
