import enum
from datetime import UTC, datetime

from sqlalchemy import DateTime, Enum, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from lobster.db import Base


class ImageStatus(str, enum.Enum):
    pending = "pending"
    active = "active"
    error = "error"


class Image(Base):
    __tablename__ = "images"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # NULL owner means a public image
    user_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("users.id"), index=True)
    region: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    identification: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    status: Mapped[ImageStatus] = mapped_column(Enum(ImageStatus), default=ImageStatus.pending, nullable=False)
    source_vm_id: Mapped[int | None] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(UTC))

    @property
    def is_public(self) -> bool:
        return self.user_id is None
