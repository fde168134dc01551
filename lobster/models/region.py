from sqlalchemy import Boolean, String
from sqlalchemy.orm import Mapped, mapped_column

from lobster.db import Base


class Region(Base):
    """Operator toggle for a registered region. Regions without a row are enabled."""

    __tablename__ = "regions"

    name: Mapped[str] = mapped_column(String(64), primary_key=True)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
