from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from lobster.drivers.registry import DriverRegistry
from lobster.errors import LobsterError, NotFoundError
from lobster.models.user import User, UserStatus
from lobster.services.auth_service import AuthService
from lobster.services.common import BILLING_PRECISION
from lobster.services.ledger_service import LedgerService

logger = logging.getLogger(__name__)


class UserService:
    def __init__(self, db: Session, registry: DriverRegistry | None = None):
        self.db = db
        self.registry = registry

    def list(self) -> list[User]:
        return list(self.db.scalars(select(User).order_by(User.id)).all())

    def get(self, user_id: int) -> User:
        user = self.db.get(User, user_id)
        if user is None:
            raise NotFoundError("user_not_found")
        return user

    def credit(self, user_id: int, amount: float, description: str) -> None:
        """Admin credit adjustment; ``amount`` is in account currency and may be negative."""
        self.get(user_id)
        LedgerService(self.db, self.registry).apply_credit(user_id, int(amount * BILLING_PRECISION), description)
        logger.info("Applied admin credit %.3f to user %d", amount, user_id)

    def set_password(self, user_id: int, password: str, confirm: str) -> None:
        if password != confirm:
            raise LobsterError("password_mismatch")
        if not password:
            raise LobsterError("password_empty")
        self.get(user_id)
        AuthService(self.db).force_change_password(user_id, password)

    def disable(self, user_id: int) -> None:
        user = self.get(user_id)
        user.status = UserStatus.disabled
        self.db.flush()
        logger.info("Disabled user %d", user_id)

    def enable(self, user_id: int) -> None:
        user = self.get(user_id)
        if user.status == UserStatus.disabled:
            user.status = UserStatus.active
            self.db.flush()
            logger.info("Enabled user %d", user_id)
