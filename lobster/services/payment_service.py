from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from sqlalchemy.orm import Session

from lobster.config import settings
from lobster.errors import LobsterError
from lobster.services.common import BILLING_PRECISION, uid

logger = logging.getLogger(__name__)


class DuplicatePaymentMethodError(RuntimeError):
    pass


class PaymentHandler(ABC):
    @abstractmethod
    def payment(self, db: Session, user_id: int, username: str, amount: float) -> str:
        """Start a deposit of ``amount`` and return the URL to redirect the user to."""


class FakePayment(PaymentHandler):
    """Credits the account immediately; for development installs only."""

    def payment(self, db: Session, user_id: int, username: str, amount: float) -> str:
        from lobster.services.ledger_service import LedgerService

        micros = int(amount * 100) * BILLING_PRECISION // 100
        LedgerService(db).add_transaction(user_id, "fake", uid(16), "Fake credit", micros, 0)
        logger.info("Fake payment of %.2f for user %s", amount, username)
        return "/panel/billing?message=Credit+added&type=success"


class PaymentRegistry:
    def __init__(self):
        self._handlers: dict[str, PaymentHandler] = {}

    def register(self, method: str, handler: PaymentHandler) -> None:
        if method in self._handlers:
            raise DuplicatePaymentMethodError(f"duplicate payment method {method!r}")
        self._handlers[method] = handler

    def methods(self) -> list[str]:
        return sorted(self._handlers)

    def handle(self, db: Session, method: str, user_id: int, username: str, amount: float) -> str:
        if amount < settings.deposit_minimum or amount > settings.deposit_maximum:
            raise LobsterError("amount_between", min=settings.deposit_minimum, max=settings.deposit_maximum)
        handler = self._handlers.get(method)
        if handler is None:
            raise LobsterError("invalid_payment_method")
        return handler.payment(db, user_id, username, amount)


def build_payment_registry(config: dict) -> PaymentRegistry:
    registry = PaymentRegistry()
    for entry in config.get("payments", []):
        payment_type = entry.get("type")
        if payment_type == "fake":
            registry.register(entry.get("method", "fake"), FakePayment())
        else:
            raise ValueError(f"unknown payment type {payment_type!r}")
    return registry
