import logging
from dataclasses import dataclass
from datetime import date

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from lobster.config import settings
from lobster.drivers.registry import DriverRegistry
from lobster.metrics import CHARGES_APPLIED
from lobster.models.billing import Charge, Transaction
from lobster.models.user import User, UserStatus
from lobster.models.vm import SuspendState, VirtualMachine
from lobster.services import email as email_service
from lobster.services.common import BILLING_PRECISION, utcnow

logger = logging.getLogger(__name__)

CREDIT_CHARGE_NAME = "Credit updated"


@dataclass
class CreditSummary:
    credit: int
    hourly: int
    daily: int
    monthly: int
    days_remaining: str
    status: str


class LedgerService:
    def __init__(self, db: Session, registry: DriverRegistry | None = None):
        self.db = db
        self.registry = registry

    def apply_credit(self, user_id: int, amount: int, detail: str) -> None:
        """Add credit to a user and lift automatic suspensions once positive."""
        self.db.add(Charge(user_id=user_id, name=CREDIT_CHARGE_NAME, detail=detail, key=None, amount=-amount))
        self.db.execute(
            update(User).where(User.id == user_id).where(User.status == UserStatus.new).values(status=UserStatus.active)
        )
        self.db.execute(update(User).where(User.id == user_id).values(credit=User.credit + amount))
        self.db.flush()
        CHARGES_APPLIED.labels(kind="credit").inc()

        user = self.db.get(User, user_id)
        if user is None:
            return
        self.db.refresh(user)
        if user.credit <= 0:
            return

        from lobster.services.vm_service import VmService

        suspended = self.db.scalars(
            select(VirtualMachine)
            .where(VirtualMachine.user_id == user_id)
            .where(VirtualMachine.suspended == SuspendState.auto)
        ).all()
        if not suspended:
            return
        vm_service = VmService(self.db, self.registry)
        for vm in suspended:
            logger.info("Unsuspending vm %d of user %d after credit update", vm.id, user_id)
            try:
                vm_service.unsuspend(vm)
            except Exception as exc:
                email_service.report_error(exc, "failed to unsuspend VM", f"vm_id={vm.id}")
                continue
            email_service.mail_wrap(self.db, user_id, "vmUnsuspend", {"id": vm.id, "name": vm.name})

    def apply_charge(self, user_id: int, name: str, detail: str, key: str, amount: int) -> None:
        """Record a charge, accumulating into the same-day row for ``key``."""
        today = utcnow().date()
        if not self._accumulate(user_id, key, today, amount):
            try:
                with self.db.begin_nested():
                    self.db.add(Charge(user_id=user_id, name=name, detail=detail, key=key, time=today, amount=amount))
                    self.db.flush()
            except IntegrityError:
                # a concurrent writer created the row first
                self._accumulate(user_id, key, today, amount)
        self.db.execute(update(User).where(User.id == user_id).values(credit=User.credit - amount))
        self.db.flush()
        CHARGES_APPLIED.labels(kind=key.split("-", 1)[0]).inc()

    def _accumulate(self, user_id: int, key: str, day: date, amount: int) -> bool:
        charge_id = self.db.scalar(
            select(Charge.id).where(Charge.user_id == user_id).where(Charge.key == key).where(Charge.time == day)
        )
        if charge_id is None:
            return False
        self.db.execute(update(Charge).where(Charge.id == charge_id).values(amount=Charge.amount + amount))
        return True

    def add_transaction(
        self,
        user_id: int,
        gateway: str,
        gateway_identifier: str,
        notes: str,
        amount: int,
        fee: int = 0,
    ) -> Transaction | None:
        existing = self.get_transaction_by_gateway(gateway, gateway_identifier)
        if existing is not None:
            logger.info("Duplicate transaction %s/%s ignored", gateway, gateway_identifier)
            return None

        minimum = int(settings.deposit_minimum * BILLING_PRECISION)
        maximum = int(settings.deposit_maximum * BILLING_PRECISION)
        if amount < minimum or amount > maximum:
            email_service.report_error(
                ValueError(f"transaction amount {amount} outside [{minimum}, {maximum}]"),
                "invalid transaction amount",
                f"user_id={user_id}, gateway={gateway}, gateway_identifier={gateway_identifier}",
            )
            return None
        if self.db.get(User, user_id) is None:
            email_service.report_error(
                ValueError(f"user {user_id} does not exist"),
                "invalid transaction user",
                f"gateway={gateway}, gateway_identifier={gateway_identifier}",
            )
            return None

        transaction = Transaction(
            user_id=user_id,
            gateway=gateway,
            gateway_identifier=gateway_identifier,
            notes=notes,
            amount=amount,
            fee=fee,
        )
        try:
            with self.db.begin_nested():
                self.db.add(transaction)
                self.db.flush()
        except IntegrityError:
            logger.info("Duplicate transaction %s/%s ignored", gateway, gateway_identifier)
            return None

        logger.info("Transaction %s/%s credited %d to user %d", gateway, gateway_identifier, amount, user_id)
        self.apply_credit(user_id, amount, f"Transaction {gateway}/{gateway_identifier}")
        email_service.mail_wrap(
            self.db,
            user_id,
            "paymentProcessed",
            {"amount": amount, "gateway": gateway, "gateway_identifier": gateway_identifier},
            cc_admin=True,
        )
        return transaction

    def credit_summary(self, user_id: int) -> CreditSummary:
        user = self.db.get(User, user_id)
        if user is None:
            raise ValueError("user not found")
        hourly = sum(vm.plan.price for vm in user.vms if vm.plan is not None)
        daily = hourly * 24
        monthly = daily * 30

        if daily == 0:
            days_remaining = "infinite"
            status = "success"
        else:
            days = user.credit / daily
            days_remaining = f"{days:.1f}"
            if days < 1:
                status = "danger"
            elif days < 7:
                status = "warning"
            else:
                status = "success"
        return CreditSummary(
            credit=user.credit,
            hourly=hourly,
            daily=daily,
            monthly=monthly,
            days_remaining=days_remaining,
            status=status,
        )

    def list_charges(self, user_id: int, year: int, month: int) -> list[Charge]:
        start = date(year, month, 1)
        end = date(year + 1, 1, 1) if month == 12 else date(year, month + 1, 1)
        return list(
            self.db.scalars(
                select(Charge)
                .where(Charge.user_id == user_id)
                .where(Charge.time >= start)
                .where(Charge.time < end)
                .order_by(Charge.time.desc(), Charge.id.desc())
            ).all()
        )

    def list_transactions(self, user_id: int | None = None) -> list[Transaction]:
        stmt = select(Transaction).order_by(Transaction.id.desc())
        if user_id is not None:
            stmt = stmt.where(Transaction.user_id == user_id)
        return list(self.db.scalars(stmt).all())

    def get_transaction_by_gateway(self, gateway: str, gateway_identifier: str) -> Transaction | None:
        return self.db.scalars(
            select(Transaction)
            .where(Transaction.gateway == gateway)
            .where(Transaction.gateway_identifier == gateway_identifier)
        ).first()
