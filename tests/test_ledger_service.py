"""Tests for the credit ledger: charges, credits and payment transactions."""

from datetime import timedelta

import pytest
from sqlalchemy import select

from lobster.models.billing import Charge, Transaction
from lobster.models.user import UserStatus
from lobster.models.vm import SuspendState
from lobster.services.common import BILLING_PRECISION, utcnow
from lobster.services.ledger_service import CREDIT_CHARGE_NAME, LedgerService
from tests.conftest import make_user, make_vm


def test_apply_charge_accumulates_per_key_and_day(db_session, user):
    ledger = LedgerService(db_session)
    ledger.apply_charge(user.id, "web1", "Plan: small", "vm-1", 100)
    ledger.apply_charge(user.id, "web1", "Plan: small", "vm-1", 250)
    ledger.apply_charge(user.id, "Bandwidth", "overage", "bw-test", 7)
    db_session.commit()

    charges = db_session.scalars(select(Charge).order_by(Charge.id)).all()
    assert [(c.key, c.amount) for c in charges] == [("vm-1", 350), ("bw-test", 7)]
    db_session.refresh(user)
    assert user.credit == 10 * BILLING_PRECISION - 357


def test_apply_credit_activates_new_users(db_session):
    user = make_user(db_session, "newbie", credit=0, status=UserStatus.new)
    LedgerService(db_session).apply_credit(user.id, 5 * BILLING_PRECISION, "welcome")
    db_session.commit()
    db_session.refresh(user)
    assert user.status == UserStatus.active
    assert user.credit == 5 * BILLING_PRECISION

    credit_row = db_session.scalars(select(Charge).where(Charge.user_id == user.id)).one()
    assert credit_row.name == CREDIT_CHARGE_NAME
    assert credit_row.key is None
    assert credit_row.amount == -5 * BILLING_PRECISION


def test_apply_credit_lifts_automatic_suspensions(db_session, registry, fake_driver, plan, outbox):
    user = make_user(db_session, "debtor", credit=-1)
    auto = make_vm(db_session, user, plan, name="auto", suspended=SuspendState.auto)
    manual = make_vm(db_session, user, plan, name="manual", suspended=SuspendState.manual)

    LedgerService(db_session, registry).apply_credit(user.id, 5 * BILLING_PRECISION, "payment")
    db_session.commit()

    assert auto.suspended == SuspendState.no
    assert manual.suspended == SuspendState.manual
    assert fake_driver.calls["start"] == 1
    assert [m["subject"] for m in outbox] == ["VM auto reactivated"]


def test_apply_credit_lifts_suspension_even_if_start_fails(db_session, registry, fake_driver, plan):
    user = make_user(db_session, "debtor", credit=-1)
    vm = make_vm(db_session, user, plan, suspended=SuspendState.auto)
    fake_driver.fail_on.add("start")
    LedgerService(db_session, registry).apply_credit(user.id, 5 * BILLING_PRECISION, "payment")
    db_session.commit()
    db_session.refresh(vm)
    assert vm.suspended == SuspendState.no


def test_apply_credit_keeps_suspension_while_still_negative(db_session, registry, plan):
    user = make_user(db_session, "debtor", credit=-10)
    vm = make_vm(db_session, user, plan, suspended=SuspendState.auto)
    LedgerService(db_session, registry).apply_credit(user.id, BILLING_PRECISION, "partial")
    assert vm.suspended == SuspendState.auto


def test_add_transaction_credits_and_notifies(db_session, user, outbox):
    transaction = LedgerService(db_session).add_transaction(
        user.id, "paypal", "TX-1", "deposit", 20 * BILLING_PRECISION, fee=BILLING_PRECISION
    )
    db_session.commit()
    assert transaction is not None
    db_session.refresh(user)
    assert user.credit == 30 * BILLING_PRECISION
    assert outbox[-1]["subject"] == "Payment received"
    assert outbox[-1]["bcc"] == ["admin@example.com"]


def test_add_transaction_is_idempotent(db_session, user):
    ledger = LedgerService(db_session)
    assert ledger.add_transaction(user.id, "paypal", "TX-1", "", 20 * BILLING_PRECISION) is not None
    assert ledger.add_transaction(user.id, "paypal", "TX-1", "", 20 * BILLING_PRECISION) is None
    db_session.commit()
    db_session.refresh(user)
    assert user.credit == 30 * BILLING_PRECISION
    assert len(ledger.list_transactions(user.id)) == 1


@pytest.mark.parametrize("amount", [BILLING_PRECISION, 5000 * BILLING_PRECISION])
def test_add_transaction_rejects_out_of_range_amounts(db_session, user, outbox, amount):
    assert LedgerService(db_session).add_transaction(user.id, "paypal", "TX-2", "", amount) is None
    assert db_session.scalars(select(Transaction)).first() is None
    assert outbox[-1]["subject"] == "Error: invalid transaction amount"


def test_add_transaction_rejects_unknown_user(db_session, outbox):
    assert LedgerService(db_session).add_transaction(999, "paypal", "TX-3", "", 10 * BILLING_PRECISION) is None
    assert outbox[-1]["subject"] == "Error: invalid transaction user"


def test_credit_summary(db_session, user, plan, registry):
    summary = LedgerService(db_session).credit_summary(user.id)
    assert summary.days_remaining == "infinite"
    assert summary.status == "success"

    make_vm(db_session, user, plan)
    db_session.expire(user)
    summary = LedgerService(db_session).credit_summary(user.id)
    assert summary.hourly == plan.price
    assert summary.daily == plan.price * 24
    assert summary.monthly == plan.price * 24 * 30
    # 10 credit at 0.24 per day
    assert summary.days_remaining == "41.7"
    assert summary.status == "success"


def test_list_charges_by_month(db_session, user):
    today = utcnow().date()
    last_month = today.replace(day=1) - timedelta(days=1)
    db_session.add(Charge(user_id=user.id, name="old", key="vm-1", time=last_month, amount=1))
    db_session.add(Charge(user_id=user.id, name="new", key="vm-1", time=today, amount=2))
    db_session.commit()

    ledger = LedgerService(db_session)
    assert [c.name for c in ledger.list_charges(user.id, today.year, today.month)] == ["new"]
    assert [c.name for c in ledger.list_charges(user.id, last_month.year, last_month.month)] == ["old"]
