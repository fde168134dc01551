"""Tests for metered billing: VM intervals, bandwidth pools, storage and the credit sweep."""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy import func, select

from lobster.config import settings
from lobster.models.billing import Charge, RegionBandwidth
from lobster.models.user import User
from lobster.models.vm import SuspendState, VirtualMachine
from lobster.services import billing_service
from lobster.services.billing_service import BillingService
from lobster.services.common import BILLING_PRECISION, GIGABYTE, giga_to_bytes, month_bounds, utcnow
from tests.conftest import REGION, make_image, make_user, make_vm


def _charged(db, key: str) -> int:
    return db.scalar(select(func.coalesce(func.sum(Charge.amount), 0)).where(Charge.key == key))


def _subjects(outbox) -> list[str]:
    return [message["subject"] for message in outbox]


def _last_month():
    start, _ = month_bounds(utcnow())
    return start - timedelta(days=1)


# per-VM interval billing


def test_vm_billing_charges_elapsed_intervals(db_session, registry, user, plan):
    vm = make_vm(db_session, user, plan, time_billed=utcnow() - timedelta(hours=3, minutes=10))
    amount = BillingService(db_session, registry).vm_billing(vm.id)
    assert amount == 3 * plan.price
    assert _charged(db_session, f"vm-{vm.id}") == 3 * plan.price
    db_session.refresh(user)
    assert user.credit == 10 * BILLING_PRECISION - 3 * plan.price


def test_vm_billing_nothing_due(db_session, registry, vm):
    assert BillingService(db_session, registry).vm_billing(vm.id) == 0


def test_vm_billing_minimum_intervals_on_termination(db_session, registry, vm, plan, monkeypatch):
    monkeypatch.setattr(billing_service, "settings", settings.model_copy(update={"billing_vm_minimum": 5}))
    amount = BillingService(db_session, registry).vm_billing(vm.id, terminating=True)
    assert amount == 5 * plan.price


def test_vm_billing_records_bandwidth(db_session, registry, fake_driver, user, plan):
    fake_driver.bandwidth = giga_to_bytes(2)
    vm = make_vm(db_session, user, plan, time_billed=utcnow() - timedelta(hours=1, minutes=5))
    BillingService(db_session, registry).vm_billing(vm.id)
    row = db_session.scalars(select(RegionBandwidth).where(RegionBandwidth.user_id == user.id)).one()
    db_session.refresh(row)
    assert row.bandwidth_used == giga_to_bytes(2)


def test_vm_billing_survives_bandwidth_failure(db_session, registry, fake_driver, user, plan, outbox):
    fake_driver.bandwidth_accounting = MagicMock(side_effect=RuntimeError("meter down"))
    vm = make_vm(db_session, user, plan, time_billed=utcnow() - timedelta(hours=1, minutes=5))
    assert BillingService(db_session, registry).vm_billing(vm.id) == plan.price
    assert "Error: bandwidth accounting failed" in _subjects(outbox)


# bandwidth pools


def test_bandwidth_overage(db_session, registry, user, plan):
    """Overage is charged once per GB beyond the pooled allocation."""
    svc = BillingService(db_session, registry)
    fee = int(settings.bandwidth_overage_fee * BILLING_PRECISION)

    row = RegionBandwidth(user_id=user.id, region=REGION, bandwidth_used=giga_to_bytes(1000))
    db_session.add(row)
    db_session.commit()
    svc.user_billing(user.id)
    expected = fee * 1000
    assert _charged(db_session, f"bw-{REGION}") == expected

    # extra allocation absorbs new usage
    row.bandwidth_used += giga_to_bytes(500)
    row.bandwidth_additional += giga_to_bytes(500)
    db_session.commit()
    svc.user_billing(user.id)
    assert _charged(db_session, f"bw-{REGION}") == expected

    # a VM created mid-month brings roughly half its plan allocation
    start, end = month_bounds(utcnow())
    make_vm(db_session, user, plan, name="mid", created_time=start + (end - start) / 2)
    row.bandwidth_used += giga_to_bytes(500)
    db_session.commit()
    svc.user_billing(user.id)
    total = _charged(db_session, f"bw-{REGION}")
    assert 0.9 * expected <= total <= 1.1 * expected

    row.bandwidth_used += giga_to_bytes(500)
    db_session.commit()
    svc.user_billing(user.id)
    expected += fee * 500
    total = _charged(db_session, f"bw-{REGION}")
    assert 0.9 * expected <= total <= 1.1 * expected

    # a VM from last month brings its full allocation
    make_vm(db_session, user, plan, name="old", created_time=_last_month())
    row.bandwidth_used += giga_to_bytes(2000)
    db_session.commit()
    svc.user_billing(user.id)
    expected += fee * 1000
    total = _charged(db_session, f"bw-{REGION}")
    assert 0.9 * expected <= total <= 1.1 * expected


def test_no_overage_below_threshold(db_session, registry, user):
    db_session.add(RegionBandwidth(user_id=user.id, region=REGION, bandwidth_used=giga_to_bytes(150)))
    db_session.commit()
    BillingService(db_session, registry).user_billing(user.id)
    assert _charged(db_session, f"bw-{REGION}") == 0


def test_bandwidth_notifications_step_by_five_percent(db_session, registry, user, plan, outbox):
    svc = BillingService(db_session, registry)
    make_vm(db_session, user, plan, created_time=_last_month())
    row = RegionBandwidth(user_id=user.id, region=REGION, bandwidth_used=giga_to_bytes(900))
    db_session.add(row)
    db_session.commit()

    svc.user_billing(user.id)
    assert _subjects(outbox) == [f"Bandwidth usage at 90% in {REGION}"]
    db_session.refresh(row)
    assert row.bandwidth_notified_percent == 90

    row.bandwidth_used = giga_to_bytes(920)
    db_session.commit()
    svc.user_billing(user.id)
    assert len(outbox) == 1

    row.bandwidth_used = giga_to_bytes(950)
    db_session.commit()
    svc.user_billing(user.id)
    assert _subjects(outbox)[-1] == f"Bandwidth usage at 95% in {REGION}"

    row.bandwidth_used = giga_to_bytes(1000)
    db_session.commit()
    svc.user_billing(user.id)
    assert _subjects(outbox)[-1] == f"Bandwidth allocation exceeded in {REGION}"

    # no further notices once the pool is exhausted
    row.bandwidth_used = giga_to_bytes(1040)
    db_session.commit()
    svc.user_billing(user.id)
    assert len(outbox) == 3


def test_bandwidth_summary_prorates_new_vms(db_session, registry, user, plan):
    start, end = month_bounds(utcnow())
    make_vm(db_session, user, plan, name="old", created_time=_last_month())
    make_vm(db_session, user, plan, name="new", created_time=start + (end - start) / 2)
    summary = BillingService(db_session, registry).bandwidth_summary(user.id)[REGION]
    assert summary.allocated == pytest.approx(giga_to_bytes(1500), rel=0.001)


def test_update_additional_bandwidth_is_capped(db_session, registry, user, plan):
    vm = make_vm(db_session, user, plan, created_time=_last_month())
    svc = BillingService(db_session, registry)
    additional = svc.update_additional_bandwidth(vm)
    assert giga_to_bytes(15) <= additional <= giga_to_bytes(plan.bandwidth)
    row = db_session.scalars(select(RegionBandwidth).where(RegionBandwidth.user_id == user.id)).one()
    db_session.refresh(row)
    assert row.bandwidth_additional == additional


def test_reset_bandwidth_month(db_session, registry, user):
    row = RegionBandwidth(
        user_id=user.id,
        region=REGION,
        bandwidth_used=5,
        bandwidth_additional=6,
        bandwidth_billed=7,
        bandwidth_notified_percent=90,
    )
    db_session.add(row)
    db_session.commit()
    assert BillingService(db_session, registry).reset_bandwidth_month() == 1
    db_session.refresh(row)
    assert (row.bandwidth_used, row.bandwidth_additional, row.bandwidth_billed, row.bandwidth_notified_percent) == (
        0,
        0,
        0,
        0,
    )


# storage


def test_service_billing_charges_owned_image_storage(db_session, registry, user):
    make_image(db_session, "backup", user_id=user.id)
    user.time_billed = utcnow() - timedelta(hours=3, minutes=1)
    db_session.commit()

    assert BillingService(db_session, registry).service_billing() == 1
    hourly = GIGABYTE * int(settings.storage_fee * BILLING_PRECISION) // 1_000_000_000
    assert _charged(db_session, "storage") == hourly * 3


def test_service_billing_skips_users_without_images(db_session, registry, user):
    user.time_billed = utcnow() - timedelta(hours=2)
    db_session.commit()
    assert BillingService(db_session, registry).service_billing() == 0
    assert _charged(db_session, "storage") == 0


# credit sweep


def _sweep_user(db_session, credit: float, low_count: int = 0) -> User:
    return make_user(
        db_session,
        "bob",
        credit=credit,
        billing_low_count=low_count,
        last_billing_notify=utcnow() - timedelta(hours=25),
    )


def test_sweep_healthy_credit_resets_counter(db_session, registry, plan, outbox):
    user = _sweep_user(db_session, credit=10, low_count=3)
    make_vm(db_session, user, plan)
    BillingService(db_session, registry).user_billing(user.id)
    assert user.billing_low_count == 0
    assert outbox == []


def test_sweep_low_credit_warns(db_session, registry, plan, outbox):
    user = _sweep_user(db_session, credit=1)
    make_vm(db_session, user, plan)
    BillingService(db_session, registry).user_billing(user.id)
    assert _subjects(outbox) == ["Low account credit"]
    assert user.billing_low_count == 1


def test_sweep_negative_credit_warns_before_suspending(db_session, registry, plan, outbox):
    user = _sweep_user(db_session, credit=-1, low_count=2)
    vm = make_vm(db_session, user, plan)
    BillingService(db_session, registry).user_billing(user.id)
    assert _subjects(outbox) == ["Negative account credit"]
    assert vm.suspended == SuspendState.no


def test_sweep_suspends_after_repeated_warnings(db_session, registry, fake_driver, plan, outbox):
    user = _sweep_user(db_session, credit=-1, low_count=settings.billing_low_count)
    vm = make_vm(db_session, user, plan)
    svc = BillingService(db_session, registry)
    svc.user_billing(user.id)
    db_session.commit()
    svc.dispatch_pending()

    assert vm.suspended == SuspendState.auto
    assert "Virtual machines suspended" in _subjects(outbox)
    assert fake_driver.calls["stop"] == 1


def test_sweep_terminates_deeply_negative_accounts(db_session, registry, plan, outbox):
    user = _sweep_user(db_session, credit=-2, low_count=settings.billing_low_count)
    vm = make_vm(db_session, user, plan)
    vm_id = vm.id
    svc = BillingService(db_session, registry)
    svc.user_billing(user.id)
    db_session.commit()
    svc.dispatch_pending()

    assert db_session.get(VirtualMachine, vm_id) is None
    assert "Virtual machines terminated" in _subjects(outbox)


def test_sweep_suspends_instead_when_termination_disabled(db_session, registry, plan, monkeypatch):
    no_termination = settings.model_copy(update={"billing_termination_enabled": False})
    monkeypatch.setattr(billing_service, "settings", no_termination)
    user = _sweep_user(db_session, credit=-2, low_count=settings.billing_low_count)
    vm = make_vm(db_session, user, plan)
    BillingService(db_session, registry).user_billing(user.id)
    assert vm.suspended == SuspendState.auto


def test_sweep_skips_recently_notified_users(db_session, registry, plan, outbox):
    user = make_user(db_session, "carol", credit=-1)
    make_vm(db_session, user, plan)
    BillingService(db_session, registry).user_billing(user.id)
    assert outbox == []
