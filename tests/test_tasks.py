"""Tests for the periodic Celery tasks."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import patch

from sqlalchemy import select

from lobster.celery_app import build_beat_schedule
from lobster.models.billing import RegionBandwidth
from lobster.models.image import ImageStatus
from lobster.models.vm import VmStatus
from lobster.services.common import utcnow
from lobster.tasks.billing import reset_bandwidth_month, run_cron
from lobster.tasks.images import refresh_pending_images
from lobster.tasks.vms import provision_vm, verify_vm_offline
from tests.conftest import REGION, make_image, make_user, make_vm


def test_beat_schedule_names_real_tasks():
    schedule = build_beat_schedule()
    assert {entry["task"] for entry in schedule.values()} == {
        "lobster.tasks.billing.run_cron",
        "lobster.tasks.images.refresh_pending_images",
        "lobster.tasks.billing.reset_bandwidth_month",
    }


def test_run_cron_bills_due_vms_and_users(db_session, registry, plan):
    due = make_user(db_session, "bob", credit=1, last_billing_notify=utcnow() - timedelta(hours=25))
    make_vm(db_session, due, plan, time_billed=utcnow() - timedelta(hours=2, minutes=5))
    make_user(db_session, "carol")

    summary = run_cron()

    assert summary == {"vms": 1, "users": 1, "storage": 0, "errors": 0}
    db_session.refresh(due)
    assert due.credit == 1_000_000 - 2 * plan.price
    assert due.billing_low_count == 1


def test_run_cron_reports_per_vm_failures(db_session, registry, user, plan, outbox):
    make_vm(db_session, user, plan, time_billed=utcnow() - timedelta(hours=2))
    with patch("lobster.services.billing_service.BillingService.vm_billing", side_effect=RuntimeError("db hiccup")):
        summary = run_cron()
    assert summary["errors"] == 1
    assert summary["vms"] == 0
    assert "Error: VM billing failed" in [message["subject"] for message in outbox]


def test_reset_bandwidth_month_task(db_session, registry, user):
    db_session.add(RegionBandwidth(user_id=user.id, region=REGION, bandwidth_used=123))
    db_session.commit()
    assert reset_bandwidth_month() == 1
    row = db_session.scalars(select(RegionBandwidth)).one()
    db_session.refresh(row)
    assert row.bandwidth_used == 0


def test_refresh_pending_images(db_session, registry, user):
    image = make_image(db_session, "snap", user_id=user.id, status=ImageStatus.pending)
    assert refresh_pending_images() == 1
    db_session.refresh(image)
    assert image.status == ImageStatus.active


def test_refresh_pending_images_keeps_failed_lookups_pending(db_session, registry, fake_driver, user, outbox):
    fake_driver.fail_on.add("image_info")
    image = make_image(db_session, "snap", user_id=user.id, status=ImageStatus.pending)
    assert refresh_pending_images() == 0
    db_session.refresh(image)
    assert image.status == ImageStatus.pending
    assert "Error: pending image check failed" in [message["subject"] for message in outbox]


def test_provision_vm_unknown_row(db_session, registry):
    assert provision_vm(999, "img") == {"success": False, "error": "Not found"}


def test_provision_vm_failure_marks_error(db_session, registry, fake_driver, user, plan, outbox):
    fake_driver.fail_on.add("create")
    vm = make_vm(db_session, user, plan, status=VmStatus.provisioning, identification="")
    result = provision_vm(vm.id, "img-debian")
    assert result["success"] is False
    db_session.refresh(vm)
    assert vm.status == VmStatus.error
    assert "VM web1 could not be created" in [message["subject"] for message in outbox]


def test_verify_vm_offline(db_session, registry, vm, outbox):
    vm.set_metadata("power", "Offline")
    db_session.commit()
    assert verify_vm_offline(vm.id) is True

    vm.set_metadata("power", "Online")
    db_session.commit()
    assert verify_vm_offline(vm.id) is False
    assert "Error: suspended VM did not go offline" in [message["subject"] for message in outbox]
