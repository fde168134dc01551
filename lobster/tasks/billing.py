"""
Billing Tasks: the periodic billing pass and monthly bandwidth reset.
"""

import logging
import time
from datetime import timedelta

from celery import shared_task

from lobster.db import SessionLocal
from lobster.metrics import observe_job

logger = logging.getLogger(__name__)


@shared_task
def run_cron() -> dict:
    """Bill VMs and users that are due, then purge expired short-lived rows.

    Each VM and each user is billed in its own transaction so one failure
    does not hold back the rest of the pass.
    """
    from sqlalchemy import select

    from lobster.config import settings
    from lobster.models.user import User
    from lobster.models.vm import VirtualMachine
    from lobster.services import email as email_service
    from lobster.services.antiflood import AntifloodService
    from lobster.services.auth_service import AuthService
    from lobster.services.billing_service import BillingService
    from lobster.services.common import BILLING_VM_FREQUENCY, utcnow
    from lobster.services.session_service import SessionService

    start = time.monotonic()
    summary = {"vms": 0, "users": 0, "storage": 0, "errors": 0}
    with SessionLocal() as db:
        billing = BillingService(db)
        now = utcnow()

        vm_ids = db.scalars(
            select(VirtualMachine.id).where(VirtualMachine.time_billed < now - timedelta(hours=BILLING_VM_FREQUENCY))
        ).all()
        for vm_id in vm_ids:
            try:
                billing.vm_billing(vm_id)
                db.commit()
                summary["vms"] += 1
            except Exception as exc:
                db.rollback()
                summary["errors"] += 1
                email_service.report_error(exc, "VM billing failed", f"vm_id={vm_id}")

        notify_cutoff = now - timedelta(hours=settings.billing_notify_frequency_hours)
        user_ids = db.scalars(select(User.id).where(User.last_billing_notify < notify_cutoff)).all()
        for user_id in user_ids:
            try:
                billing.user_billing(user_id)
                db.commit()
                billing.dispatch_pending()
                summary["users"] += 1
            except Exception as exc:
                db.rollback()
                summary["errors"] += 1
                email_service.report_error(exc, "user billing failed", f"user_id={user_id}")

        try:
            summary["storage"] = billing.service_billing()
            db.commit()
        except Exception as exc:
            db.rollback()
            summary["errors"] += 1
            email_service.report_error(exc, "service billing failed")

        try:
            SessionService(db).cleanup()
            AntifloodService(db).cleanup()
            AuthService(db).cleanup_pwreset()
            db.commit()
        except Exception as exc:
            db.rollback()
            summary["errors"] += 1
            email_service.report_error(exc, "cleanup failed")

    status = "error" if summary["errors"] else "success"
    observe_job("run_cron", status, time.monotonic() - start)
    if summary["vms"] or summary["users"] or summary["errors"]:
        logger.info("Billing pass complete: %s", summary)
    return summary


@shared_task
def reset_bandwidth_month() -> int:
    """Start a new bandwidth month for every (user, region) pool."""
    from lobster.services.billing_service import BillingService

    start = time.monotonic()
    with SessionLocal() as db:
        count = BillingService(db).reset_bandwidth_month()
        db.commit()
    observe_job("reset_bandwidth_month", "success", time.monotonic() - start)
    logger.info("Reset bandwidth counters for %d regions", count)
    return count
