"""
Image Tasks: settle pending images (fetches and snapshots) against the provider.
"""

import logging
import time

from celery import shared_task

from lobster.db import SessionLocal
from lobster.metrics import observe_job

logger = logging.getLogger(__name__)


@shared_task
def refresh_pending_images() -> int:
    from lobster.drivers.registry import get_default_registry
    from lobster.services import email as email_service
    from lobster.services.image_service import ImageService

    start = time.monotonic()
    with SessionLocal() as db:
        try:
            settled = ImageService(db, get_default_registry()).refresh_pending()
            db.commit()
        except Exception as exc:
            db.rollback()
            email_service.report_error(exc, "pending image refresh failed")
            observe_job("refresh_pending_images", "error", time.monotonic() - start)
            return 0
    observe_job("refresh_pending_images", "success", time.monotonic() - start)
    if settled:
        logger.info("Settled %d pending images", settled)
    return settled
