from celery import Celery
from celery.schedules import crontab

from lobster.config import settings


def get_celery_config() -> dict:
    return {
        "broker_url": settings.broker_url,
        "result_backend": settings.celery_result_backend or settings.redis_url,
        "task_serializer": "json",
        "accept_content": ["json"],
        "result_serializer": "json",
        "timezone": "UTC",
        "enable_utc": True,
        "task_always_eager": settings.testing,
        "task_eager_propagates": False,
        "task_ignore_result": True,
        "worker_hijack_root_logger": False,
    }


def build_beat_schedule() -> dict:
    return {
        "run_cron": {
            "task": "lobster.tasks.billing.run_cron",
            "schedule": 60.0,
        },
        "refresh_pending_images": {
            "task": "lobster.tasks.images.refresh_pending_images",
            "schedule": 5.0,
        },
        "reset_bandwidth_month": {
            "task": "lobster.tasks.billing.reset_bandwidth_month",
            "schedule": crontab(minute=5, hour=0, day_of_month=1),
        },
    }


celery_app = Celery("lobster")
celery_app.conf.update(get_celery_config())
celery_app.conf.beat_schedule = build_beat_schedule()
celery_app.autodiscover_tasks(
    [
        "lobster.tasks.billing",
        "lobster.tasks.images",
        "lobster.tasks.vms",
    ]
)
