"""
Celery application: broker and result backend from settings.
Tasks are in checkout.workers.tasks (order notifications, orphan recovery).
"""
from celery import Celery
from celery.schedules import crontab
from celery.signals import setup_logging

from checkout.core.config import settings
from checkout.core.logging import configure_logging

celery_app = Celery(
    "checkout",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=[
        "checkout.workers.tasks.notify_order",
        "checkout.workers.tasks.recover_orphans",
    ],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_track_started=True,
    task_time_limit=600,
    result_expires=86400,
    beat_schedule={
        "recover-orphan-payments": {
            "task": "checkout.workers.tasks.recover_orphans.recover_orphan_payments",
            "schedule": crontab(minute="*/5"),
        },
    },
)

celery_app.conf.task_routes = {
    "checkout.workers.tasks.notify_order.notify_order_paid": {"queue": "notifications"},
}


@setup_logging.connect
def _configure_worker_logging(**kwargs):
    configure_logging()
