"""
Celery task: notify the admin endpoint that an order was paid.
Published fire-and-forget by reconciliation; failures here never touch payment state.
"""
import logging

import httpx

from checkout.core.celery_app import celery_app
from checkout.core.config import settings
from checkout.db.session import SessionLocal
from checkout.models.order import Order
from checkout.services.notifications.client import NotificationClient

logger = logging.getLogger(__name__)


def order_payload(order: Order) -> dict:
    return {
        "order_id": order.id,
        "transaction_reference": order.transaction_reference,
        "user_id": order.user_id,
        "total_amount": order.total_amount,
        "currency": order.currency,
        "payment_method": order.payment_method,
        "items": [
            {"product_id": item.product_id, "quantity": item.quantity, "price": item.price}
            for item in order.items
        ],
    }


@celery_app.task(
    bind=True,
    name="checkout.workers.tasks.notify_order.notify_order_paid",
    autoretry_for=(httpx.HTTPError,),
    retry_backoff=True,
    max_retries=settings.celery_task_max_retries,
    default_retry_delay=settings.celery_task_retry_delay,
)
def notify_order_paid(self, order_id: str) -> dict:
    client = NotificationClient()
    if not client.enabled:
        logger.info("order_notification_skipped", extra={"order_id": order_id, "reason": "not_configured"})
        return {"ok": False, "reason": "not_configured"}

    db = SessionLocal()
    try:
        order = db.query(Order).filter(Order.id == order_id).one_or_none()
        if order is None:
            logger.warning("order_notification_order_missing", extra={"order_id": order_id})
            return {"ok": False, "reason": "order_missing"}
        client.send_order_paid(order_payload(order))
        logger.info(
            "order_notification_sent",
            extra={"order_id": order_id, "transaction_reference": order.transaction_reference},
        )
        return {"ok": True}
    finally:
        client.close()
        db.close()


def dispatch_order_notification(order_id: str) -> None:
    """Publish without waiting. Raises whatever the broker raises; callers decide."""
    notify_order_paid.apply_async(args=[order_id], retry=False)
