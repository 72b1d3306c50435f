"""
Request-scoped dependencies. Overridden in tests via app.dependency_overrides.
"""
import hmac

from fastapi import Header, HTTPException

from checkout.core.config import settings
from checkout.services.idempotency import IdempotencyStore
from checkout.services.payments.gateway import ZenoPayClient
from checkout.services.payments.reconciler import Dispatcher
from checkout.workers.tasks.notify_order import dispatch_order_notification


def get_current_user_id(x_user_id: str | None = Header(default=None)) -> str:
    """Authenticated user id, set by the upstream auth layer."""
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="unauthorized")
    return user_id


def require_admin(x_admin_key: str | None = Header(default=None)) -> None:
    expected = settings.admin_api_key
    if not expected:
        if settings.is_production:
            raise HTTPException(status_code=401, detail="unauthorized")
        return
    if not x_admin_key or not hmac.compare_digest(x_admin_key.encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(status_code=401, detail="unauthorized")


def get_gateway_client():
    client = ZenoPayClient()
    try:
        yield client
    finally:
        client.close()


def get_idempotency_store() -> IdempotencyStore:
    return IdempotencyStore()


def get_notification_dispatcher() -> Dispatcher:
    return dispatch_order_notification
