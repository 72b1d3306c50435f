"""
Gateway callback reconciliation and the order creation shared with orphan recovery.

The existence check in OrderReconciler.create_order_from_session is the only
synchronization between the webhook path and recovery passes; the unique
constraint on orders.transaction_reference backs it up.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

from pydantic import ValidationError
from sqlalchemy.orm import Session

from checkout.models.order import Order
from checkout.models.payment_session import PaymentSession
from checkout.schemas.payments import OrderIntent
from checkout.services.orders.service import OrderLine, OrderService
from checkout.services.payments.config import get_duplicate_window
from checkout.services.payments.errors import (
    InvalidOrderIntent,
    InvalidWebhookPayload,
    NotificationDispatchFailure,
    OrphanNotification,
    PaymentError,
    ProductResolutionFailure,
)
from checkout.services.payments.store import STATUS_COMPLETED, PaymentSessionStore
from checkout.services.products.service import ProductService
from checkout.utils.dates import minutes_since
from checkout.utils.metrics import (
    notification_dispatch_failures_total,
    orders_reconciled_total,
    reconciliation_failures_total,
    webhooks_received_total,
)
from checkout.workers.tasks.notify_order import dispatch_order_notification

logger = logging.getLogger(__name__)

SUCCESS_STATUSES = frozenset({"SUCCESS", "SUCCEEDED", "COMPLETED", "APPROVED", "PAID", "SETTLED", "SUCCESSFUL"})
PENDING_STATUSES = frozenset({"PENDING", "PROCESSING", "AWAITING", "QUEUED"})
FAILURE_STATUSES = frozenset({"FAILED", "DECLINED", "ERROR", "REJECTED", "TIMEOUT", "CANCELLED"})

Dispatcher = Callable[[str], None]


def _first(*values: Any) -> str | None:
    for value in values:
        if value not in (None, ""):
            return str(value)
    return None


@dataclass(frozen=True)
class WebhookNotification:
    transaction_reference: str | None
    gateway_transaction_id: str | None
    status: str
    raw: dict[str, Any]

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "WebhookNotification":
        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        reference = _first(
            payload.get("order_id"),
            data.get("order_id"),
            payload.get("transaction_reference"),
            payload.get("reference"),
        )
        gateway_id = _first(
            payload.get("transaction_id"),
            data.get("transaction_id"),
            payload.get("transid"),
            payload.get("gateway_transaction_id"),
        )
        status = _first(
            payload.get("payment_status"),
            payload.get("status"),
            data.get("payment_status"),
            data.get("status"),
            payload.get("event_type"),
        ) or ""
        # "payment.completed" style event types
        status = status.strip().upper().rsplit(".", 1)[-1]
        return cls(reference, gateway_id, status, payload)

    @property
    def is_success(self) -> bool:
        return self.status in SUCCESS_STATUSES

    @property
    def is_pending(self) -> bool:
        return self.status in PENDING_STATUSES

    @property
    def is_failure(self) -> bool:
        return self.status in FAILURE_STATUSES


class WebhookOutcome(str, Enum):
    RECONCILED = "reconciled"
    DUPLICATE = "duplicate"
    ORPHAN = "orphan"
    PENDING = "pending"
    FAILED = "failed"
    IGNORED = "ignored"
    ERROR = "error"


@dataclass
class WebhookResult:
    outcome: WebhookOutcome
    transaction_reference: str | None = None
    session_id: str | None = None
    order_id: str | None = None


@dataclass
class ReconcileResult:
    order: Order
    created: bool


class OrderReconciler:
    """Turns a paid PaymentSession into exactly one Order."""

    def __init__(self, db: Session, dispatcher: Dispatcher | None = None):
        self.db = db
        self.store = PaymentSessionStore(db)
        self.orders = OrderService(db)
        self.products = ProductService(db)
        self.dispatcher = dispatcher or dispatch_order_notification

    def create_order_from_session(
        self,
        session: PaymentSession,
        source: str,
        gateway_transaction_id: str | None = None,
    ) -> ReconcileResult:
        """Raises InvalidOrderIntent, ProductResolutionFailure or OrderCreationError."""
        reference = session.transaction_reference
        existing = self.orders.get_by_reference(reference)
        if existing is not None:
            return self._already_exists(session, existing, source, gateway_transaction_id)

        intent = self._parse_intent(session)
        lines = self._resolve_lines(intent)

        order, created = self.orders.create_paid_order(
            user_id=session.user_id,
            transaction_reference=reference,
            payment_session_id=session.id,
            total_amount=sum(line.price * line.quantity for line in lines),
            currency=session.currency,
            payment_method=f"Mobile Money ({session.provider})",
            lines=lines,
            shipping_address=intent.shipping_address,
            notes=intent.notes,
        )
        if not created:
            return self._already_exists(session, order, source, gateway_transaction_id)

        self.store.mark_completed(session, gateway_transaction_id)
        self.store.log_event(
            session,
            "order_created",
            {"order_id": order.id, "source": source, "total_amount": order.total_amount},
        )
        orders_reconciled_total.labels(source=source).inc()
        logger.info(
            "order_created",
            extra={
                "transaction_reference": reference,
                "order_id": order.id,
                "session_id": session.id,
                "source": source,
            },
        )
        self._notify(session, order)
        return ReconcileResult(order=order, created=True)

    def reconcile(
        self,
        session: PaymentSession,
        source: str,
        gateway_transaction_id: str | None = None,
    ) -> ReconcileResult | None:
        """create_order_from_session; on failure the session is marked failed and None is returned."""
        try:
            return self.create_order_from_session(session, source, gateway_transaction_id)
        except PaymentError as e:
            self.db.rollback()
            reconciliation_failures_total.labels(source=source, error_code=e.code).inc()
            logger.error(
                "reconciliation_failed",
                extra={
                    "transaction_reference": session.transaction_reference,
                    "session_id": session.id,
                    "source": source,
                    "reason": e.code,
                    "error": e.message,
                },
            )
            self.store.mark_failed(session, f"Reconciliation failed: {e.message}")
            self.store.log_event(
                session,
                "reconciliation_failed",
                {"source": source, "error_code": e.code, "error": e.message, **e.details},
            )
            return None

    # ------------------------------------------------------------------

    def _already_exists(
        self,
        session: PaymentSession,
        order: Order,
        source: str,
        gateway_transaction_id: str | None,
    ) -> ReconcileResult:
        if session.status != STATUS_COMPLETED:
            self.store.mark_completed(session, gateway_transaction_id)
        self.store.log_event(session, "order_already_exists", {"order_id": order.id, "source": source})
        logger.info(
            "order_already_exists",
            extra={"transaction_reference": session.transaction_reference, "order_id": order.id, "source": source},
        )
        return ReconcileResult(order=order, created=False)

    def _parse_intent(self, session: PaymentSession) -> OrderIntent:
        try:
            return OrderIntent.model_validate(session.order_data or {})
        except ValidationError as e:
            raise InvalidOrderIntent(
                "Stored order intent is invalid",
                {"errors": e.errors(include_url=False, include_context=False, include_input=False)},
            ) from e

    def _resolve_lines(self, intent: OrderIntent) -> list[OrderLine]:
        products = self.products.get_many([item.product_id for item in intent.items])
        missing = sorted({item.product_id for item in intent.items if item.product_id not in products})
        if missing:
            raise ProductResolutionFailure("Products no longer available", missing)
        return [
            OrderLine(
                product_id=item.product_id,
                quantity=item.quantity,
                price=item.price if item.price is not None else int(products[item.product_id].price),
            )
            for item in intent.items
        ]

    def _notify(self, session: PaymentSession, order: Order) -> None:
        try:
            self.dispatcher(order.id)
        except Exception as e:
            failure = NotificationDispatchFailure(f"Notification dispatch failed: {e}", {"order_id": order.id})
            notification_dispatch_failures_total.inc()
            logger.warning(
                "notification_dispatch_failed",
                extra={"order_id": order.id, "transaction_reference": session.transaction_reference, "error": str(e)},
            )
            self.store.log_event(session, "notification_dispatch_failed", {"error": failure.message, **failure.details})


class WebhookReconciler:
    def __init__(self, db: Session, dispatcher: Dispatcher | None = None):
        self.db = db
        self.store = PaymentSessionStore(db)
        self.orders = OrderService(db)
        self.reconciler = OrderReconciler(db, dispatcher=dispatcher)

    def handle(self, payload: dict[str, Any]) -> WebhookResult:
        note = WebhookNotification.from_payload(payload)
        if not note.transaction_reference and not note.gateway_transaction_id:
            webhooks_received_total.labels(outcome="invalid").inc()
            raise InvalidWebhookPayload("Missing transaction reference")

        session = self.store.find_for_notification(note.transaction_reference, note.gateway_transaction_id)
        if session is None:
            orphan = OrphanNotification("No payment session for notification")
            webhooks_received_total.labels(outcome=WebhookOutcome.ORPHAN.value).inc()
            logger.warning(
                "webhook_orphan_notification",
                extra={
                    "reason": orphan.code,
                    "error": orphan.message,
                    "transaction_reference": note.transaction_reference,
                    "gateway_transaction_id": note.gateway_transaction_id,
                    "status": note.status,
                },
            )
            return WebhookResult(WebhookOutcome.ORPHAN, note.transaction_reference)

        self.store.log_event(
            session,
            "webhook_received",
            {"status": note.status, "gateway_transaction_id": note.gateway_transaction_id},
        )

        if note.is_success:
            result = self._handle_success(session, note)
        elif note.is_pending:
            self.store.log_event(session, "payment_pending", {"status": note.status})
            result = WebhookResult(WebhookOutcome.PENDING, session.transaction_reference, session.id)
        elif note.is_failure:
            result = self._handle_failure(session, note)
        else:
            logger.info(
                "webhook_status_ignored",
                extra={"transaction_reference": session.transaction_reference, "status": note.status},
            )
            result = WebhookResult(WebhookOutcome.IGNORED, session.transaction_reference, session.id)

        webhooks_received_total.labels(outcome=result.outcome.value).inc()
        return result

    def _handle_success(self, session: PaymentSession, note: WebhookNotification) -> WebhookResult:
        existing = self.orders.get_by_reference(session.transaction_reference)
        if existing is not None or session.status == STATUS_COMPLETED:
            elapsed = minutes_since(session.created_at)
            window = get_duplicate_window().total_seconds() / 60.0
            if elapsed < window:
                self.store.log_event(
                    session,
                    "webhook_duplicate",
                    {"elapsed_minutes": round(elapsed, 2), "order_id": existing.id if existing else None},
                )
                logger.info(
                    "webhook_duplicate",
                    extra={"transaction_reference": session.transaction_reference, "elapsed_minutes": round(elapsed, 2)},
                )
                return WebhookResult(
                    WebhookOutcome.DUPLICATE,
                    session.transaction_reference,
                    session.id,
                    existing.id if existing else None,
                )
            self.store.log_event(session, "webhook_stale_reference_reuse", {"elapsed_minutes": round(elapsed, 2)})
            logger.info(
                "webhook_stale_reference_reuse",
                extra={"transaction_reference": session.transaction_reference, "elapsed_minutes": round(elapsed, 2)},
            )

        reconciled = self.reconciler.reconcile(session, "webhook", note.gateway_transaction_id)
        if reconciled is None:
            return WebhookResult(WebhookOutcome.ERROR, session.transaction_reference, session.id)
        return WebhookResult(
            WebhookOutcome.RECONCILED,
            session.transaction_reference,
            session.id,
            reconciled.order.id,
        )

    def _handle_failure(self, session: PaymentSession, note: WebhookNotification) -> WebhookResult:
        if session.status == STATUS_COMPLETED:
            logger.warning(
                "webhook_failure_after_completion",
                extra={"transaction_reference": session.transaction_reference, "status": note.status},
            )
            return WebhookResult(WebhookOutcome.IGNORED, session.transaction_reference, session.id)
        reason = str(note.raw.get("message") or f"Gateway reported {note.status}")
        self.store.mark_failed(session, reason)
        self.store.log_event(session, "payment_failed", {"status": note.status, "reason": reason})
        logger.info(
            "payment_failed",
            extra={"transaction_reference": session.transaction_reference, "status": note.status, "reason": reason},
        )
        return WebhookResult(WebhookOutcome.FAILED, session.transaction_reference, session.id)
