"""
OrphanRecoveryJob: sessions stuck in processing past the grace period with no order.

Replays the same order creation as the webhook path (source="recovery").
A failure on one session never stops the pass.
"""
import logging
import time
from dataclasses import dataclass, field

import httpx
import pybreaker
from sqlalchemy.orm import Session

from checkout.models.payment_session import PaymentSession
from checkout.services.orders.service import OrderService
from checkout.services.payments.config import get_recovery_batch_size, get_recovery_grace
from checkout.services.payments.errors import GatewayError
from checkout.services.payments.gateway import GatewayClient
from checkout.services.payments.reconciler import (
    FAILURE_STATUSES,
    SUCCESS_STATUSES,
    Dispatcher,
    OrderReconciler,
)
from checkout.services.payments.store import STATUS_COMPLETED, PaymentSessionStore
from checkout.utils.dates import minutes_since, utcnow
from checkout.utils.metrics import recovery_run_duration_seconds

logger = logging.getLogger(__name__)

SOURCE = "recovery"


@dataclass
class RecoveryReport:
    scanned: int = 0
    recovered: int = 0
    already_reconciled: int = 0
    skipped: int = 0
    failed: int = 0
    references: list[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "scanned": self.scanned,
            "recovered": self.recovered,
            "already_reconciled": self.already_reconciled,
            "skipped": self.skipped,
            "failed": self.failed,
            "references": list(self.references),
        }


class OrphanRecoveryJob:
    def __init__(
        self,
        db: Session,
        gateway: GatewayClient | None = None,
        dispatcher: Dispatcher | None = None,
        batch_size: int | None = None,
    ):
        """gateway: when set, each candidate is verified with the gateway's order status first."""
        self.db = db
        self.store = PaymentSessionStore(db)
        self.orders = OrderService(db)
        self.reconciler = OrderReconciler(db, dispatcher=dispatcher)
        self.gateway = gateway
        self.batch_size = batch_size or get_recovery_batch_size()

    def run(self) -> RecoveryReport:
        start = time.time()
        report = RecoveryReport()
        cutoff = utcnow() - get_recovery_grace()
        try:
            candidates = self.store.stale_processing(cutoff, self.batch_size)
            report.scanned = len(candidates)
            for session in candidates:
                try:
                    self._recover_one(session, report)
                except Exception:
                    self.db.rollback()
                    report.failed += 1
                    logger.exception(
                        "recovery_session_failed",
                        extra={"transaction_reference": session.transaction_reference, "session_id": session.id},
                    )
        finally:
            recovery_run_duration_seconds.observe(time.time() - start)
        logger.info("recovery_run_completed", extra=report.as_dict())
        return report

    def _recover_one(self, session: PaymentSession, report: RecoveryReport) -> None:
        reference = session.transaction_reference
        elapsed = round(minutes_since(session.created_at), 2)

        existing = self.orders.get_by_reference(reference)
        if existing is not None:
            if session.status != STATUS_COMPLETED:
                self.store.mark_completed(session)
            self.store.log_event(
                session,
                "recovery_skipped",
                {"order_id": existing.id, "reason": "order_exists", "elapsed_minutes": elapsed},
            )
            report.already_reconciled += 1
            return

        if self.gateway is not None and not self._confirmed_paid(session, report):
            return

        result = self.reconciler.reconcile(session, SOURCE, session.gateway_transaction_id)
        if result is None:
            report.failed += 1
            return
        if not result.created:
            report.already_reconciled += 1
            return
        self.store.log_event(
            session,
            "recovery_completed",
            {"order_id": result.order.id, "elapsed_minutes": elapsed},
        )
        report.recovered += 1
        report.references.append(reference)
        logger.info(
            "recovery_order_created",
            extra={"transaction_reference": reference, "order_id": result.order.id, "elapsed_minutes": elapsed},
        )

    def _confirmed_paid(self, session: PaymentSession, report: RecoveryReport) -> bool:
        """True to proceed. Failed at the gateway -> session failed; unknown -> left for a later pass."""
        try:
            resp = self.gateway.get_order_status(session.transaction_reference)
        except (GatewayError, httpx.HTTPError, pybreaker.CircuitBreakerError) as e:
            logger.warning(
                "recovery_status_check_failed",
                extra={"transaction_reference": session.transaction_reference, "error": str(e)},
            )
            report.skipped += 1
            return False

        status = _gateway_payment_status(resp)
        if status in SUCCESS_STATUSES:
            return True
        if status in FAILURE_STATUSES:
            self.store.mark_failed(session, f"Gateway reported {status}")
            self.store.log_event(session, "payment_failed", {"status": status, "source": SOURCE})
            report.failed += 1
            return False
        self.store.log_event(session, "recovery_skipped", {"reason": "gateway_not_completed", "status": status})
        report.skipped += 1
        return False


def _gateway_payment_status(resp: dict) -> str:
    data = resp.get("data")
    if isinstance(data, list) and data and isinstance(data[0], dict):
        entry = data[0]
    elif isinstance(data, dict):
        entry = data
    else:
        entry = resp
    return str(entry.get("payment_status") or entry.get("status") or resp.get("payment_status") or "").strip().upper()
