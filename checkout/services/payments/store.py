"""
PaymentSessionStore: persisted payment attempts and their append-only audit log.

Status writes commit immediately: every unit of work is request-scoped and the
only synchronization between webhook, recovery and initiation is the database.
Audit writes are best-effort and never abort the caller.
"""
import logging
from datetime import datetime
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from checkout.models.payment_log import PaymentLog
from checkout.models.payment_session import PaymentSession
from checkout.utils.dates import utcnow

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"


class PaymentSessionStore:
    def __init__(self, db: Session) -> None:
        self.db = db

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def latest_for_user(self, user_id: str, transaction_reference: str) -> PaymentSession | None:
        return (
            self.db.query(PaymentSession)
            .filter(
                PaymentSession.user_id == user_id,
                PaymentSession.transaction_reference == transaction_reference,
            )
            .order_by(PaymentSession.created_at.desc())
            .first()
        )

    def latest_by_reference(self, transaction_reference: str) -> PaymentSession | None:
        return (
            self.db.query(PaymentSession)
            .filter(PaymentSession.transaction_reference == transaction_reference)
            .order_by(PaymentSession.created_at.desc())
            .first()
        )

    def find_for_notification(
        self, transaction_reference: str | None, gateway_transaction_id: str | None
    ) -> PaymentSession | None:
        """Reference first, gateway transaction id as fallback."""
        if transaction_reference:
            session = self.latest_by_reference(transaction_reference)
            if session is not None:
                return session
        if gateway_transaction_id:
            return (
                self.db.query(PaymentSession)
                .filter(PaymentSession.gateway_transaction_id == gateway_transaction_id)
                .order_by(PaymentSession.created_at.desc())
                .first()
            )
        return None

    def stale_processing(self, older_than: datetime, limit: int) -> list[PaymentSession]:
        return (
            self.db.query(PaymentSession)
            .filter(
                PaymentSession.status == STATUS_PROCESSING,
                PaymentSession.created_at < older_than,
            )
            .order_by(PaymentSession.created_at.desc())
            .limit(limit)
            .all()
        )

    def list_sessions(
        self, status: str | None = None, user_id: str | None = None, limit: int = 50, offset: int = 0
    ) -> tuple[int, list[PaymentSession]]:
        q = self.db.query(PaymentSession)
        if status:
            q = q.filter(PaymentSession.status == status)
        if user_id:
            q = q.filter(PaymentSession.user_id == user_id)
        total = q.count()
        rows = q.order_by(PaymentSession.created_at.desc()).offset(offset).limit(limit).all()
        return total, rows

    def logs_for(self, session_id: str) -> list[PaymentLog]:
        return (
            self.db.query(PaymentLog)
            .filter(PaymentLog.session_id == session_id)
            .order_by(PaymentLog.created_at)
            .all()
        )

    # ------------------------------------------------------------------
    # Lifecycle writes
    # ------------------------------------------------------------------

    def create(
        self,
        *,
        transaction_reference: str,
        user_id: str,
        amount: int,
        currency: str,
        provider: str,
        channel: str | None,
        phone_number: str,
        order_data: dict[str, Any],
    ) -> PaymentSession:
        session = PaymentSession(
            transaction_reference=transaction_reference,
            user_id=user_id,
            amount=amount,
            currency=currency,
            provider=provider,
            channel=channel,
            phone_number=phone_number,
            order_data=order_data,
            status=STATUS_PENDING,
        )
        self.db.add(session)
        self.db.commit()
        self.db.refresh(session)
        return session

    def mark_processing(self, session: PaymentSession, gateway_transaction_id: str | None) -> PaymentSession:
        session.status = STATUS_PROCESSING
        session.gateway_transaction_id = gateway_transaction_id
        session.failure_reason = None
        session.updated_at = utcnow()
        self.db.add(session)
        self.db.commit()
        return session

    def mark_completed(self, session: PaymentSession, gateway_transaction_id: str | None = None) -> PaymentSession:
        now = utcnow()
        session.status = STATUS_COMPLETED
        if gateway_transaction_id:
            session.gateway_transaction_id = gateway_transaction_id
        session.failure_reason = None
        session.completed_at = now
        session.updated_at = now
        self.db.add(session)
        self.db.commit()
        return session

    def mark_failed(self, session: PaymentSession, reason: str) -> PaymentSession:
        session.status = STATUS_FAILED
        session.failure_reason = (reason or "unknown")[:2000]
        session.updated_at = utcnow()
        self.db.add(session)
        self.db.commit()
        return session

    # ------------------------------------------------------------------
    # Audit log
    # ------------------------------------------------------------------

    def log_event(
        self,
        session: PaymentSession,
        event_type: str,
        data: dict[str, Any] | None = None,
    ) -> PaymentLog | None:
        """Append an audit entry. Failures are logged, never raised."""
        entry = PaymentLog(
            session_id=session.id,
            user_id=session.user_id,
            event_type=event_type,
            data={"transaction_reference": session.transaction_reference, **(data or {})},
        )
        try:
            self.db.add(entry)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception(
                "payment_log_write_failed",
                extra={"session_id": session.id, "reason": event_type},
            )
            return None
        return entry
