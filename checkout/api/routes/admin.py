"""
Admin API for payment sessions: listing, per-reference audit trail, on-demand orphan recovery.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from checkout.api.deps import get_idempotency_store, get_notification_dispatcher, require_admin
from checkout.db.session import get_db
from checkout.schemas.payments import PaymentSessionOut, RecoveryRunOut
from checkout.services.idempotency import IdempotencyStore
from checkout.services.orders.service import OrderService
from checkout.services.payments.reconciler import Dispatcher
from checkout.services.payments.store import PaymentSessionStore
from checkout.workers.tasks.recover_orphans import run_recovery_pass

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin/payments", tags=["admin"], dependencies=[Depends(require_admin)])


@router.get("/sessions")
def list_sessions(
    db: Session = Depends(get_db),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    status: str | None = None,
    user_id: str | None = None,
):
    total, rows = PaymentSessionStore(db).list_sessions(
        status=status,
        user_id=user_id,
        limit=page_size,
        offset=(page - 1) * page_size,
    )
    return {
        "total": total,
        "page": page,
        "page_size": page_size,
        "items": [PaymentSessionOut.model_validate(row).model_dump() for row in rows],
    }


@router.get("/sessions/{reference}")
def get_session(reference: str, db: Session = Depends(get_db)):
    store = PaymentSessionStore(db)
    session = store.latest_by_reference(reference)
    if session is None:
        raise HTTPException(status_code=404, detail="Payment session not found")
    order = OrderService(db).get_by_reference(reference)
    return {
        "session": PaymentSessionOut.model_validate(session).model_dump(),
        "order": (
            {
                "id": order.id,
                "status": order.status,
                "payment_status": order.payment_status,
                "total_amount": order.total_amount,
                "payment_method": order.payment_method,
            }
            if order
            else None
        ),
        "logs": [
            {
                "event_type": log.event_type,
                "data": log.data,
                "created_at": log.created_at.isoformat() if log.created_at else None,
            }
            for log in store.logs_for(session.id)
        ],
    }


@router.post("/recover", response_model=RecoveryRunOut)
def run_recovery(
    db: Session = Depends(get_db),
    lock: IdempotencyStore = Depends(get_idempotency_store),
    dispatcher: Dispatcher = Depends(get_notification_dispatcher),
):
    report = run_recovery_pass(db=db, lock=lock, dispatcher=dispatcher)
    if report is None:
        raise HTTPException(status_code=409, detail="Recovery pass already running")
    logger.info("recovery_triggered_by_admin", extra=report.as_dict())
    return RecoveryRunOut(**report.as_dict())
