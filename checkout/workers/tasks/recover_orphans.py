"""
Celery beat task: create orders for payment sessions stuck in processing
(missed or dropped gateway callbacks).
"""
import logging

from sqlalchemy.orm import Session

from checkout.core.celery_app import celery_app
from checkout.core.config import settings
from checkout.db.session import SessionLocal
from checkout.services.idempotency import IdempotencyStore
from checkout.services.payments.gateway import ZenoPayClient
from checkout.services.payments.reconciler import Dispatcher
from checkout.services.payments.recovery import OrphanRecoveryJob, RecoveryReport

logger = logging.getLogger(__name__)

LOCK_KEY = "recover_orphan_payments"


def run_recovery_pass(
    db: Session | None = None,
    lock: IdempotencyStore | None = None,
    dispatcher: Dispatcher | None = None,
) -> RecoveryReport | None:
    """
    One recovery pass under a Redis lock. Shared by the beat task and the admin trigger.
    Returns None when another pass holds the lock. A db passed in stays open for the caller.
    """
    lock = lock or IdempotencyStore()
    if not lock.check_and_set(LOCK_KEY, ttl_seconds=settings.recovery_lock_ttl):
        logger.info("recovery_pass_skipped", extra={"reason": "already_running"})
        return None

    owns_db = db is None
    db = db or SessionLocal()
    gateway = ZenoPayClient() if settings.recovery_verify_with_gateway else None
    try:
        return OrphanRecoveryJob(db, gateway=gateway, dispatcher=dispatcher).run()
    except Exception:
        db.rollback()
        logger.exception("recovery_pass_failed")
        raise
    finally:
        if gateway is not None:
            gateway.close()
        if owns_db:
            db.close()
        lock.release(LOCK_KEY)


@celery_app.task(
    name="checkout.workers.tasks.recover_orphans.recover_orphan_payments",
    time_limit=300,
    soft_time_limit=270,
)
def recover_orphan_payments() -> dict:
    report = run_recovery_pass()
    if report is None:
        return {"ok": False, "reason": "already_running"}
    return {"ok": True, **report.as_dict()}
