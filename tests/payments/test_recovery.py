"""Tests for the orphan recovery job: grace period, batch bounds, idempotence, gateway verification."""
from unittest.mock import patch

from checkout.models import Order, PaymentLog, PaymentSession
from checkout.services.payments.errors import GatewayError
from checkout.services.payments.reconciler import OrderReconciler
from checkout.services.payments.recovery import OrphanRecoveryJob, RecoveryReport
from checkout.workers.tasks.recover_orphans import LOCK_KEY, recover_orphan_payments, run_recovery_pass


def _ref(n):
    return f"TX{n:024d}"


def _events(db, event_type):
    return db.query(PaymentLog).filter(PaymentLog.event_type == event_type).all()


class TestOrphanRecoveryJob:
    def test_recovers_stale_processing_session(self, db, dispatcher, products, make_session):
        session = make_session(age_minutes=5)
        report = OrphanRecoveryJob(db, dispatcher=dispatcher).run()

        assert report.scanned == 1
        assert report.recovered == 1
        assert report.references == [session.transaction_reference]
        order = db.query(Order).one()
        assert order.transaction_reference == session.transaction_reference
        db.refresh(session)
        assert session.status == "completed"
        assert _events(db, "order_created")[0].data["source"] == "recovery"
        assert _events(db, "recovery_completed")[0].data["order_id"] == order.id
        assert dispatcher.calls == [order.id]

    def test_fresh_session_is_left_alone(self, db, dispatcher, products, make_session):
        session = make_session(age_minutes=1)
        report = OrphanRecoveryJob(db, dispatcher=dispatcher).run()
        assert report.scanned == 0
        db.refresh(session)
        assert session.status == "processing"
        assert db.query(Order).count() == 0

    def test_only_processing_sessions(self, db, dispatcher, products, make_session):
        make_session(status="pending", age_minutes=10, transaction_reference=_ref(1))
        make_session(status="failed", age_minutes=10, transaction_reference=_ref(2))
        make_session(status="completed", age_minutes=10, transaction_reference=_ref(3))
        assert OrphanRecoveryJob(db, dispatcher=dispatcher).run().scanned == 0

    def test_batch_is_bounded_newest_first(self, db, dispatcher, products, make_session):
        for n in range(7):
            make_session(transaction_reference=_ref(n), age_minutes=10 + n)
        report = OrphanRecoveryJob(db, dispatcher=dispatcher, batch_size=5).run()

        assert report.scanned == 5
        assert report.references == [_ref(n) for n in range(5)]
        assert db.query(Order).count() == 5

    def test_second_pass_creates_nothing(self, db, dispatcher, products, make_session):
        make_session(age_minutes=5)
        OrphanRecoveryJob(db, dispatcher=dispatcher).run()
        report = OrphanRecoveryJob(db, dispatcher=dispatcher).run()
        assert report.scanned == 0
        assert db.query(Order).count() == 1

    def test_existing_order_is_skipped_and_session_completed(self, db, dispatcher, products, make_session):
        session = make_session(age_minutes=5)
        db.add(
            Order(
                user_id="user-1",
                transaction_reference=session.transaction_reference,
                total_amount=35000,
                currency="TZS",
                payment_method="Mobile Money (M-Pesa)",
            )
        )
        db.commit()

        report = OrphanRecoveryJob(db, dispatcher=dispatcher).run()

        assert report.already_reconciled == 1
        assert report.recovered == 0
        assert db.query(Order).count() == 1
        db.refresh(session)
        assert session.status == "completed"
        assert _events(db, "recovery_skipped")[0].data["reason"] == "order_exists"
        assert dispatcher.calls == []

    def test_webhook_then_recovery_yields_one_order(self, db, dispatcher, products, make_session):
        session = make_session(age_minutes=5)
        OrderReconciler(db, dispatcher=dispatcher).create_order_from_session(session, "webhook")
        # session still visible to a pass that loaded it before completion
        session.status = "processing"
        db.commit()

        report = OrphanRecoveryJob(db, dispatcher=dispatcher).run()
        assert report.already_reconciled == 1
        assert db.query(Order).count() == 1

    def test_failure_is_isolated(self, db, dispatcher, products, make_session):
        broken = make_session(
            transaction_reference=_ref(1),
            age_minutes=5,
            order_data={"items": [{"product_id": "p-gone", "quantity": 1}]},
        )
        healthy = make_session(transaction_reference=_ref(2), age_minutes=6)

        report = OrphanRecoveryJob(db, dispatcher=dispatcher).run()

        assert report.failed == 1
        assert report.recovered == 1
        assert report.references == [healthy.transaction_reference]
        db.refresh(broken)
        assert broken.status == "failed"
        assert _events(db, "reconciliation_failed")[0].data["source"] == "recovery"


class TestGatewayVerification:
    def test_completed_at_gateway_is_recovered(self, db, gateway, dispatcher, products, make_session):
        session = make_session(age_minutes=5)
        gateway.status_response = {"result": "SUCCESS", "data": [{"payment_status": "COMPLETED"}]}
        report = OrphanRecoveryJob(db, gateway=gateway, dispatcher=dispatcher).run()
        assert gateway.status_calls == [session.transaction_reference]
        assert report.recovered == 1

    def test_pending_at_gateway_is_skipped(self, db, gateway, dispatcher, products, make_session):
        session = make_session(age_minutes=5)
        gateway.status_response = {"data": [{"payment_status": "PENDING"}]}
        report = OrphanRecoveryJob(db, gateway=gateway, dispatcher=dispatcher).run()
        assert report.skipped == 1
        db.refresh(session)
        assert session.status == "processing"
        assert db.query(Order).count() == 0

    def test_failed_at_gateway_marks_failed(self, db, gateway, dispatcher, products, make_session):
        session = make_session(age_minutes=5)
        gateway.status_response = {"data": [{"payment_status": "FAILED"}]}
        report = OrphanRecoveryJob(db, gateway=gateway, dispatcher=dispatcher).run()
        assert report.failed == 1
        db.refresh(session)
        assert session.status == "failed"

    def test_status_check_error_leaves_session(self, db, gateway, dispatcher, products, make_session):
        session = make_session(age_minutes=5)
        gateway.status_response = GatewayError("Gateway order_status failed (502)", status_code=502)
        report = OrphanRecoveryJob(db, gateway=gateway, dispatcher=dispatcher).run()
        assert report.skipped == 1
        db.refresh(session)
        assert session.status == "processing"
        assert db.query(PaymentSession).count() == 1


class TestRecoveryPass:
    def test_runs_under_lock_and_keeps_caller_session(self, db, lock, dispatcher, products, make_session):
        make_session(age_minutes=5)
        report = run_recovery_pass(db=db, lock=lock, dispatcher=dispatcher)

        assert report.recovered == 1
        assert lock.released == [LOCK_KEY]
        assert LOCK_KEY not in lock.held
        assert db.query(Order).count() == 1

    def test_held_lock_skips_pass(self, db, lock, dispatcher, products, make_session):
        session = make_session(age_minutes=5)
        lock.held.add(LOCK_KEY)

        assert run_recovery_pass(db=db, lock=lock, dispatcher=dispatcher) is None
        db.refresh(session)
        assert session.status == "processing"
        assert lock.released == []

    def test_beat_task_reports_outcome(self):
        with patch(
            "checkout.workers.tasks.recover_orphans.run_recovery_pass",
            return_value=RecoveryReport(scanned=2, recovered=1, skipped=1, references=["TX1"]),
        ):
            result = recover_orphan_payments()
        assert result["ok"] is True
        assert result["recovered"] == 1
        assert result["references"] == ["TX1"]

        with patch("checkout.workers.tasks.recover_orphans.run_recovery_pass", return_value=None):
            assert recover_orphan_payments() == {"ok": False, "reason": "already_running"}
