"""Tests for PaymentService.initiate: idempotent reuse, retry after failure, validation, in-flight lock."""
from decimal import Decimal

import pytest

from checkout.models import Order, PaymentLog, PaymentSession
from checkout.schemas.payments import InitiatePaymentRequest
from checkout.services.payments.errors import AmountMismatch, GatewayRejected, InvalidPhoneFormat
from checkout.services.payments.reconciler import WebhookOutcome, WebhookReconciler
from checkout.services.payments.service import PaymentService, normalize_amount, status_message

REJECT = {"status": "error", "message": "Invalid phone number"}


def _request(**overrides):
    body = {
        "amount": "35000",
        "currency": "tzs",
        "provider": "M-Pesa",
        "phone_number": "0712345678",
        "order_data": {
            "items": [
                {"product_id": "p-shirt", "quantity": 2, "price": 15000},
                {"product_id": "p-cap", "quantity": 1, "price": 5000},
            ],
            "shipping_address": "Plot 12, Dar es Salaam",
            "first_name": "Asha",
            "last_name": "Mushi",
            "email": "asha@example.com",
        },
    }
    body.update(overrides)
    return InitiatePaymentRequest.model_validate(body)


def _events(db):
    return [log.event_type for log in db.query(PaymentLog).order_by(PaymentLog.created_at).all()]


class TestInitiate:
    def test_new_initiation_goes_processing(self, db, gateway, lock):
        result = PaymentService(db, gateway=gateway, lock=lock).initiate(user_id="user-1", request=_request())

        assert result.status == "processing"
        assert result.reused is False
        assert result.gateway_transaction_id == "ZP-1"
        assert result.transaction_reference.startswith("TX")
        session = db.query(PaymentSession).one()
        assert session.status == "processing"
        assert session.amount == 35000
        assert session.currency == "TZS"
        assert session.channel == "vodacom"
        assert session.order_data["items"][0]["product_id"] == "p-shirt"
        assert gateway.calls[0]["buyer_name"] == "Asha Mushi"
        assert gateway.calls[0]["webhook_url"] == "https://shop.example.com/payments/mobile/webhook"
        assert "payment_session_created" in _events(db)
        assert "payment_initiated" in _events(db)
        assert lock.released == [f"initiate:{result.transaction_reference}"]

    def test_identical_request_is_reused_without_gateway_call(self, db, gateway, lock):
        svc = PaymentService(db, gateway=gateway, lock=lock)
        first = svc.initiate(user_id="user-1", request=_request())
        second = svc.initiate(user_id="user-1", request=_request(phone_number="+255712345678"))

        assert second.reused is True
        assert second.transaction_reference == first.transaction_reference
        assert second.status == "processing"
        assert second.gateway_transaction_id == "ZP-1"
        assert len(gateway.calls) == 1
        assert db.query(PaymentSession).count() == 1
        assert "duplicate_initiate_attempt" in _events(db)

    def test_completed_session_is_reused(self, db, gateway, lock):
        svc = PaymentService(db, gateway=gateway, lock=lock)
        first = svc.initiate(user_id="user-1", request=_request())
        session = db.query(PaymentSession).one()
        session.status = "completed"
        db.commit()

        again = svc.initiate(user_id="user-1", request=_request())
        assert again.reused is True
        assert again.status == "completed"
        assert again.transaction_reference == first.transaction_reference
        assert len(gateway.calls) == 1

    def test_explicit_key_sets_reference(self, db, gateway, lock):
        svc = PaymentService(db, gateway=gateway, lock=lock)
        a = svc.initiate(user_id="user-1", request=_request(), idempotency_key="cart-42")
        b = svc.initiate(user_id="user-1", request=_request(idempotency_key="cart-42", amount="36000",
                                                             order_data={"items": [{"product_id": "p-shirt", "quantity": 1}]}))
        assert a.transaction_reference == b.transaction_reference
        assert b.reused is True

    def test_same_explicit_key_for_two_users_keeps_orders_apart(self, db, gateway, lock, products, dispatcher):
        svc = PaymentService(db, gateway=gateway, lock=lock)
        alice = svc.initiate(user_id="alice", request=_request(), idempotency_key="checkout-1")
        bob = svc.initiate(user_id="bob", request=_request(), idempotency_key="checkout-1")

        assert alice.transaction_reference != bob.transaction_reference
        assert alice.reused is False and bob.reused is False
        assert len(gateway.calls) == 2

        reconciler = WebhookReconciler(db, dispatcher=dispatcher)
        for ref in (alice.transaction_reference, bob.transaction_reference):
            result = reconciler.handle({"order_id": ref, "payment_status": "COMPLETED", "transaction_id": "GW-" + ref})
            assert result.outcome == WebhookOutcome.RECONCILED

        owners = {o.transaction_reference: o.user_id for o in db.query(Order).all()}
        assert owners == {alice.transaction_reference: "alice", bob.transaction_reference: "bob"}

    def test_rejection_marks_failed_and_carries_reference(self, db, gateway, lock):
        gateway.default = REJECT
        with pytest.raises(GatewayRejected) as exc:
            PaymentService(db, gateway=gateway, lock=lock).initiate(user_id="user-1", request=_request())

        session = db.query(PaymentSession).one()
        assert session.status == "failed"
        assert session.failure_reason == "Invalid phone number"
        assert exc.value.details["transaction_reference"] == session.transaction_reference
        assert exc.value.details["session_id"] == session.id
        assert len(gateway.calls) == 6
        failed_log = db.query(PaymentLog).filter(PaymentLog.event_type == "payment_initiation_failed").one()
        assert len(failed_log.data["attempts"]) == 6
        assert lock.held == set()

    def test_retry_after_failure_reuses_reference(self, db, gateway, lock):
        svc = PaymentService(db, gateway=gateway, lock=lock)
        gateway.responses = [REJECT] * 6
        with pytest.raises(GatewayRejected) as exc:
            svc.initiate(user_id="user-1", request=_request())
        failed_reference = exc.value.details["transaction_reference"]

        result = svc.initiate(user_id="user-1", request=_request())

        assert result.reused is False
        assert result.status == "processing"
        assert result.transaction_reference == failed_reference
        assert len(gateway.calls) == 7
        sessions = db.query(PaymentSession).all()
        assert len(sessions) == 2
        assert {s.transaction_reference for s in sessions} == {failed_reference}
        assert sorted(s.status for s in sessions) == ["failed", "processing"]
        assert "failed_session_retry_attempt" in _events(db)

    def test_invalid_phone_persists_nothing(self, db, gateway, lock):
        with pytest.raises(InvalidPhoneFormat):
            PaymentService(db, gateway=gateway, lock=lock).initiate(
                user_id="user-1", request=_request(phone_number="12345")
            )
        assert db.query(PaymentSession).count() == 0
        assert gateway.calls == []

    def test_amount_mismatch(self, db, gateway, lock):
        with pytest.raises(AmountMismatch):
            PaymentService(db, gateway=gateway, lock=lock).initiate(user_id="user-1", request=_request(amount="1000"))
        assert db.query(PaymentSession).count() == 0

    def test_unpriced_items_skip_amount_check(self, db, gateway, lock):
        request = _request(amount="999", order_data={"items": [{"product_id": "p-shirt", "quantity": 1}]})
        result = PaymentService(db, gateway=gateway, lock=lock).initiate(user_id="user-1", request=request)
        assert result.status == "processing"

    def test_in_flight_request_returns_pending_without_gateway_call(self, db, gateway, lock):
        svc = PaymentService(db, gateway=gateway, lock=lock)
        # Reference of the request that is "in flight" in another worker
        gateway_probe = PaymentService(db, gateway=gateway, lock=type(lock)())
        reference = gateway_probe.initiate(user_id="user-1", request=_request()).transaction_reference
        db.query(PaymentLog).delete()
        db.query(PaymentSession).delete()
        db.commit()
        gateway.calls.clear()

        lock.held.add(f"initiate:{reference}")
        result = svc.initiate(user_id="user-1", request=_request())

        assert result.reused is True
        assert result.status == "pending"
        assert result.transaction_reference == reference
        assert gateway.calls == []
        assert db.query(PaymentSession).count() == 0

    def test_no_channel_provider_tries_three_variants(self, db, gateway, lock):
        gateway.default = REJECT
        with pytest.raises(GatewayRejected):
            PaymentService(db, gateway=gateway, lock=lock).initiate(
                user_id="user-1", request=_request(provider="Unknown Wallet")
            )
        assert len(gateway.calls) == 3


def test_normalize_amount():
    assert normalize_amount(Decimal("35000")) == 35000
    assert normalize_amount(Decimal("999.5")) == 1000
    assert normalize_amount("12.4") == 12


def test_status_message():
    assert status_message("completed", has_order=True) == "Payment completed and order created successfully"
    assert status_message("completed") == "Payment completed, order is being processed"
    assert status_message("processing").startswith("Payment is being processed")
    assert status_message("weird") == "Payment status unknown"
