"""
PaymentService: mobile money initiation and status lookup.

Initiation:
- Validate phone / order intent / amount before anything is persisted
- Derive the deterministic transaction reference and resolve NEW / RETRY / REUSE
- Short Redis lock per reference collapses concurrent identical submissions
- Run the gateway attempt engine; session moves to processing or failed
Completion is never set here: only reconciliation (webhook or recovery) completes a session.
"""
import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy.orm import Session

from checkout.core.config import settings
from checkout.models.payment_session import PaymentSession
from checkout.schemas.payments import InitiatePaymentRequest
from checkout.services.idempotency import IdempotencyStore
from checkout.services.orders.service import OrderService
from checkout.services.payments.config import get_webhook_url
from checkout.services.payments.errors import AmountMismatch, GatewayRejected
from checkout.services.payments.gateway import AttemptEngine, BuyerInfo, GatewayClient, ZenoPayClient
from checkout.services.payments.idempotency import (
    IdempotencyResolver,
    ResolutionKind,
    choose_idempotency_key,
    compute_fingerprint,
    derive_reference,
)
from checkout.services.payments.phone import map_provider_to_channel, mask_phone, normalize_local
from checkout.services.payments.store import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_PROCESSING,
    PaymentSessionStore,
)
from checkout.utils.metrics import payment_initiations_total

logger = logging.getLogger(__name__)

STATUS_MESSAGES = {
    STATUS_PROCESSING: "Payment is being processed. Please check your phone for confirmation.",
    STATUS_PENDING: "Waiting for payment confirmation from mobile money provider.",
    STATUS_FAILED: "Payment failed. Please try again or use a different payment method.",
}


def status_message(status: str, has_order: bool = False) -> str:
    if status == STATUS_COMPLETED:
        if has_order:
            return "Payment completed and order created successfully"
        return "Payment completed, order is being processed"
    return STATUS_MESSAGES.get(status, "Payment status unknown")


def normalize_amount(amount: Decimal | int | float | str) -> int:
    """Smallest currency unit; TZS has no minor unit in practice."""
    return int(Decimal(str(amount)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass
class InitiationResult:
    transaction_reference: str
    status: str
    reused: bool = False
    session_id: str | None = None
    gateway_transaction_id: str | None = None
    message: str = ""


class PaymentService:
    def __init__(
        self,
        db: Session,
        gateway: GatewayClient | None = None,
        lock: IdempotencyStore | None = None,
        engine: AttemptEngine | None = None,
    ):
        self.db = db
        self.store = PaymentSessionStore(db)
        self.resolver = IdempotencyResolver(self.store)
        self.lock = lock or IdempotencyStore()
        self._gateway = gateway
        self._engine = engine

    @property
    def engine(self) -> AttemptEngine:
        if self._engine is None:
            self._engine = AttemptEngine(self._gateway or ZenoPayClient())
        return self._engine

    # ------------------------------------------------------------------
    # Initiation
    # ------------------------------------------------------------------

    def initiate(
        self,
        *,
        user_id: str,
        request: InitiatePaymentRequest,
        idempotency_key: str | None = None,
    ) -> InitiationResult:
        """
        Raises InvalidPhoneFormat / AmountMismatch before any write,
        GatewayRejected (details carry the session reference) after the session was marked failed.
        """
        amount = normalize_amount(request.amount)
        normalize_local(request.phone_number)
        intent = request.order_data
        priced_total = intent.priced_total()
        if priced_total is not None and priced_total != amount:
            payment_initiations_total.labels(outcome="invalid").inc()
            raise AmountMismatch(
                "Order total does not match payment amount",
                {"amount": amount, "items_total": priced_total},
            )

        channel = map_provider_to_channel(request.provider)
        explicit_key = idempotency_key or request.idempotency_key
        fingerprint = compute_fingerprint(
            user_id=user_id,
            amount=amount,
            currency=request.currency,
            channel=channel,
            provider=request.provider,
            phone_number=request.phone_number,
            items=intent.items,
        )
        reference = derive_reference(choose_idempotency_key(user_id, explicit_key, fingerprint))

        lock_key = f"initiate:{reference}"
        if not self.lock.check_and_set(lock_key):
            # Same logical request already in flight
            existing = self.store.latest_for_user(user_id, reference)
            logger.info(
                "payment_initiate_in_flight",
                extra={"user_id": user_id, "transaction_reference": reference},
            )
            payment_initiations_total.labels(outcome="reused").inc()
            if existing is None:
                return InitiationResult(reference, STATUS_PENDING, reused=True, message=status_message(STATUS_PENDING))
            return self._reused(existing)

        try:
            resolution = self.resolver.resolve(user_id, reference, explicit_key)
            if resolution.kind == ResolutionKind.REUSE:
                payment_initiations_total.labels(outcome="reused").inc()
                return self._reused(resolution.existing)

            session = self.store.create(
                transaction_reference=reference,
                user_id=user_id,
                amount=amount,
                currency=request.currency,
                provider=request.provider,
                channel=channel,
                phone_number=request.phone_number,
                order_data=intent.model_dump(mode="json"),
            )
            self.store.log_event(
                session,
                "payment_session_created",
                {
                    "amount": amount,
                    "currency": request.currency,
                    "provider": request.provider,
                    "channel": channel,
                    "phone": mask_phone(request.phone_number),
                    "retry_of": resolution.existing.id if resolution.kind == ResolutionKind.RETRY else None,
                },
            )
            return self._start(session, intent_email=intent.email, buyer_name=intent.buyer_name, channel=channel)
        finally:
            self.lock.release(lock_key)

    def _start(self, session: PaymentSession, intent_email: str | None, buyer_name: str, channel: str | None) -> InitiationResult:
        buyer = BuyerInfo(
            name=buyer_name,
            email=intent_email or settings.default_buyer_email,
            webhook_url=get_webhook_url(),
        )
        try:
            outcome = self.engine.run(session, buyer, channel)
        except GatewayRejected as e:
            self.store.mark_failed(session, e.message)
            self.store.log_event(
                session,
                "payment_initiation_failed",
                {"reason": e.message, "amount": session.amount, "attempts": e.attempts},
            )
            logger.warning(
                "payment_initiation_failed",
                extra={
                    "transaction_reference": session.transaction_reference,
                    "session_id": session.id,
                    "attempts": len(e.attempts),
                    "reason": e.message,
                },
            )
            payment_initiations_total.labels(outcome="rejected").inc()
            e.details.update({"transaction_reference": session.transaction_reference, "session_id": session.id})
            raise

        gateway_id = outcome.gateway_transaction_id
        self.store.mark_processing(session, gateway_id)
        self.store.log_event(
            session,
            "payment_initiated",
            {
                "gateway_transaction_id": gateway_id,
                "attempts": len(outcome.attempts),
                "accepted_variant": outcome.accepted.variant.describe(),
            },
        )
        logger.info(
            "payment_initiated",
            extra={
                "transaction_reference": session.transaction_reference,
                "session_id": session.id,
                "gateway_transaction_id": gateway_id,
                "attempts": len(outcome.attempts),
                "channel": outcome.accepted.variant.channel,
            },
        )
        payment_initiations_total.labels(outcome="processing").inc()
        return InitiationResult(
            transaction_reference=session.transaction_reference,
            status=STATUS_PROCESSING,
            reused=False,
            session_id=session.id,
            gateway_transaction_id=gateway_id,
            message=status_message(STATUS_PROCESSING),
        )

    def _reused(self, session: PaymentSession) -> InitiationResult:
        return InitiationResult(
            transaction_reference=session.transaction_reference,
            status=session.status,
            reused=True,
            session_id=session.id,
            gateway_transaction_id=session.gateway_transaction_id,
            message=status_message(session.status),
        )

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status_for(self, user_id: str, reference: str) -> dict | None:
        """Latest session for the reference owned by user_id, with its order if any."""
        session = self.store.latest_for_user(user_id, reference)
        if session is None:
            return None
        order = OrderService(self.db).get_by_reference(reference)
        return {
            "transaction_reference": session.transaction_reference,
            "status": session.status,
            "order_id": order.id if order else None,
            "order_status": order.status if order else None,
            "amount": session.amount,
            "currency": session.currency,
            "provider": session.provider,
            "message": status_message(session.status, has_order=order is not None),
        }
