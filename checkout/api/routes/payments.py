"""
Mobile money payments: initiation, gateway webhook, status lookup.
"""
import json
import logging
from dataclasses import asdict

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from checkout.api.deps import (
    get_current_user_id,
    get_gateway_client,
    get_idempotency_store,
    get_notification_dispatcher,
)
from checkout.db.session import get_db
from checkout.schemas.payments import (
    InitiatePaymentError,
    InitiatePaymentRequest,
    InitiatePaymentResponse,
    PaymentStatusRequest,
    PaymentStatusResponse,
)
from checkout.services.idempotency import IdempotencyStore
from checkout.services.payments.errors import (
    AmountMismatch,
    GatewayRejected,
    InvalidOrderIntent,
    InvalidPhoneFormat,
    InvalidWebhookPayload,
    user_message_for,
)
from checkout.services.payments.reconciler import Dispatcher, WebhookReconciler
from checkout.services.payments.service import PaymentService
from checkout.services.payments.signature import verify_webhook_request
from checkout.utils.metrics import webhooks_received_total

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments/mobile", tags=["payments"])


@router.post(
    "/initiate",
    response_model=InitiatePaymentResponse,
    responses={400: {"model": InitiatePaymentError}, 502: {"model": InitiatePaymentError}},
)
def initiate_payment(
    body: InitiatePaymentRequest,
    user_id: str = Depends(get_current_user_id),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
    x_idempotency_key: str | None = Header(default=None, alias="X-Idempotency-Key"),
    db: Session = Depends(get_db),
    gateway=Depends(get_gateway_client),
    lock: IdempotencyStore = Depends(get_idempotency_store),
):
    svc = PaymentService(db, gateway=gateway, lock=lock)
    try:
        result = svc.initiate(
            user_id=user_id,
            request=body,
            idempotency_key=idempotency_key or x_idempotency_key,
        )
    except InvalidPhoneFormat as e:
        return JSONResponse(
            status_code=400,
            content=InitiatePaymentError(error=user_message_for(e), code=e.code, retryable=False).model_dump(),
        )
    except (AmountMismatch, InvalidOrderIntent) as e:
        return JSONResponse(
            status_code=400,
            content=InitiatePaymentError(error=e.message, code=e.code, retryable=False).model_dump(),
        )
    except GatewayRejected as e:
        return JSONResponse(
            status_code=502,
            content=InitiatePaymentError(
                error=user_message_for(e),
                code=e.code,
                retryable=True,
                transaction_reference=e.details.get("transaction_reference"),
                session_id=e.details.get("session_id"),
            ).model_dump(),
        )
    return InitiatePaymentResponse(**asdict(result))


@router.post("/webhook")
async def payment_webhook(
    request: Request,
    db: Session = Depends(get_db),
    dispatcher: Dispatcher = Depends(get_notification_dispatcher),
) -> dict:
    """Gateway callback. Always 200 once authenticated and parseable; failures stay operator-facing."""
    raw_body = await request.body()
    signature = request.headers.get("x-signature") or request.headers.get("x-webhook-signature")
    if not verify_webhook_request(raw_body, signature, request.headers.get("x-api-key")):
        webhooks_received_total.labels(outcome="unauthorized").inc()
        logger.warning("webhook_unauthorized", extra={"path": request.url.path})
        raise HTTPException(status_code=401, detail="Invalid webhook authentication")

    try:
        payload = json.loads(raw_body or b"{}")
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON body")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON body")

    reconciler = WebhookReconciler(db, dispatcher=dispatcher)
    try:
        result = await run_in_threadpool(reconciler.handle, payload)
    except InvalidWebhookPayload as e:
        raise HTTPException(status_code=400, detail=e.message)
    return {
        "received": True,
        "outcome": result.outcome.value,
        "transaction_reference": result.transaction_reference,
    }


@router.post("/status", response_model=PaymentStatusResponse)
def payment_status(
    body: PaymentStatusRequest,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    lock: IdempotencyStore = Depends(get_idempotency_store),
):
    status = PaymentService(db, lock=lock).status_for(user_id, body.reference.strip())
    if status is None:
        raise HTTPException(status_code=404, detail="Payment session not found")
    return PaymentStatusResponse(**status)
