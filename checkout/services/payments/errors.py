"""
Payment error taxonomy.

User-facing: InvalidPhoneFormat, InvalidOrderIntent, AmountMismatch, GatewayRejected.
Operator-facing (logs/audit only): OrphanNotification, ProductResolutionFailure,
OrderCreationError, NotificationDispatchFailure, InvalidWebhookPayload.
An idempotent reuse is not an error: it is reported as InitiationResult(reused=True).
"""
from typing import Any


class PaymentError(Exception):
    code = "PAYMENT_ERROR"
    retryable = False

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class InvalidPhoneFormat(PaymentError):
    code = "INVALID_PHONE_FORMAT"


class InvalidOrderIntent(PaymentError):
    code = "INVALID_ORDER_INTENT"


class AmountMismatch(PaymentError):
    code = "AMOUNT_MISMATCH"


class GatewayError(PaymentError):
    """Transport or HTTP-level failure of a single gateway call."""

    code = "GATEWAY_ERROR"
    retryable = True

    def __init__(self, message: str, status_code: int | None = None, details: dict[str, Any] | None = None):
        super().__init__(message, details)
        self.status_code = status_code


class GatewayRejected(PaymentError):
    """Every phone/channel variant was rejected by the gateway."""

    code = "GATEWAY_REJECTED"
    retryable = True

    def __init__(self, message: str, attempts: list[dict[str, Any]] | None = None):
        super().__init__(message, {"attempts": attempts or []})
        self.attempts = attempts or []


class OrphanNotification(PaymentError):
    code = "ORPHAN_NOTIFICATION"


class ProductResolutionFailure(PaymentError):
    code = "PRODUCT_RESOLUTION_FAILURE"

    def __init__(self, message: str, missing_product_ids: list[str]):
        super().__init__(message, {"missing_product_ids": missing_product_ids})
        self.missing_product_ids = missing_product_ids


class OrderCreationError(PaymentError):
    code = "ORDER_CREATION_ERROR"


class NotificationDispatchFailure(PaymentError):
    code = "NOTIFICATION_DISPATCH_FAILURE"


def user_message_for(exc: PaymentError) -> str:
    """Human-readable initiation failure: network, phone format, or service unavailable."""
    if isinstance(exc, InvalidPhoneFormat):
        return "Invalid phone number format. Please use the format 07XXXXXXXX."
    text = (exc.message or "").lower()
    if "api key" in text or "403" in text or "401" in text or "circuit" in text:
        return "Payment service temporarily unavailable. Please try again later or contact support."
    if "timeout" in text or "timed out" in text or "network" in text or "connect" in text:
        return "Network timeout. Please check your connection and try again."
    if "phone" in text or "msisdn" in text:
        return "Invalid phone number format. Please use the format 07XXXXXXXX."
    return "Payment initiation failed. Please try again."


class InvalidWebhookPayload(PaymentError):
    """Callback carries neither a transaction reference nor a gateway transaction id."""

    code = "INVALID_WEBHOOK_PAYLOAD"
