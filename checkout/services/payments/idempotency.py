"""
Idempotency for payment initiation.

The transaction reference is derived from an idempotency key (caller-supplied,
or a fingerprint of the logical request), so the same logical request maps to
the same reference without a mapping table.
"""
from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from enum import Enum

from checkout.models.payment_session import PaymentSession
from checkout.schemas.payments import OrderIntentItem
from checkout.services.payments.errors import InvalidPhoneFormat
from checkout.services.payments.phone import to_country_code
from checkout.services.payments.store import STATUS_FAILED, PaymentSessionStore

logger = logging.getLogger(__name__)

REFERENCE_PREFIX = "TX"
REFERENCE_HASH_CHARS = 24


def _sha256_upper(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest().upper()


def compute_fingerprint(
    *,
    user_id: str,
    amount: int,
    currency: str,
    channel: str | None,
    provider: str,
    phone_number: str,
    items: list[OrderIntentItem],
) -> str:
    """SHA-256 over the canonical JSON of the semantically relevant request fields."""
    try:
        phone = to_country_code(phone_number)
    except InvalidPhoneFormat:
        phone = str(phone_number or "")
    canonical_items = sorted(
        (
            {"product_id": item.product_id, "quantity": int(item.quantity)}
            for item in items
            if item.product_id and item.quantity > 0
        ),
        key=lambda it: (it["product_id"], it["quantity"]),
    )
    fingerprint = {
        "user_id": user_id,
        "amount": int(amount),
        "currency": currency,
        "channel": channel or provider,
        "phone": phone,
        "items": canonical_items,
    }
    return _sha256_upper(json.dumps(fingerprint, sort_keys=True, separators=(",", ":")))


def derive_reference(idempotency_key: str) -> str:
    """TX + 24 hex chars: alphanumeric, fixed length, deterministic."""
    return f"{REFERENCE_PREFIX}{_sha256_upper(idempotency_key)[:REFERENCE_HASH_CHARS]}"


def choose_idempotency_key(user_id: str, explicit_key: str | None, fingerprint: str) -> str:
    """Caller keys are scoped to the user; references are global."""
    explicit = (explicit_key or "").strip()
    if explicit:
        return f"{user_id}:{explicit}"
    return fingerprint


class ResolutionKind(str, Enum):
    NEW = "new"
    RETRY = "retry"
    REUSE = "reuse"


@dataclass(frozen=True)
class Resolution:
    kind: ResolutionKind
    transaction_reference: str
    existing: PaymentSession | None = None


class IdempotencyResolver:
    def __init__(self, store: PaymentSessionStore) -> None:
        self.store = store

    def resolve(self, user_id: str, transaction_reference: str, idempotency_key: str | None = None) -> Resolution:
        """
        No prior session -> NEW.
        Prior session failed -> RETRY under the same reference.
        Prior session pending/processing/completed -> REUSE, no gateway call.
        """
        existing = self.store.latest_for_user(user_id, transaction_reference)
        if existing is None:
            return Resolution(ResolutionKind.NEW, transaction_reference)

        if existing.status == STATUS_FAILED:
            logger.info(
                "payment_retry_after_failure",
                extra={
                    "session_id": existing.id,
                    "transaction_reference": transaction_reference,
                    "reason": existing.failure_reason,
                },
            )
            self.store.log_event(
                existing,
                "failed_session_retry_attempt",
                {"previous_failure": existing.failure_reason, "explicit_key": bool(idempotency_key)},
            )
            return Resolution(ResolutionKind.RETRY, transaction_reference, existing)

        logger.info(
            "payment_duplicate_initiate",
            extra={
                "session_id": existing.id,
                "transaction_reference": transaction_reference,
                "status": existing.status,
            },
        )
        self.store.log_event(
            existing,
            "duplicate_initiate_attempt",
            {"status": existing.status, "explicit_key": bool(idempotency_key)},
        )
        return Resolution(ResolutionKind.REUSE, transaction_reference, existing)
