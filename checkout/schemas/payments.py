"""
DTO for mobile-money payments: order intent (validated at initiation), request/response bodies.
"""
from __future__ import annotations

from decimal import Decimal

from pydantic import BaseModel, Field, field_validator


# ----- Order intent (persisted on the payment session, replayed at reconciliation) -----


class OrderIntentItem(BaseModel):
    product_id: str = Field(..., min_length=1)
    quantity: int = Field(..., gt=0)
    # Unit price snapshot in the smallest currency unit; None = price at reconciliation time
    price: int | None = Field(None, ge=0)

    @field_validator("product_id", mode="before")
    @classmethod
    def strip_product_id(cls, v: object) -> str:
        return str(v or "").strip()

    @field_validator("price", mode="before")
    @classmethod
    def round_price(cls, v: object) -> int | None:
        if v is None or v == "":
            return None
        return int(Decimal(str(v)).quantize(Decimal("1")))


class OrderIntent(BaseModel):
    items: list[OrderIntentItem] = Field(..., min_length=1)
    shipping_address: str = ""
    notes: str = ""
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None

    model_config = {"extra": "ignore"}

    @property
    def buyer_name(self) -> str:
        name = f"{self.first_name or ''} {self.last_name or ''}".strip()
        return name or "Customer"

    def priced_total(self) -> int | None:
        """Sum of price * quantity when every item carries a price, else None."""
        if any(item.price is None for item in self.items):
            return None
        return sum(item.price * item.quantity for item in self.items)


# ----- Initiation -----


class InitiatePaymentRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)
    currency: str = "TZS"
    provider: str = Field(..., min_length=1)
    phone_number: str = Field(..., min_length=1)
    order_data: OrderIntent
    idempotency_key: str | None = None

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v: str) -> str:
        return v.strip().upper()


class InitiatePaymentResponse(BaseModel):
    transaction_reference: str
    status: str
    reused: bool = False
    session_id: str | None = None
    gateway_transaction_id: str | None = None
    message: str = ""


class InitiatePaymentError(BaseModel):
    error: str
    code: str
    retryable: bool
    transaction_reference: str | None = None
    session_id: str | None = None


# ----- Status -----


class PaymentStatusRequest(BaseModel):
    reference: str = Field(..., min_length=1)


class PaymentStatusResponse(BaseModel):
    transaction_reference: str
    status: str
    order_id: str | None = None
    order_status: str | None = None
    amount: int
    currency: str
    provider: str
    message: str


# ----- Admin -----


class PaymentSessionOut(BaseModel):
    id: str
    transaction_reference: str
    user_id: str
    amount: int
    currency: str
    provider: str
    channel: str | None
    status: str
    failure_reason: str | None
    gateway_transaction_id: str | None
    created_at: str | None
    updated_at: str | None

    model_config = {"from_attributes": True}

    @field_validator("created_at", "updated_at", mode="before")
    @classmethod
    def iso(cls, v: object) -> str | None:
        if v is None:
            return None
        return v.isoformat() if hasattr(v, "isoformat") else str(v)


class RecoveryRunOut(BaseModel):
    scanned: int
    recovered: int
    already_reconciled: int
    skipped: int
    failed: int
    references: list[str] = []
