"""
PaymentSession: one attempt to pay via the mobile-money gateway.
transaction_reference is not unique per row: a retry after a failed attempt
reuses the reference in a new row.
"""
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Column, DateTime, Index, Integer, String, Text

from checkout.db.base import Base, JSONType


class PaymentSession(Base):
    __tablename__ = "payment_sessions"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    transaction_reference = Column(String(64), nullable=False, index=True)
    user_id = Column(String, nullable=False, index=True)
    amount = Column(Integer, nullable=False)                  # smallest currency unit
    currency = Column(String(3), nullable=False, default="TZS")
    provider = Column(String(50), nullable=False)             # "M-Pesa", "Tigo Pesa", ...
    channel = Column(String(20), nullable=True)               # resolved gateway channel
    phone_number = Column(String(32), nullable=False)         # as submitted
    order_data = Column(JSONType, nullable=False, default=dict)
    status = Column(String(20), nullable=False, default="pending", index=True)  # pending / processing / completed / failed
    failure_reason = Column(Text, nullable=True)
    gateway_transaction_id = Column(String(255), nullable=True, index=True)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
    completed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_payment_sessions_user_reference", "user_id", "transaction_reference"),
        Index("ix_payment_sessions_status_created", "status", "created_at"),
    )
