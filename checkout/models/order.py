"""
Order / OrderItem: created once per completed payment session.
transaction_reference is unique: backstop for the query-before-insert check.
"""
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from checkout.db.base import Base


class Order(Base):
    __tablename__ = "orders"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    user_id = Column(String, nullable=False, index=True)
    transaction_reference = Column(String(64), nullable=False, unique=True)
    payment_session_id = Column(String, ForeignKey("payment_sessions.id"), nullable=True)
    total_amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="TZS")
    payment_method = Column(String(100), nullable=False)       # "Mobile Money (M-Pesa)"
    shipping_address = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default="processing")
    payment_status = Column(String(20), nullable=False, default="paid")
    paid_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    order_id = Column(String, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False)
    price = Column(Integer, nullable=False)  # unit price snapshot

    order = relationship("Order", back_populates="items")
