from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Column, DateTime, ForeignKey, String

from checkout.db.base import Base, JSONType


class PaymentLog(Base):
    """Append-only audit trail for a payment session. Diagnostics only."""

    __tablename__ = "payment_logs"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    session_id = Column(String, ForeignKey("payment_sessions.id"), nullable=False, index=True)
    user_id = Column(String, nullable=True)
    event_type = Column(String(64), nullable=False, index=True)
    data = Column(JSONType, nullable=False, default=dict)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
