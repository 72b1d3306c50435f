"""
OrderService: order persistence for paid payment sessions.

One order per transaction_reference. The unique constraint is the backstop for
the existence check: a lost insert race returns the winner's order.
Items are written after the order row; if they fail the order row is deleted
so no partial order survives.
"""
import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from checkout.models.order import Order, OrderItem
from checkout.services.payments.errors import OrderCreationError
from checkout.utils.dates import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrderLine:
    product_id: str
    quantity: int
    price: int


class OrderService:
    def __init__(self, db: Session):
        self.db = db

    def get_by_reference(self, transaction_reference: str) -> Order | None:
        return (
            self.db.query(Order)
            .filter(Order.transaction_reference == transaction_reference)
            .one_or_none()
        )

    def create_paid_order(
        self,
        *,
        user_id: str,
        transaction_reference: str,
        payment_session_id: str | None,
        total_amount: int,
        currency: str,
        payment_method: str,
        lines: list[OrderLine],
        shipping_address: str | None = None,
        notes: str | None = None,
        paid_at: datetime | None = None,
    ) -> tuple[Order, bool]:
        """Returns (order, created). created=False when another writer already inserted it."""
        order = Order(
            user_id=user_id,
            transaction_reference=transaction_reference,
            payment_session_id=payment_session_id,
            total_amount=total_amount,
            currency=currency,
            payment_method=payment_method,
            shipping_address=shipping_address or None,
            notes=notes or None,
            status="processing",
            payment_status="paid",
            paid_at=paid_at or utcnow(),
        )
        try:
            self.db.add(order)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            existing = self.get_by_reference(transaction_reference)
            if existing is None:
                raise OrderCreationError(
                    "Order insert failed",
                    {"transaction_reference": transaction_reference},
                )
            logger.warning(
                "order_insert_race_lost",
                extra={"transaction_reference": transaction_reference, "order_id": existing.id},
            )
            return existing, False
        except SQLAlchemyError as e:
            self.db.rollback()
            raise OrderCreationError(
                f"Order insert failed: {e}",
                {"transaction_reference": transaction_reference},
            ) from e

        try:
            for line in lines:
                self.db.add(
                    OrderItem(
                        order_id=order.id,
                        product_id=line.product_id,
                        quantity=line.quantity,
                        price=line.price,
                    )
                )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            self._delete(order)
            raise OrderCreationError(
                f"Order items insert failed: {e}",
                {"transaction_reference": transaction_reference, "order_id": order.id},
            ) from e

        self.db.refresh(order)
        return order, True

    def _delete(self, order: Order) -> None:
        order_id = order.id
        try:
            self.db.query(OrderItem).filter(OrderItem.order_id == order_id).delete(synchronize_session=False)
            self.db.query(Order).filter(Order.id == order_id).delete(synchronize_session=False)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("order_compensation_failed", extra={"order_id": order_id})
            raise
        logger.warning("order_compensated", extra={"order_id": order_id})
