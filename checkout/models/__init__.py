from checkout.models.order import Order, OrderItem
from checkout.models.payment_log import PaymentLog
from checkout.models.payment_session import PaymentSession
from checkout.models.product import Product

__all__ = ["Order", "OrderItem", "PaymentLog", "PaymentSession", "Product"]
