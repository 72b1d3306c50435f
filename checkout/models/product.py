from sqlalchemy import Boolean, Column, Integer, String

from checkout.db.base import Base


class Product(Base):
    """Read-only view of the catalog; owned by the catalog service."""

    __tablename__ = "products"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    price = Column(Integer, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
