from sqlalchemy.orm import Session

from checkout.models.product import Product


class ProductService:
    def __init__(self, db: Session):
        self.db = db

    def get_many(self, product_ids: list[str]) -> dict[str, Product]:
        """Active products by id; unknown or inactive ids are absent from the result."""
        if not product_ids:
            return {}
        rows = (
            self.db.query(Product)
            .filter(Product.id.in_(set(product_ids)), Product.is_active.is_(True))
            .all()
        )
        return {p.id: p for p in rows}
