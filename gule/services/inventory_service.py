from __future__ import annotations

import logging
from typing import List, Tuple

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from gule.errors import InsufficientStockError, NotFoundError, ValidationError
from gule.models import Product, ProductStatus
from gule.services.low_stock_alert_service import publish_inventory_update_event

# (product_id, old_stock, new_stock, reason)
StockChange = Tuple[int, int, int, str]


class InventoryService:
    """
    Stock mutations for checkout, restock and manual adjustment.

    Reservation is a single conditional UPDATE so concurrent checkouts can
    never drive stock below zero. Changes are queued in ``pending_changes``
    and published once the caller has committed.
    """

    def __init__(self, db_session: Session) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)
        self.pending_changes: List[StockChange] = []

    def _current_stock(self, product_id: int) -> int:
        stock = self.db.execute(
            select(Product.stock).where(Product.productID == product_id)
        ).scalar_one_or_none()
        if stock is None:
            raise NotFoundError("Product not found", fields={"product": str(product_id)})
        # Keep any instance already loaded in this session in step with the row
        cached = self.db.identity_map.get(self.db.identity_key(Product, product_id))
        if cached is not None:
            self.db.expire(cached, ["stock", "total_sales"])
        return stock

    def reserve_stock(self, product_id: int, quantity: int) -> int:
        """Decrement stock by ``quantity`` if available; returns the new level."""
        result = self.db.execute(
            update(Product)
            .where(
                Product.productID == product_id,
                Product.stock >= quantity,
                Product.status == ProductStatus.ACTIVE,
            )
            .values(stock=Product.stock - quantity, total_sales=Product.total_sales + quantity)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise InsufficientStockError(
                f"Insufficient stock for product {product_id}",
                product_id=product_id,
            )
        new_stock = self._current_stock(product_id)
        self.pending_changes.append((product_id, new_stock + quantity, new_stock, "sale"))
        return new_stock

    def restore_stock(self, product_id: int, quantity: int, reason: str = "restock") -> int:
        self.db.execute(
            update(Product)
            .where(Product.productID == product_id)
            .values(stock=Product.stock + quantity, total_sales=Product.total_sales - quantity)
            .execution_options(synchronize_session=False)
        )
        new_stock = self._current_stock(product_id)
        self.pending_changes.append((product_id, new_stock - quantity, new_stock, reason))
        return new_stock

    def adjust_stock(self, product_id: int, delta: int, reason: str = "adjustment") -> int:
        """Apply a relative change in the database; returns the new level."""
        result = self.db.execute(
            update(Product)
            .where(Product.productID == product_id, Product.stock + delta >= 0)
            .values(stock=Product.stock + delta)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            current = self._current_stock(product_id)
            raise ValidationError(
                f"Stock cannot go below zero (current stock is {current})",
                fields={"delta": f"must be >= {-current}"},
            )
        new_stock = self._current_stock(product_id)
        self.pending_changes.append((product_id, new_stock - delta, new_stock, reason))
        return new_stock

    def set_stock(self, product: Product, new_stock: int) -> int:
        if new_stock < 0:
            raise ValidationError("Stock cannot be negative", fields={"stock": "must be >= 0"})
        old_stock = product.stock or 0
        product.stock = new_stock
        self.pending_changes.append((product.productID, old_stock, new_stock, "adjustment"))
        return old_stock

    def publish_pending(self) -> List[int]:
        """Emit inventory events for committed changes; returns touched product ids."""
        touched: List[int] = []
        for product_id, old_stock, new_stock, reason in self.pending_changes:
            publish_inventory_update_event(product_id, old_stock, new_stock, reason)
            self.logger.info(
                "Stock changed for product %d: %d -> %d (%s)",
                product_id,
                old_stock,
                new_stock,
                reason,
            )
            if product_id not in touched:
                touched.append(product_id)
        self.pending_changes.clear()
        return touched

    def discard_pending(self) -> None:
        self.pending_changes.clear()
