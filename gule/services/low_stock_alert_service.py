"""
Low stock monitoring.

Inventory operations publish ``inventory_updated`` events; this service turns
products at or below their threshold into alerts for sellers and admins.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from gule.config import Config
from gule.models import Product, ProductStatus
from gule.observability import increment_counter, record_event, set_gauge


def calculate_severity(stock: int, threshold: int) -> str:
    if stock == 0:
        return "critical"
    elif stock <= threshold // 2:
        return "warning"
    else:
        return "low"


class LowStockAlertService:
    def __init__(self, db_session: Session, threshold: Optional[int] = None) -> None:
        self.db = db_session
        self.default_threshold = threshold or Config.LOW_STOCK_THRESHOLD
        self.logger = logging.getLogger(__name__)

    def _threshold_for(self, product: Product) -> int:
        return product.low_stock_threshold if product.low_stock_threshold is not None else self.default_threshold

    def _alert_for(self, product: Product) -> Dict[str, Any]:
        threshold = self._threshold_for(product)
        return {
            "product_id": product.productID,
            "product_name": product.name,
            "seller_id": product.sellerID,
            "current_stock": product.stock,
            "threshold": threshold,
            "severity": calculate_severity(product.stock, threshold),
        }

    def get_low_stock_products(self, seller_id: Optional[int] = None) -> List[Dict[str, Any]]:
        """Products at or below their own threshold, emptiest first."""
        query = (
            self.db.query(Product)
            .filter(Product.stock <= Product.low_stock_threshold)
            .filter(Product.status.notin_([ProductStatus.REJECTED, ProductStatus.DELETED]))
        )
        if seller_id is not None:
            query = query.filter(Product.sellerID == seller_id)
        products = query.order_by(Product.stock.asc(), Product.productID.asc()).all()

        alerts = [self._alert_for(product) for product in products]
        self.logger.info("Retrieved %d low stock alerts", len(alerts), extra={"seller_id": seller_id})
        return alerts

    def get_alert_summary(self, seller_id: Optional[int] = None) -> Dict[str, Any]:
        alerts = self.get_low_stock_products(seller_id=seller_id)
        summary = {
            "total_alerts": len(alerts),
            "critical_count": sum(1 for a in alerts if a["severity"] == "critical"),
            "warning_count": sum(1 for a in alerts if a["severity"] == "warning"),
            "low_count": sum(1 for a in alerts if a["severity"] == "low"),
            "alerts": alerts,
        }
        if seller_id is None:
            set_gauge("low_stock_products", summary["total_alerts"])
        return summary

    def check_and_alert(self, product_id: int) -> Optional[Dict[str, Any]]:
        """
        Check one product after a stock change. Runs after commit, so lookup
        failures are logged rather than raised.
        """
        try:
            product = self.db.get(Product, product_id)
        except SQLAlchemyError:
            self.logger.exception("Error checking stock for product %d", product_id)
            return None
        if product is None or product.stock > self._threshold_for(product):
            return None

        alert = self._alert_for(product)
        alert["timestamp"] = datetime.now(timezone.utc).isoformat()
        increment_counter("low_stock_alerts_total", labels={"severity": alert["severity"]})
        record_event("low_stock_alert", alert)
        self.logger.warning(
            "Low stock alert: %s (ID: %d) has %d units (threshold: %d)",
            product.name,
            product_id,
            product.stock,
            alert["threshold"],
        )
        return alert


def publish_inventory_update_event(
    product_id: int,
    old_stock: int,
    new_stock: int,
    reason: str = "sale",
) -> None:
    """Record an inventory change. ``reason`` is sale, restock or adjustment."""
    record_event(
        "inventory_updated",
        {
            "product_id": product_id,
            "old_stock": old_stock,
            "new_stock": new_stock,
            "change": new_stock - old_stock,
            "reason": reason,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    )
    increment_counter(
        "inventory_updates_total",
        labels={"reason": reason, "direction": "decrease" if new_stock < old_stock else "increase"},
    )
