from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from gule.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from gule.identity import Identity
from gule.models import (
    TERMINAL_ORDER_STATUSES,
    Order,
    OrderItem,
    Product,
    ProductStatus,
    Seller,
    SellerStatus,
    utcnow,
)
from gule.observability import increment_counter, record_event
from gule.services.audit import AuditLogger, get_audit_logger
from gule.services.inventory_service import InventoryService
from gule.services.low_stock_alert_service import LowStockAlertService
from gule.validation import MAX_ID, paginate, require_decimal, require_int, require_text

# Editing any of these on a live listing sends it back for approval
REAPPROVAL_FIELDS = ("name", "price", "description")
# Largest price a Numeric(10, 2) column holds
MAX_PRICE = Decimal("99999999.99")


class ProductService:
    """Catalog management: listing lifecycle, moderation, and stock."""

    def __init__(
        self,
        db_session: Session,
        audit_logger: Optional[AuditLogger] = None,
        inventory_service: Optional[InventoryService] = None,
        low_stock_service: Optional[LowStockAlertService] = None,
    ) -> None:
        self.db = db_session
        self.audit = audit_logger or get_audit_logger()
        self.inventory_service = inventory_service or InventoryService(db_session)
        self.low_stock_service = low_stock_service or LowStockAlertService(db_session)
        self.logger = logging.getLogger(__name__)

    def get_product(self, product_id: int, identity: Optional[Identity] = None) -> Product:
        """Non-active products are only visible to their seller and admins."""
        product = self.db.get(Product, product_id)
        if product is None or product.status == ProductStatus.DELETED:
            raise NotFoundError("Product not found")
        if product.status != ProductStatus.ACTIVE:
            visible = identity is not None and (
                identity.is_admin or (identity.is_seller and identity.id == product.sellerID)
            )
            if not visible:
                raise NotFoundError("Product not found")
        return product

    def _owned_product(self, product_id: int, identity: Identity) -> Product:
        product = self.db.get(Product, product_id)
        if product is None or product.status == ProductStatus.DELETED:
            raise NotFoundError("Product not found")
        if not (identity.is_admin or (identity.is_seller and product.sellerID == identity.id)):
            raise AuthorizationError("You can only manage your own products")
        return product

    def create_product(self, seller_id: int, payload: Dict[str, Any]) -> Product:
        seller = self.db.get(Seller, seller_id)
        if seller is None:
            raise NotFoundError("Seller account not found")
        if seller.status != SellerStatus.ACTIVE:
            raise AuthorizationError("Only active sellers can list products")

        product = Product(
            sellerID=seller_id,
            name=require_text(payload.get("name"), "name", max_length=200),
            description=require_text(payload.get("description"), "description", max_length=5000, required=False) or "",
            category=(require_text(payload.get("category"), "category", max_length=100, required=False) or "general").lower(),
            price=require_decimal(payload.get("price"), "price", maximum=MAX_PRICE),
            stock=require_int(payload.get("stock", 0), "stock", minimum=0, maximum=MAX_ID),
            low_stock_threshold=require_int(payload.get("lowStockThreshold", 5), "lowStockThreshold", minimum=0, maximum=MAX_ID),
            status=ProductStatus.PENDING,
        )
        self.db.add(product)
        self.db.commit()

        increment_counter("products_created_total")
        self.audit.log(
            "CREATE_PRODUCT",
            "product",
            product.productID,
            actor=Identity(seller_id, seller.user_type, seller.role),
            details={"name": product.name},
        )
        self.logger.info("Product %s submitted for approval by seller %s", product.productID, seller_id)
        return product

    def update_product(self, product_id: int, identity: Identity, payload: Dict[str, Any]) -> Product:
        product = self._owned_product(product_id, identity)
        if product.status == ProductStatus.SUSPENDED and not identity.is_admin:
            raise AuthorizationError("Suspended products cannot be edited")

        changed: List[str] = []
        if "name" in payload:
            product.name = require_text(payload["name"], "name", max_length=200)
            changed.append("name")
        if "description" in payload:
            product.description = require_text(payload["description"], "description", max_length=5000, required=False) or ""
            changed.append("description")
        if "price" in payload:
            product.price = require_decimal(payload["price"], "price", maximum=MAX_PRICE)
            changed.append("price")
        if "category" in payload:
            product.category = (require_text(payload["category"], "category", max_length=100) or "general").lower()
            changed.append("category")
        if "lowStockThreshold" in payload:
            product.low_stock_threshold = require_int(payload["lowStockThreshold"], "lowStockThreshold", minimum=0, maximum=MAX_ID)
            changed.append("lowStockThreshold")
        if not changed:
            raise ValidationError("Nothing to update")

        requeued = (
            product.status == ProductStatus.ACTIVE
            and not identity.is_admin
            and any(field in REAPPROVAL_FIELDS for field in changed)
        )
        if requeued:
            product.status = ProductStatus.PENDING
        self.db.commit()

        self.audit.log(
            "UPDATE_PRODUCT",
            "product",
            product.productID,
            actor=identity,
            details={"fields": changed, "requeued": requeued},
        )
        return product

    def review_product(self, product_id: int, identity: Identity, approve: bool, notes: Optional[str] = None) -> Product:
        """Admin moderation: pending -> active | rejected."""
        if not identity.is_admin:
            raise AuthorizationError("Admin access required")
        product = self.db.get(Product, product_id)
        if product is None:
            raise NotFoundError("Product not found")
        if product.status != ProductStatus.PENDING:
            raise ValidationError(f"Only pending products can be reviewed (product is {ProductStatus(product.status).value})")

        product.status = ProductStatus.ACTIVE if approve else ProductStatus.REJECTED
        product.review_notes = require_text(notes, "notes", max_length=1000, required=False)
        product.reviewed_at = utcnow()
        self.db.commit()

        action = "APPROVE_PRODUCT" if approve else "REJECT_PRODUCT"
        increment_counter("product_reviews_total", labels={"outcome": "approved" if approve else "rejected"})
        self.audit.log(action, "product", product.productID, actor=identity, details={"notes": product.review_notes})
        return product

    def adjust_stock(
        self,
        product_id: int,
        identity: Identity,
        stock: Any = None,
        delta: Any = None,
        reason: Optional[str] = None,
    ) -> Product:
        if (stock is None) == (delta is None):
            raise ValidationError("Provide exactly one of stock or delta", fields={"stock": "or delta"})
        reason = require_text(reason, "reason", max_length=500, required=False)
        product = self._owned_product(product_id, identity)
        try:
            if stock is not None:
                target = require_int(stock, "stock", minimum=0, maximum=MAX_ID)
                old_stock = self.inventory_service.set_stock(product, target)
            else:
                change = require_int(delta, "delta", minimum=-MAX_ID, maximum=MAX_ID)
                target = self.inventory_service.adjust_stock(product.productID, change)
                old_stock = target - change
            self.db.commit()
        except Exception:
            self.db.rollback()
            self.inventory_service.discard_pending()
            raise

        for touched in self.inventory_service.publish_pending():
            self.low_stock_service.check_and_alert(touched)
        self.audit.log(
            "ADJUST_STOCK",
            "product",
            product.productID,
            actor=identity,
            details={"old_stock": old_stock, "new_stock": target, "reason": reason},
        )
        return product

    def delete_product(self, product_id: int, identity: Identity) -> Product:
        """Soft delete. Order lines keep their product reference."""
        product = self._owned_product(product_id, identity)
        open_orders = (
            self.db.query(func.count(func.distinct(Order.orderID)))
            .select_from(OrderItem)
            .join(Order, Order.orderID == OrderItem.orderID)
            .filter(OrderItem.productID == product.productID)
            .filter(Order.status.notin_(list(TERMINAL_ORDER_STATUSES)))
            .scalar()
        )
        if open_orders:
            raise ConflictError(
                f"Product has {open_orders} open order(s) and cannot be deleted",
                fields={"product": str(product.productID)},
            )

        previous = ProductStatus(product.status).value
        product.status = ProductStatus.DELETED
        product.deleted_at = utcnow()
        self.db.commit()

        increment_counter("products_deleted_total")
        self.audit.log(
            "DELETE_PRODUCT",
            "product",
            product.productID,
            actor=identity,
            details={"name": product.name, "previous_status": previous, "price": str(product.price)},
        )
        self.logger.info("Product %s deleted by %s", product.productID, identity.reference)
        return product

    # ------------------------------------------------------------------
    # Seller suspension
    # ------------------------------------------------------------------
    def suspend_seller(self, seller_id: int, identity: Identity, reason: Optional[str] = None) -> Seller:
        if not identity.is_admin:
            raise AuthorizationError("Admin access required")
        seller = self.db.get(Seller, seller_id)
        if seller is None:
            raise NotFoundError("Seller not found")
        if seller.status == SellerStatus.SUSPENDED:
            raise ValidationError("Seller is already suspended")

        seller.status = SellerStatus.SUSPENDED
        seller.suspension_reason = require_text(reason, "reason", max_length=1000, required=False)
        seller.suspended_at = utcnow()
        frozen = 0
        for product in seller.products:
            if product.status in (ProductStatus.ACTIVE, ProductStatus.PENDING):
                product.suspended_from_status = ProductStatus(product.status).value
                product.status = ProductStatus.SUSPENDED
                frozen += 1
        self.db.commit()

        record_event("seller_suspended", {"seller_id": seller_id, "products": frozen})
        self.audit.log(
            "SUSPEND_SELLER",
            "seller",
            seller_id,
            actor=identity,
            details={"reason": seller.suspension_reason, "products_suspended": frozen},
        )
        self.logger.warning("Seller %s suspended; %d products frozen", seller_id, frozen)
        return seller

    def reinstate_seller(self, seller_id: int, identity: Identity) -> Seller:
        if not identity.is_admin:
            raise AuthorizationError("Admin access required")
        seller = self.db.get(Seller, seller_id)
        if seller is None:
            raise NotFoundError("Seller not found")
        if seller.status != SellerStatus.SUSPENDED:
            raise ValidationError("Seller is not suspended")

        seller.status = SellerStatus.ACTIVE
        seller.suspension_reason = None
        seller.suspended_at = None
        restored = 0
        for product in seller.products:
            if product.status == ProductStatus.SUSPENDED and product.suspended_from_status:
                product.status = ProductStatus(product.suspended_from_status)
                product.suspended_from_status = None
                restored += 1
        self.db.commit()

        self.audit.log(
            "REINSTATE_SELLER",
            "seller",
            seller_id,
            actor=identity,
            details={"products_restored": restored},
        )
        return seller

    # ------------------------------------------------------------------
    # Listings
    # ------------------------------------------------------------------
    def list_products(
        self,
        page: int,
        limit: int,
        category: Optional[str] = None,
        search: Optional[str] = None,
        seller_id: Optional[int] = None,
        identity: Optional[Identity] = None,
    ) -> Tuple[List[Product], Dict[str, int]]:
        query = self.db.query(Product).filter(Product.status != ProductStatus.DELETED)
        own_listing = identity is not None and identity.is_seller and seller_id == identity.id
        if not (own_listing or (identity is not None and identity.is_admin)):
            query = query.filter(Product.status == ProductStatus.ACTIVE)
        if seller_id is not None:
            query = query.filter(Product.sellerID == seller_id)
        if category:
            query = query.filter(Product.category == category.strip().lower())
        if search:
            pattern = f"%{search.strip()}%"
            query = query.filter(or_(Product.name.ilike(pattern), Product.description.ilike(pattern)))
        query = query.order_by(Product.created_at.desc(), Product.productID.desc())
        return paginate(query, page, limit)

    def list_seller_storefront(
        self,
        seller_id: int,
        page: int,
        limit: int,
        identity: Optional[Identity] = None,
    ) -> Tuple[Seller, List[Product], Dict[str, int]]:
        seller = self.db.get(Seller, seller_id)
        if seller is None:
            raise NotFoundError("Seller not found")
        products, meta = self.list_products(page, limit, seller_id=seller_id, identity=identity)
        return seller, products, meta

    def list_categories(self) -> List[Dict[str, Any]]:
        """Active-product counts per category, busiest first."""
        rows = (
            self.db.query(Product.category, func.count(Product.productID))
            .filter(Product.status == ProductStatus.ACTIVE)
            .group_by(Product.category)
            .order_by(func.count(Product.productID).desc(), Product.category)
            .all()
        )
        return [{"name": category, "count": total} for category, total in rows]

    def low_stock_report(self, identity: Identity) -> Dict[str, Any]:
        if identity.is_admin:
            return self.low_stock_service.get_alert_summary()
        if identity.is_seller:
            return self.low_stock_service.get_alert_summary(seller_id=identity.id)
        raise AuthorizationError("Seller or admin access required")
