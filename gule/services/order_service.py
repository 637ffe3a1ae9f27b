from __future__ import annotations

import logging
import secrets
from collections import OrderedDict
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Mapping, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from gule.config import Config
from gule.errors import (
    AuthorizationError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from gule.identity import Identity
from gule.models import (
    Buyer,
    Order,
    OrderItem,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    Product,
    ProductStatus,
    UserType,
    utcnow,
)
from gule.observability import increment_counter, record_event, timed
from gule.services.audit import AuditLogger, get_audit_logger
from gule.services.email_service import EmailSender, get_email_sender
from gule.services.escrow_service import EscrowService
from gule.services.inventory_service import InventoryService
from gule.services.low_stock_alert_service import LowStockAlertService
from gule.services.notification_service import publish_order_status_change
from gule.validation import paginate, require_enum, require_id, require_int, require_text

_CENT = Decimal("0.01")

# Transitions each party may request, on top of the base order machine
ROLE_TRANSITIONS: Dict[UserType, Dict[OrderStatus, frozenset]] = {
    UserType.BUYER: {
        OrderStatus.PENDING: frozenset({OrderStatus.CANCELLED}),
        OrderStatus.CONFIRMED: frozenset({OrderStatus.CANCELLED}),
        OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
        OrderStatus.DELIVERED: frozenset({OrderStatus.COMPLETED}),
    },
    UserType.SELLER: {
        OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
        OrderStatus.CONFIRMED: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
        OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
        OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    },
}

CANCELLABLE_STATUSES = frozenset({OrderStatus.PENDING, OrderStatus.CONFIRMED, OrderStatus.PROCESSING})
UNSHIPPED_STATUSES = CANCELLABLE_STATUSES
REVENUE_EXCLUDED_STATUSES = (OrderStatus.CANCELLED, OrderStatus.REFUNDED)
REQUIRED_ADDRESS_FIELDS = ("street", "city", "country")
OPTIONAL_ADDRESS_FIELDS = ("state", "zip_code")


def generate_order_number() -> str:
    return f"ORD-{utcnow():%Y%m%d}-{secrets.token_hex(4).upper()}"


class OrderService:
    """Checkout and the order lifecycle."""

    def __init__(
        self,
        db_session: Session,
        config: type[Config] = Config,
        inventory_service: Optional[InventoryService] = None,
        escrow_service: Optional[EscrowService] = None,
        audit_logger: Optional[AuditLogger] = None,
        email_sender: Optional[EmailSender] = None,
        low_stock_service: Optional[LowStockAlertService] = None,
    ) -> None:
        self.db = db_session
        self.config = config
        self.logger = logging.getLogger(__name__)
        self.audit = audit_logger or get_audit_logger()
        self.inventory_service = inventory_service or InventoryService(db_session)
        self.escrow_service = escrow_service or EscrowService(db_session, config=config, audit_logger=self.audit)
        self.email_sender = email_sender or get_email_sender()
        self.low_stock_service = low_stock_service or LowStockAlertService(db_session)

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------
    def create_order(
        self,
        buyer_id: int,
        items: Any,
        shipping_address: Any,
        payment_method: Any,
        notes: Optional[str] = None,
    ) -> Order:
        quantities = self._normalize_items(items)
        address = self._normalize_address(shipping_address)
        method = require_enum(PaymentMethod, payment_method, "paymentMethod")
        notes = require_text(notes, "notes", max_length=500, required=False)

        buyer = self.db.get(Buyer, buyer_id)
        if buyer is None or not buyer.is_active:
            raise NotFoundError("Buyer account not found")

        try:
            with timed("order_checkout_ms"):
                order = Order(
                    order_number=generate_order_number(),
                    buyerID=buyer_id,
                    status=OrderStatus.PENDING,
                    payment_method=method,
                    payment_status=PaymentStatus.PENDING,
                    shipping_address=address,
                    notes=notes,
                )
                for product_id, quantity in quantities.items():
                    order.items.append(self._reserve_line(product_id, quantity))

                order.subtotal = order.calculate_total()
                order.total_amount = order.subtotal
                self.db.add(order)
                self.db.flush()
                self.escrow_service.hold_for_order(order)
                self.db.commit()
        except Exception as exc:
            self.db.rollback()
            self.inventory_service.discard_pending()
            increment_counter("orders_failed_total", labels={"reason": type(exc).__name__})
            raise

        self._after_stock_commit()
        increment_counter("orders_created_total", labels={"payment_method": method.value})
        record_event(
            "order_created",
            {"order_id": order.orderID, "buyer_id": buyer_id, "total": str(order.total_amount)},
        )
        self.audit.log(
            "CREATE_ORDER",
            "order",
            order.orderID,
            actor=Identity(buyer_id, UserType.BUYER, UserType.BUYER.value),
            details={
                "order_number": order.order_number,
                "items": len(order.items),
                "total": str(order.total_amount),
            },
        )
        publish_order_status_change(
            order_id=order.orderID,
            order_number=order.order_number,
            buyer_id=buyer_id,
            seller_ids=order.seller_ids(),
            old_status="",
            new_status=OrderStatus.PENDING.value,
        )
        self._send_confirmation(order, buyer.email)
        self.logger.info(
            "Order %s created",
            order.order_number,
            extra={"order_id": order.orderID, "buyer_id": buyer_id},
        )
        return order

    def _send_confirmation(self, order: Order, recipient: str) -> None:
        try:
            self.email_sender.send_order_confirmation(
                order.order_number,
                recipient,
                [
                    {"name": item.product_name, "quantity": item.quantity, "line_total": str(item.line_total)}
                    for item in order.items
                ],
                order.total_amount,
            )
        except Exception:
            self.logger.exception("Order confirmation for %s could not be queued", order.order_number)
            increment_counter("emails_failed_total")

    def _normalize_items(self, items: Any) -> "OrderedDict[int, int]":
        if not isinstance(items, list) or not items:
            raise ValidationError("Order must contain at least one item", fields={"items": "at least one item"})

        quantities: "OrderedDict[int, int]" = OrderedDict()
        for index, raw in enumerate(items):
            if not isinstance(raw, Mapping):
                raise ValidationError("Each item must be an object", fields={f"items[{index}]": "must be an object"})
            product_id = require_id(raw.get("product"), f"items[{index}].product")
            quantity = require_int(
                raw.get("quantity"),
                f"items[{index}].quantity",
                minimum=1,
                maximum=self.config.MAX_ORDER_ITEM_QUANTITY,
            )
            quantities[product_id] = quantities.get(product_id, 0) + quantity
        return quantities

    @staticmethod
    def _normalize_address(shipping_address: Any) -> Dict[str, str]:
        if not isinstance(shipping_address, Mapping):
            raise ValidationError("Shipping address is required", fields={"shippingAddress": "is required"})
        address = {
            name: require_text(shipping_address.get(name), f"shippingAddress.{name}", max_length=200)
            for name in REQUIRED_ADDRESS_FIELDS
        }
        for name in OPTIONAL_ADDRESS_FIELDS:
            value = require_text(shipping_address.get(name), f"shippingAddress.{name}", max_length=50, required=False)
            if value:
                address[name] = value
        return address

    def _reserve_line(self, product_id: int, quantity: int) -> OrderItem:
        product = self.db.get(Product, product_id)
        if product is None:
            raise NotFoundError(f"Product {product_id} not found", fields={"product": str(product_id)})
        if product.status != ProductStatus.ACTIVE:
            raise ValidationError(
                f"Product {product.name} is not available for purchase",
                fields={"product": str(product_id)},
            )

        unit_price = Decimal(product.price).quantize(_CENT)
        item = OrderItem(
            productID=product.productID,
            sellerID=product.sellerID,
            product_name=product.name,
            quantity=quantity,
            unit_price=unit_price,
            line_total=(unit_price * quantity).quantize(_CENT),
        )
        self.inventory_service.reserve_stock(product_id, quantity)
        return item

    def _after_stock_commit(self) -> None:
        for product_id in self.inventory_service.publish_pending():
            self.low_stock_service.check_and_alert(product_id)

    # ------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------
    def update_status(
        self,
        order_id: int,
        identity: Identity,
        status: Any = None,
        reason: Optional[str] = None,
        tracking_number: Optional[str] = None,
        notes: Optional[str] = None,
        override: bool = False,
    ) -> Order:
        order = self.get_order(order_id, identity)
        tracking_number = require_text(tracking_number, "trackingNumber", max_length=120, required=False)
        notes = require_text(notes, "notes", max_length=500, required=False)
        reason = require_text(reason, "reason", max_length=500, required=False)

        if status is None or status == "":
            if tracking_number is None and notes is None:
                raise ValidationError("Nothing to update", fields={"status": "is required"})
            return self._update_metadata(order, identity, tracking_number, notes)

        new_status = require_enum(OrderStatus, status, "status")
        old_status = OrderStatus(order.status)

        if override and not identity.is_admin:
            raise AuthorizationError("Only admins can override order transitions")
        if order.is_terminal:
            raise InvalidTransitionError(
                f"Order is {old_status.value} and can no longer change status",
                fields={"status": new_status.value},
            )
        if not (override and order.can_skip_to(new_status)):
            if not order.can_transition(new_status):
                raise InvalidTransitionError(
                    f"Cannot change order status from {old_status.value} to {new_status.value}",
                    fields={"status": new_status.value},
                )
            if not identity.is_admin:
                allowed = ROLE_TRANSITIONS[identity.user_type].get(old_status, frozenset())
                if new_status not in allowed:
                    raise AuthorizationError(
                        f"A {identity.user_type.value} cannot move an order from "
                        f"{old_status.value} to {new_status.value}"
                    )

        return self._commit_transition(order, identity, new_status, reason, tracking_number, notes, override)

    def cancel_order(self, order_id: int, identity: Identity, reason: Any = None) -> Order:
        """Any party to the order may cancel it before shipment."""
        order = self.get_order(order_id, identity)
        reason = require_text(reason, "reason", max_length=500, required=False)
        status = OrderStatus(order.status)
        if status not in CANCELLABLE_STATUSES:
            raise InvalidTransitionError(
                f"Order cannot be cancelled once {status.value}",
                fields={"status": OrderStatus.CANCELLED.value},
            )
        return self._commit_transition(order, identity, OrderStatus.CANCELLED, reason)

    def _commit_transition(
        self,
        order: Order,
        identity: Identity,
        new_status: OrderStatus,
        reason: Optional[str] = None,
        tracking_number: Optional[str] = None,
        notes: Optional[str] = None,
        override: bool = False,
    ) -> Order:
        old_status = OrderStatus(order.status)
        try:
            order.transition_to(new_status, override=override)
            if tracking_number is not None:
                order.tracking_number = tracking_number
            if notes is not None:
                order.notes = notes
            self._apply_side_effects(order, identity, old_status, new_status, reason)
            self.db.commit()
        except Exception:
            self.db.rollback()
            self.inventory_service.discard_pending()
            raise

        self._after_stock_commit()
        action = "CANCEL_ORDER" if new_status == OrderStatus.CANCELLED else "UPDATE_ORDER_STATUS"
        details: Dict[str, Any] = {"from": old_status.value, "to": new_status.value}
        if override:
            details["override"] = True
            self.logger.warning(
                "Admin override moved order %s from %s to %s",
                order.order_number,
                old_status.value,
                new_status.value,
                extra={"admin_id": identity.id},
            )
        if reason:
            details["reason"] = reason
        self.audit.log(action, "order", order.orderID, actor=identity, details=details)
        publish_order_status_change(
            order_id=order.orderID,
            order_number=order.order_number,
            buyer_id=order.buyerID,
            seller_ids=order.seller_ids(),
            old_status=old_status.value,
            new_status=new_status.value,
        )
        self.logger.info(
            "Order %s moved from %s to %s",
            order.order_number,
            old_status.value,
            new_status.value,
            extra={"actor": identity.reference},
        )
        return order

    def _update_metadata(
        self,
        order: Order,
        identity: Identity,
        tracking_number: Optional[str],
        notes: Optional[str],
    ) -> Order:
        if identity.is_buyer and tracking_number is not None:
            raise AuthorizationError("Buyers cannot set tracking numbers")
        if tracking_number is not None:
            order.tracking_number = tracking_number
        if notes is not None:
            order.notes = notes
        self.db.commit()
        self.audit.log(
            "UPDATE_ORDER_STATUS",
            "order",
            order.orderID,
            actor=identity,
            details={"tracking_number": tracking_number, "notes_updated": notes is not None},
        )
        return order

    def _apply_side_effects(
        self,
        order: Order,
        identity: Identity,
        old_status: OrderStatus,
        new_status: OrderStatus,
        reason: Optional[str],
    ) -> None:
        if new_status == OrderStatus.COMPLETED:
            self.escrow_service.release_for_order(order, identity.reference, "Order completed")
            order.payment_status = PaymentStatus.PAID
        elif new_status == OrderStatus.CANCELLED:
            order.cancellation_reason = reason
            self.escrow_service.cancel_for_order(order)
            self._restock(order, old_status, "cancellation")
        elif new_status == OrderStatus.REFUNDED:
            order.cancellation_reason = reason
            self.escrow_service.refund_for_order(order)
            order.payment_status = PaymentStatus.REFUNDED
            self._restock(order, old_status, "refund")

    def _restock(self, order: Order, old_status: OrderStatus, reason: str) -> None:
        if order.stock_restored:
            return
        if old_status not in UNSHIPPED_STATUSES and not self.config.RESTOCK_AFTER_SHIPMENT:
            self.logger.info("Order %s left the warehouse; stock not restored", order.order_number)
            return
        for item in order.items:
            self.inventory_service.restore_stock(item.productID, item.quantity, reason=reason)
        order.stock_restored = True

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get_order(self, order_id: int, identity: Identity) -> Order:
        order = self.db.get(Order, order_id)
        if order is None:
            raise NotFoundError("Order not found")
        if identity.is_admin:
            return order
        if identity.is_buyer and order.buyerID == identity.id:
            return order
        if identity.is_seller and identity.id in order.seller_ids():
            return order
        raise AuthorizationError("Access denied")

    def _list(self, query, page: int, limit: int, status: Any = None) -> Tuple[List[Order], Dict[str, int]]:
        if status:
            query = query.filter(Order.status == require_enum(OrderStatus, status, "status"))
        query = query.order_by(Order.created_at.desc(), Order.orderID.desc())
        return paginate(query, page, limit)

    def list_buyer_orders(self, buyer_id: int, page: int, limit: int, status: Any = None):
        return self._list(self.db.query(Order).filter(Order.buyerID == buyer_id), page, limit, status)

    def list_seller_orders(self, seller_id: int, page: int, limit: int, status: Any = None):
        query = self.db.query(Order).filter(Order.items.any(OrderItem.sellerID == seller_id))
        return self._list(query, page, limit, status)

    def list_orders(self, identity: Identity, page: int, limit: int, status: Any = None):
        if not identity.is_admin:
            raise AuthorizationError("Admin access required")
        return self._list(self.db.query(Order), page, limit, status)

    def order_statistics(self, identity: Identity) -> Dict[str, Any]:
        """Order counts by status plus revenue for the caller's scope."""
        if identity.is_seller:
            scope = self.db.query(OrderItem.orderID).filter(OrderItem.sellerID == identity.id)
            status_rows = (
                self.db.query(Order.status, func.count(Order.orderID))
                .filter(Order.orderID.in_(scope))
                .group_by(Order.status)
                .all()
            )
            revenue_row = (
                self.db.query(func.coalesce(func.sum(OrderItem.line_total), 0), func.count(func.distinct(Order.orderID)))
                .select_from(OrderItem)
                .join(Order, Order.orderID == OrderItem.orderID)
                .filter(OrderItem.sellerID == identity.id)
                .filter(Order.status.notin_(REVENUE_EXCLUDED_STATUSES))
                .one()
            )
        else:
            base = self.db.query(Order)
            if identity.is_buyer:
                base = base.filter(Order.buyerID == identity.id)
            status_rows = (
                base.with_entities(Order.status, func.count(Order.orderID)).group_by(Order.status).all()
            )
            revenue_row = (
                base.filter(Order.status.notin_(REVENUE_EXCLUDED_STATUSES))
                .with_entities(func.coalesce(func.sum(Order.total_amount), 0), func.count(Order.orderID))
                .one()
            )

        by_status = {status.value: 0 for status in OrderStatus}
        for status, total in status_rows:
            by_status[OrderStatus(status).value] = total
        revenue = Decimal(str(revenue_row[0])).quantize(_CENT)
        paid_orders = revenue_row[1] or 0
        average = (revenue / paid_orders).quantize(_CENT, rounding=ROUND_HALF_UP) if paid_orders else Decimal("0.00")
        return {
            "total_orders": sum(by_status.values()),
            "by_status": by_status,
            "total_revenue": str(revenue),
            "average_order_value": str(average),
        }

