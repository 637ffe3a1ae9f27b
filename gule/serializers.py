"""JSON shapes for API responses."""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from gule.models import (
    EscrowTransaction,
    Order,
    Product,
    Review,
    UserType,
    as_utc,
)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return as_utc(value).isoformat() if value else None


def _money(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(Decimal(value).quantize(Decimal("0.01")))


def _value(enum_or_str: Any) -> Any:
    return getattr(enum_or_str, "value", enum_or_str)


def account_to_dict(account, public: bool = False) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "id": account.id,
        "userType": account.user_type.value,
        "name": account.display_name,
        "createdAt": _iso(account.created_at),
    }
    if not public:
        data["email"] = account.email
        data["role"] = account.role
        data["isActive"] = account.is_active
    if account.user_type == UserType.BUYER:
        data["firstName"] = account.first_name
        data["lastName"] = account.last_name
    elif account.user_type == UserType.SELLER:
        data["businessName"] = account.business_name
        data["status"] = _value(account.status)
    return data


def product_to_dict(product: Product) -> Dict[str, Any]:
    return {
        "id": product.productID,
        "sellerId": product.sellerID,
        "name": product.name,
        "description": product.description,
        "category": product.category,
        "price": _money(product.price),
        "stock": product.stock,
        "lowStockThreshold": product.low_stock_threshold,
        "status": _value(product.status),
        "rating": float(product.rating or 0),
        "reviewCount": product.review_count,
        "totalSales": product.total_sales,
        "reviewNotes": product.review_notes,
        "createdAt": _iso(product.created_at),
        "updatedAt": _iso(product.updated_at),
    }


def order_to_dict(order: Order, seller_id: Optional[int] = None) -> Dict[str, Any]:
    """Sellers only see their own lines of a multi-vendor order."""
    items = [item for item in order.items if seller_id is None or item.sellerID == seller_id]
    return {
        "id": order.orderID,
        "orderNumber": order.order_number,
        "buyerId": order.buyerID,
        "status": _value(order.status),
        "paymentMethod": _value(order.payment_method),
        "paymentStatus": _value(order.payment_status),
        "shippingAddress": order.shipping_address,
        "items": [
            {
                "product": item.productID,
                "seller": item.sellerID,
                "name": item.product_name,
                "quantity": item.quantity,
                "unitPrice": _money(item.unit_price),
                "lineTotal": _money(item.line_total),
            }
            for item in items
        ],
        "subtotal": _money(order.subtotal),
        "totalAmount": _money(order.total_amount),
        "notes": order.notes,
        "trackingNumber": order.tracking_number,
        "cancellationReason": order.cancellation_reason,
        "createdAt": _iso(order.created_at),
        "confirmedAt": _iso(order.confirmed_at),
        "shippedAt": _iso(order.shipped_at),
        "deliveredAt": _iso(order.delivered_at),
        "completedAt": _iso(order.completed_at),
        "cancelledAt": _iso(order.cancelled_at),
        "refundedAt": _iso(order.refunded_at),
    }


def review_to_dict(review: Review) -> Dict[str, Any]:
    return {
        "id": review.reviewID,
        "buyerId": review.buyerID,
        "sellerId": review.sellerID,
        "productId": review.productID,
        "orderId": review.orderID,
        "rating": review.rating,
        "title": review.title,
        "comment": review.comment,
        "sellerResponse": review.seller_response,
        "sellerRespondedAt": _iso(review.seller_responded_at),
        "reportCount": len(review.reports),
        "createdAt": _iso(review.created_at),
        "updatedAt": _iso(review.updated_at),
    }


def escrow_to_dict(escrow: EscrowTransaction) -> Dict[str, Any]:
    return {
        "id": escrow.escrowID,
        "escrowNumber": escrow.escrow_number,
        "orderId": escrow.orderID,
        "buyerId": escrow.buyerID,
        "sellerId": escrow.sellerID,
        "amount": _money(escrow.amount),
        "commission": _money(escrow.commission),
        "netAmount": _money(escrow.net_amount),
        "status": _value(escrow.status),
        "holdUntil": _iso(escrow.hold_until),
        "releasedAt": _iso(escrow.released_at),
        "releasedBy": escrow.released_by,
        "disputeReason": escrow.dispute_reason,
        "disputedAt": _iso(escrow.disputed_at),
        "resolution": escrow.resolution,
        "resolvedAt": _iso(escrow.resolved_at),
        "createdAt": _iso(escrow.created_at),
    }
