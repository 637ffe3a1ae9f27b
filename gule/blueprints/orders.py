from __future__ import annotations

from flask import Blueprint, g, request

from gule.auth import require_auth
from gule.blueprints import json_body, success
from gule.database import get_db
from gule.models import UserType
from gule.serializers import order_to_dict
from gule.services.order_service import OrderService
from gule.validation import page_args, parse_bool

orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


def _order_service() -> OrderService:
    return OrderService(get_db())


def _serialize(order):
    seller_id = g.identity.id if g.identity.is_seller else None
    return order_to_dict(order, seller_id=seller_id)


@orders_bp.route("", methods=["POST"])
@require_auth(UserType.BUYER)
def create_order():
    body = json_body()
    order = _order_service().create_order(
        g.identity.id,
        body.get("items"),
        body.get("shippingAddress"),
        body.get("paymentMethod"),
        notes=body.get("notes"),
    )
    return success(order_to_dict(order), message="Order created successfully", status=201)


@orders_bp.route("/my-orders", methods=["GET"])
@require_auth(UserType.BUYER)
def my_orders():
    page, limit = page_args(request.args.get("page"), request.args.get("limit"))
    orders, meta = _order_service().list_buyer_orders(g.identity.id, page, limit, request.args.get("status"))
    return success([order_to_dict(o) for o in orders], meta=meta)


@orders_bp.route("/seller-orders", methods=["GET"])
@require_auth(UserType.SELLER)
def seller_orders():
    page, limit = page_args(request.args.get("page"), request.args.get("limit"))
    orders, meta = _order_service().list_seller_orders(g.identity.id, page, limit, request.args.get("status"))
    return success([_serialize(o) for o in orders], meta=meta)


@orders_bp.route("", methods=["GET"])
@require_auth(UserType.ADMIN)
def all_orders():
    page, limit = page_args(request.args.get("page"), request.args.get("limit"))
    orders, meta = _order_service().list_orders(g.identity, page, limit, request.args.get("status"))
    return success([order_to_dict(o) for o in orders], meta=meta)


@orders_bp.route("/stats/summary", methods=["GET"])
@require_auth()
def order_stats():
    return success(_order_service().order_statistics(g.identity))


@orders_bp.route("/<id:order_id>", methods=["GET"])
@require_auth()
def get_order(order_id: int):
    return success(_serialize(_order_service().get_order(order_id, g.identity)))


@orders_bp.route("/<id:order_id>/status", methods=["PATCH"])
@require_auth()
def update_status(order_id: int):
    body = json_body()
    order = _order_service().update_status(
        order_id,
        g.identity,
        body.get("status"),
        reason=body.get("reason"),
        tracking_number=body.get("trackingNumber"),
        notes=body.get("notes"),
        override=parse_bool(body.get("override", False)),
    )
    return success(_serialize(order), message="Order status updated successfully")


@orders_bp.route("/<id:order_id>/cancel", methods=["PATCH"])
@require_auth()
def cancel_order(order_id: int):
    order = _order_service().cancel_order(order_id, g.identity, json_body().get("reason"))
    return success(_serialize(order), message="Order cancelled successfully")
