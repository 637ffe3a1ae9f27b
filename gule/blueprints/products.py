from __future__ import annotations

from flask import Blueprint, g, request

from gule.auth import optional_identity, require_auth
from gule.blueprints import json_body, success
from gule.database import get_db
from gule.errors import ValidationError
from gule.models import UserType
from gule.serializers import account_to_dict, product_to_dict
from gule.services.product_service import ProductService
from gule.validation import page_args, parse_bool, require_id

products_bp = Blueprint("products", __name__, url_prefix="/api/products")


def _product_service() -> ProductService:
    return ProductService(get_db())


@products_bp.route("", methods=["GET"])
def list_products():
    identity = optional_identity()
    page, limit = page_args(request.args.get("page"), request.args.get("limit"))
    seller = request.args.get("seller")
    products, meta = _product_service().list_products(
        page,
        limit,
        category=request.args.get("category"),
        search=request.args.get("search"),
        seller_id=require_id(seller, "seller") if seller else None,
        identity=identity,
    )
    return success([product_to_dict(p) for p in products], meta=meta)


@products_bp.route("/categories", methods=["GET"])
def list_categories():
    categories = _product_service().list_categories()
    return success({"categories": categories, "totalCategories": len(categories)})


@products_bp.route("/seller/<id:seller_id>", methods=["GET"])
def seller_storefront(seller_id: int):
    page, limit = page_args(request.args.get("page"), request.args.get("limit"))
    seller, products, meta = _product_service().list_seller_storefront(
        seller_id, page, limit, identity=optional_identity()
    )
    return success(
        {"seller": account_to_dict(seller, public=True), "products": [product_to_dict(p) for p in products]},
        meta=meta,
    )


@products_bp.route("/low-stock", methods=["GET"])
@require_auth(UserType.SELLER, UserType.ADMIN)
def low_stock():
    return success(_product_service().low_stock_report(g.identity))


@products_bp.route("/<id:product_id>", methods=["GET"])
def get_product(product_id: int):
    product = _product_service().get_product(product_id, optional_identity())
    return success(product_to_dict(product))


@products_bp.route("", methods=["POST"])
@require_auth(UserType.SELLER)
def create_product():
    product = _product_service().create_product(g.identity.id, json_body())
    return success(product_to_dict(product), message="Product submitted for approval", status=201)


@products_bp.route("/<id:product_id>", methods=["PUT"])
@require_auth(UserType.SELLER, UserType.ADMIN)
def update_product(product_id: int):
    product = _product_service().update_product(product_id, g.identity, json_body())
    return success(product_to_dict(product), message="Product updated")


@products_bp.route("/<id:product_id>", methods=["DELETE"])
@require_auth(UserType.SELLER, UserType.ADMIN)
def delete_product(product_id: int):
    _product_service().delete_product(product_id, g.identity)
    return success(message="Product deleted successfully")


@products_bp.route("/<id:product_id>/review", methods=["PATCH"])
@require_auth(UserType.ADMIN)
def review_product(product_id: int):
    body = json_body()
    if "approve" not in body:
        raise ValidationError("approve is required", fields={"approve": "is required"})
    product = _product_service().review_product(
        product_id,
        g.identity,
        approve=parse_bool(body["approve"]),
        notes=body.get("notes"),
    )
    return success(product_to_dict(product), message=f"Product {product.status.value}")


@products_bp.route("/<id:product_id>/stock", methods=["PATCH"])
@require_auth(UserType.SELLER, UserType.ADMIN)
def adjust_stock(product_id: int):
    body = json_body()
    product = _product_service().adjust_stock(
        product_id,
        g.identity,
        stock=body.get("stock"),
        delta=body.get("delta"),
        reason=body.get("reason"),
    )
    return success(product_to_dict(product), message="Stock updated")
