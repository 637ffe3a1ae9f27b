from __future__ import annotations

from flask import Blueprint, g, request

from gule.auth import require_auth
from gule.blueprints import json_body, success
from gule.database import get_db
from gule.models import UserType
from gule.serializers import review_to_dict
from gule.services.review_service import ReviewService
from gule.validation import page_args

reviews_bp = Blueprint("reviews", __name__, url_prefix="/api/reviews")


def _review_service() -> ReviewService:
    return ReviewService(get_db())


@reviews_bp.route("", methods=["POST"])
@require_auth(UserType.BUYER)
def create_review():
    body = json_body()
    review = _review_service().create_review(
        g.identity.id,
        body.get("productId"),
        body.get("orderId"),
        body.get("rating"),
        body.get("comment"),
        title=body.get("title"),
    )
    return success(review_to_dict(review), message="Review created successfully", status=201)


@reviews_bp.route("/product/<id:product_id>", methods=["GET"])
def product_reviews(product_id: int):
    page, limit = page_args(request.args.get("page"), request.args.get("limit"))
    reviews, meta, stats = _review_service().list_product_reviews(
        product_id, page, limit, rating=request.args.get("rating")
    )
    return success({"reviews": [review_to_dict(r) for r in reviews], "statistics": stats}, meta=meta)


@reviews_bp.route("/my-reviews", methods=["GET"])
@require_auth(UserType.BUYER, UserType.SELLER)
def my_reviews():
    page, limit = page_args(request.args.get("page"), request.args.get("limit"))
    service = _review_service()
    if g.identity.is_buyer:
        reviews, meta = service.list_buyer_reviews(g.identity.id, page, limit)
    else:
        reviews, meta = service.list_seller_reviews(g.identity.id, page, limit)
    return success([review_to_dict(r) for r in reviews], meta=meta)


@reviews_bp.route("/stats/summary", methods=["GET"])
@require_auth()
def review_summary():
    return success(_review_service().review_statistics(g.identity))


@reviews_bp.route("/<id:review_id>", methods=["GET"])
def get_review(review_id: int):
    return success(review_to_dict(_review_service().get_review(review_id)))


@reviews_bp.route("/<id:review_id>", methods=["PUT"])
@require_auth(UserType.BUYER)
def update_review(review_id: int):
    body = json_body()
    review = _review_service().update_review(
        review_id,
        g.identity.id,
        rating=body.get("rating"),
        comment=body.get("comment"),
        title=body.get("title"),
    )
    return success(review_to_dict(review), message="Review updated successfully")


@reviews_bp.route("/<id:review_id>", methods=["DELETE"])
@require_auth(UserType.BUYER, UserType.ADMIN)
def delete_review(review_id: int):
    _review_service().delete_review(review_id, g.identity)
    return success(None, message="Review deleted successfully")


@reviews_bp.route("/<id:review_id>/report", methods=["POST"])
@require_auth()
def report_review(review_id: int):
    body = json_body()
    _review_service().report_review(review_id, g.identity, body.get("reason"), body.get("description"))
    return success(None, message="Review reported successfully")


@reviews_bp.route("/<id:review_id>/response", methods=["POST"])
@require_auth(UserType.SELLER)
def respond(review_id: int):
    review = _review_service().respond_to_review(review_id, g.identity.id, json_body().get("response"))
    return success(review_to_dict(review), message="Response added successfully")
