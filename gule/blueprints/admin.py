from __future__ import annotations

from flask import Blueprint, g

from gule.auth import require_auth
from gule.blueprints import json_body, success
from gule.database import get_db
from gule.models import UserType
from gule.serializers import account_to_dict
from gule.services.product_service import ProductService

admin_bp = Blueprint("admin", __name__, url_prefix="/api/admin")


@admin_bp.route("/sellers/<id:seller_id>/suspend", methods=["POST"])
@require_auth(UserType.ADMIN)
def suspend_seller(seller_id: int):
    seller = ProductService(get_db()).suspend_seller(seller_id, g.identity, json_body().get("reason"))
    return success(account_to_dict(seller), message="Seller suspended")


@admin_bp.route("/sellers/<id:seller_id>/reinstate", methods=["POST"])
@require_auth(UserType.ADMIN)
def reinstate_seller(seller_id: int):
    seller = ProductService(get_db()).reinstate_seller(seller_id, g.identity)
    return success(account_to_dict(seller), message="Seller reinstated")
