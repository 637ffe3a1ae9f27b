from __future__ import annotations

from flask import Blueprint, g

from gule.auth import require_auth
from gule.blueprints import json_body, success
from gule.database import get_db
from gule.serializers import account_to_dict
from gule.services.account_service import AccountService

auth_bp = Blueprint("auth", __name__, url_prefix="/api/auth")


def _account_service() -> AccountService:
    return AccountService(get_db())


@auth_bp.route("/register/<user_type>", methods=["POST"])
def register(user_type: str):
    account, token = _account_service().register(user_type, json_body())
    return success(
        {"token": token, "account": account_to_dict(account)},
        message="Registration successful",
        status=201,
    )


@auth_bp.route("/login", methods=["POST"])
def login():
    body = json_body()
    account, token = _account_service().login(body.get("email"), body.get("password"), body.get("userType"))
    return success({"token": token, "account": account_to_dict(account)}, message="Login successful")


@auth_bp.route("/me", methods=["GET"])
@require_auth()
def me():
    return success(account_to_dict(_account_service().get_account(g.identity)))
