"""JWT issuance and the request guard that resolves the caller's account."""
from __future__ import annotations

from functools import wraps
from typing import Callable, Optional

from flask import Flask, g, jsonify
from flask_jwt_extended import (
    JWTManager,
    create_access_token,
    get_jwt,
    get_jwt_identity,
    verify_jwt_in_request,
)

from gule.database import get_db
from gule.errors import AuthenticationError, AuthorizationError
from gule.identity import Identity
from gule.models import ACCOUNT_MODELS, UserType

jwt = JWTManager()


def _auth_error(message: str, status: int = 401):
    error = AuthenticationError(message)
    return jsonify({"success": False, "error": error.to_dict()}), status


@jwt.unauthorized_loader
def _missing_token(reason: str):
    return _auth_error("Access denied. No token provided.")


@jwt.invalid_token_loader
def _invalid_token(reason: str):
    return _auth_error("Invalid token")


@jwt.expired_token_loader
def _expired_token(jwt_header, jwt_payload):
    return _auth_error("Token expired")


def init_auth(app: Flask) -> None:
    jwt.init_app(app)


def issue_token(account) -> str:
    return create_access_token(
        identity=str(account.id),
        additional_claims={"role": account.role, "userType": account.user_type.value},
    )


def resolve_account(user_type: UserType, account_id: int):
    model = ACCOUNT_MODELS[user_type]
    return get_db().get(model, account_id)


def _load_identity() -> Identity:
    claims = get_jwt()
    try:
        user_type = UserType(claims.get("userType"))
        account_id = int(get_jwt_identity())
    except (TypeError, ValueError):
        raise AuthenticationError("Invalid token") from None

    account = resolve_account(user_type, account_id)
    if account is None:
        raise AuthenticationError("Account not found")
    if not account.is_active:
        raise AuthenticationError("Account is deactivated")
    return Identity(account.id, user_type, account.role)


def current_identity() -> Optional[Identity]:
    return getattr(g, "identity", None)


def optional_identity() -> Optional[Identity]:
    """Resolve the caller when a token is present; anonymous otherwise."""
    if verify_jwt_in_request(optional=True) is None:
        return None
    g.identity = _load_identity()
    return g.identity


def require_auth(*user_types: UserType) -> Callable:
    """Require a valid token, optionally restricted to the given account kinds."""
    allowed = frozenset(UserType(kind) for kind in user_types)

    def decorator(view: Callable) -> Callable:
        @wraps(view)
        def wrapper(*args, **kwargs):
            verify_jwt_in_request()
            identity = _load_identity()
            g.identity = identity
            if allowed and identity.user_type not in allowed:
                kinds = " or ".join(sorted(kind.value for kind in allowed))
                raise AuthorizationError(f"Access denied. {kinds.capitalize()} account required.")
            return view(*args, **kwargs)

        return wrapper

    return decorator
