"""Error taxonomy shared by services and the HTTP layer.

Services raise these; the Flask error handler in ``gule.main`` renders them
into the JSON error envelope using ``status_code`` and ``code``.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class MarketplaceError(Exception):
    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, fields: Optional[Dict[str, str]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.fields = fields or {}

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.fields:
            payload["fields"] = dict(self.fields)
        return payload


class ValidationError(MarketplaceError):
    """Malformed or out-of-range input."""

    status_code = 400
    code = "VALIDATION_ERROR"


class InvalidTransitionError(ValidationError):
    code = "INVALID_TRANSITION"


class AuthenticationError(MarketplaceError):
    status_code = 401
    code = "AUTHENTICATION_REQUIRED"


class AuthorizationError(MarketplaceError):
    """Ownership or role mismatch."""

    status_code = 403
    code = "FORBIDDEN"


class PurchaseNotVerifiedError(AuthorizationError):
    code = "PURCHASE_NOT_VERIFIED"


class NotFoundError(MarketplaceError):
    status_code = 404
    code = "NOT_FOUND"


class ConflictError(MarketplaceError):
    status_code = 409
    code = "CONFLICT"


class InsufficientStockError(ConflictError):
    code = "INSUFFICIENT_STOCK"

    def __init__(self, message: str, product_id: Optional[int] = None) -> None:
        super().__init__(message)
        self.product_id = product_id


class DuplicateReviewError(ConflictError):
    status_code = 400
    code = "DUPLICATE_REVIEW"


class DuplicateReportError(ConflictError):
    status_code = 400
    code = "DUPLICATE_REPORT"


class InternalError(MarketplaceError):
    status_code = 500
    code = "INTERNAL_ERROR"


__all__ = [
    "MarketplaceError",
    "ValidationError",
    "InvalidTransitionError",
    "AuthenticationError",
    "AuthorizationError",
    "PurchaseNotVerifiedError",
    "NotFoundError",
    "ConflictError",
    "InsufficientStockError",
    "DuplicateReviewError",
    "DuplicateReportError",
    "InternalError",
]
