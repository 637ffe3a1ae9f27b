"""Request payload coercion helpers shared by services and blueprints."""
from __future__ import annotations

from decimal import Decimal, InvalidOperation
from enum import Enum
from math import ceil
from typing import Any, Dict, Optional, Tuple, Type, TypeVar

import bleach
from sqlalchemy.orm import Query

from gule.config import Config
from gule.errors import ValidationError

E = TypeVar("E", bound=Enum)

# Largest value an INTEGER primary key column can hold on every supported backend
MAX_ID = 2**31 - 1


def require_int(value: Any, field: str, minimum: Optional[int] = None, maximum: Optional[int] = None) -> int:
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer", fields={field: "must be an integer"})
    if isinstance(value, float):
        if not value.is_integer():
            raise ValidationError(f"{field} must be an integer", fields={field: "must be an integer"})
        value = int(value)
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer", fields={field: "must be an integer"}) from None
    if minimum is not None and number < minimum:
        raise ValidationError(f"{field} must be at least {minimum}", fields={field: f"must be >= {minimum}"})
    if maximum is not None and number > maximum:
        raise ValidationError(f"{field} must be at most {maximum}", fields={field: f"must be <= {maximum}"})
    return number


def require_id(value: Any, field: str) -> int:
    return require_int(value, field, minimum=1, maximum=MAX_ID)


def require_decimal(
    value: Any, field: str, minimum: Decimal = Decimal("0"), maximum: Optional[Decimal] = None
) -> Decimal:
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field} must be a number", fields={field: "must be a number"})
    try:
        number = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a number", fields={field: "must be a number"}) from None
    if not number.is_finite() or number < minimum:
        raise ValidationError(f"{field} must be at least {minimum}", fields={field: f"must be >= {minimum}"})
    if maximum is not None and number > maximum:
        raise ValidationError(f"{field} must be at most {maximum}", fields={field: f"must be <= {maximum}"})
    return number.quantize(Decimal("0.01"))


def require_str(value: Any, field: str, max_length: Optional[int] = None, required: bool = True) -> Optional[str]:
    if value is None or (isinstance(value, str) and not value.strip()):
        if required:
            raise ValidationError(f"{field} is required", fields={field: "is required"})
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string", fields={field: "must be a string"})
    cleaned = value.strip()
    if max_length is not None and len(cleaned) > max_length:
        raise ValidationError(
            f"{field} cannot exceed {max_length} characters",
            fields={field: f"at most {max_length} characters"},
        )
    return cleaned


def sanitize_text(value: str) -> str:
    """Strip markup from user-supplied text."""
    return bleach.clean(value, tags=[], strip=True)


def require_text(value: Any, field: str, max_length: Optional[int] = None, required: bool = True) -> Optional[str]:
    """Like ``require_str`` for free text that is stored and shown to other users."""
    if isinstance(value, str):
        value = sanitize_text(value)
    return require_str(value, field, max_length=max_length, required=required)


def require_enum(enum_cls: Type[E], value: Any, field: str) -> E:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValidationError(f"{field} must be one of: {allowed}", fields={field: f"one of {allowed}"}) from None


def parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def page_args(page: Any = None, limit: Any = None) -> Tuple[int, int]:
    page_number = require_int(page if page not in (None, "") else 1, "page", minimum=1, maximum=MAX_ID)
    page_size = require_int(
        limit if limit not in (None, "") else Config.DEFAULT_PAGE_SIZE,
        "limit",
        minimum=1,
        maximum=Config.MAX_PAGE_SIZE,
    )
    return page_number, page_size


def paginate(query: Query, page: int, limit: int) -> Tuple[list, Dict[str, int]]:
    total = query.order_by(None).count()
    items = query.offset((page - 1) * limit).limit(limit).all()
    return items, {
        "page": page,
        "limit": limit,
        "total": total,
        "pages": ceil(total / limit) if total else 0,
    }
