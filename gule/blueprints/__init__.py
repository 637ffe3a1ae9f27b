"""HTTP blueprints and the shared JSON envelope."""
from __future__ import annotations

from typing import Any, Dict, Optional

from flask import jsonify, request
from werkzeug.routing import IntegerConverter

from gule.errors import ValidationError
from gule.validation import MAX_ID


def success(data: Any = None, message: Optional[str] = None, status: int = 200, meta: Optional[Dict[str, int]] = None):
    payload: Dict[str, Any] = {"success": True, "data": data}
    if message:
        payload["message"] = message
    if meta is not None:
        payload["pagination"] = meta
    return jsonify(payload), status


def json_body() -> Dict[str, Any]:
    body = request.get_json(silent=True)
    if body is None:
        return {}
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


class IdConverter(IntegerConverter):
    """``<id:name>``: a positive primary key; anything out of range is a 404."""

    def __init__(self, map, *args, **kwargs):
        kwargs.setdefault("min", 1)
        kwargs.setdefault("max", MAX_ID)
        super().__init__(map, *args, **kwargs)
