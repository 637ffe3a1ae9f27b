from __future__ import annotations

from flask import Blueprint, g, request

from gule.auth import require_auth
from gule.blueprints import json_body, success
from gule.database import get_db
from gule.models import EscrowStatus, UserType
from gule.serializers import escrow_to_dict
from gule.services.escrow_service import EscrowService
from gule.validation import page_args, parse_bool, require_enum

escrow_bp = Blueprint("escrow", __name__, url_prefix="/api/escrow")


def _escrow_service() -> EscrowService:
    return EscrowService(get_db())


@escrow_bp.route("/my-transactions", methods=["GET"])
@require_auth()
def my_transactions():
    page, limit = page_args(request.args.get("page"), request.args.get("limit"))
    status = request.args.get("status")
    escrows, meta = _escrow_service().list_for_identity(
        g.identity,
        page,
        limit,
        status=require_enum(EscrowStatus, status, "status") if status else None,
    )
    return success([escrow_to_dict(e) for e in escrows], meta=meta)


@escrow_bp.route("/stats/summary", methods=["GET"])
@require_auth()
def escrow_summary():
    return success(_escrow_service().escrow_statistics(g.identity))


@escrow_bp.route("/auto-release", methods=["POST"])
@require_auth(UserType.ADMIN)
def auto_release():
    released = _escrow_service().auto_release(g.identity)
    return success({"released": released}, message=f"{released} escrow transactions released")


@escrow_bp.route("/<id:escrow_id>", methods=["GET"])
@require_auth()
def get_escrow(escrow_id: int):
    return success(escrow_to_dict(_escrow_service().get_escrow(escrow_id, g.identity)))


@escrow_bp.route("/<id:escrow_id>/release", methods=["POST"])
@require_auth(UserType.BUYER, UserType.ADMIN)
def release(escrow_id: int):
    escrow = _escrow_service().release(escrow_id, g.identity, json_body().get("reason"))
    return success(escrow_to_dict(escrow), message="Funds released to seller")


@escrow_bp.route("/<id:escrow_id>/dispute", methods=["POST"])
@require_auth(UserType.BUYER, UserType.SELLER)
def dispute(escrow_id: int):
    body = json_body()
    escrow = _escrow_service().dispute(escrow_id, g.identity, body.get("reason"), body.get("description"))
    return success(escrow_to_dict(escrow), message="Dispute opened")


@escrow_bp.route("/<id:escrow_id>/resolve-dispute", methods=["POST"])
@require_auth(UserType.ADMIN)
def resolve_dispute(escrow_id: int):
    body = json_body()
    escrow = _escrow_service().resolve_dispute(
        escrow_id,
        g.identity,
        refund_to_buyer=parse_bool(body.get("refundToBuyer", False)),
        release_to_seller=parse_bool(body.get("releaseToSeller", False)),
        resolution=body.get("resolution"),
        admin_notes=body.get("adminNotes"),
    )
    return success(escrow_to_dict(escrow), message="Dispute resolved")
