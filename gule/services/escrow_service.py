from __future__ import annotations

import logging
import secrets
from collections import OrderedDict
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from gule.config import Config
from gule.errors import AuthorizationError, NotFoundError, ValidationError
from gule.identity import SYSTEM_ACTOR, Identity
from gule.models import (
    EscrowStatus,
    EscrowTransaction,
    Order,
    OrderStatus,
    PaymentStatus,
    as_utc,
    utcnow,
)
from gule.observability import increment_counter, record_event
from gule.services.audit import AuditLogger, get_audit_logger
from gule.services.notification_service import publish_order_status_change
from gule.validation import paginate, require_text

_CENT = Decimal("0.01")
SETTLED_ESCROW_STATUSES = frozenset({EscrowStatus.RELEASED, EscrowStatus.CANCELLED})


def generate_escrow_number() -> str:
    return f"ESC-{utcnow():%Y%m%d%H%M%S}-{secrets.token_hex(3).upper()}"


class EscrowService:
    """Seller payouts held between checkout and delivery."""

    def __init__(
        self,
        db_session: Session,
        config: type[Config] = Config,
        audit_logger: Optional[AuditLogger] = None,
    ) -> None:
        self.db = db_session
        self.config = config
        self.audit = audit_logger or get_audit_logger()
        self.logger = logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Order-driven transitions (caller commits)
    # ------------------------------------------------------------------
    def hold_for_order(self, order: Order) -> List[EscrowTransaction]:
        """Create one held escrow per seller with items in the order."""
        shares: Dict[int, Decimal] = OrderedDict()
        for item in order.items:
            shares[item.sellerID] = shares.get(item.sellerID, Decimal("0.00")) + Decimal(item.line_total)

        rate = Decimal(str(self.config.ESCROW_COMMISSION_RATE))
        hold_until = utcnow() + timedelta(days=self.config.ESCROW_HOLD_DAYS)
        escrows = []
        for seller_id, amount in shares.items():
            commission = (amount * rate).quantize(_CENT, rounding=ROUND_HALF_UP)
            escrow = EscrowTransaction(
                escrow_number=generate_escrow_number(),
                buyerID=order.buyerID,
                sellerID=seller_id,
                amount=amount.quantize(_CENT),
                commission=commission,
                net_amount=(amount - commission).quantize(_CENT),
                status=EscrowStatus.HELD,
                hold_until=hold_until,
            )
            order.escrows.append(escrow)
            escrows.append(escrow)
        return escrows

    def release_for_order(self, order: Order, actor: str, reason: str) -> int:
        released = 0
        for escrow in order.escrows:
            if escrow.status == EscrowStatus.HELD:
                escrow.mark_released(actor, reason)
                released += 1
        return released

    def cancel_for_order(self, order: Order) -> int:
        cancelled = 0
        for escrow in order.escrows:
            if escrow.status == EscrowStatus.HELD:
                escrow.mark_cancelled()
                cancelled += 1
        return cancelled

    def refund_for_order(self, order: Order) -> int:
        refunded = 0
        for escrow in order.escrows:
            if escrow.status in (EscrowStatus.HELD, EscrowStatus.DISPUTED):
                escrow.mark_refunded()
                refunded += 1
        return refunded

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def _load(self, escrow_id: int) -> EscrowTransaction:
        escrow = self.db.get(EscrowTransaction, escrow_id)
        if escrow is None:
            raise NotFoundError("Escrow transaction not found")
        return escrow

    @staticmethod
    def _is_party(escrow: EscrowTransaction, identity: Identity) -> bool:
        if identity.is_admin:
            return True
        if identity.is_buyer:
            return escrow.buyerID == identity.id
        return escrow.sellerID == identity.id

    def get_escrow(self, escrow_id: int, identity: Identity) -> EscrowTransaction:
        escrow = self._load(escrow_id)
        if not self._is_party(escrow, identity):
            raise AuthorizationError("Access denied")
        return escrow

    def list_for_identity(
        self,
        identity: Identity,
        page: int,
        limit: int,
        status: Optional[EscrowStatus] = None,
    ) -> Tuple[List[EscrowTransaction], Dict[str, int]]:
        query = self.db.query(EscrowTransaction)
        if identity.is_buyer:
            query = query.filter(EscrowTransaction.buyerID == identity.id)
        elif identity.is_seller:
            query = query.filter(EscrowTransaction.sellerID == identity.id)
        if status is not None:
            query = query.filter(EscrowTransaction.status == status)
        query = query.order_by(EscrowTransaction.created_at.desc(), EscrowTransaction.escrowID.desc())
        return paginate(query, page, limit)

    def escrow_statistics(self, identity: Identity) -> Dict[str, object]:
        """Counts and amounts by status for the caller's escrows."""
        query = self.db.query(
            EscrowTransaction.status,
            func.count(EscrowTransaction.escrowID),
            func.coalesce(func.sum(EscrowTransaction.amount), 0),
        )
        if identity.is_buyer:
            query = query.filter(EscrowTransaction.buyerID == identity.id)
        elif identity.is_seller:
            query = query.filter(EscrowTransaction.sellerID == identity.id)

        counts = {status.value: 0 for status in EscrowStatus}
        amounts = {status.value: Decimal("0.00") for status in EscrowStatus}
        for status, total, amount in query.group_by(EscrowTransaction.status).all():
            counts[EscrowStatus(status).value] = total
            amounts[EscrowStatus(status).value] = Decimal(str(amount)).quantize(_CENT)
        return {
            "total_transactions": sum(counts.values()),
            "total_amount": str(sum(amounts.values(), Decimal("0.00"))),
            "held_amount": str(amounts[EscrowStatus.HELD.value]),
            "released_amount": str(amounts[EscrowStatus.RELEASED.value]),
            "refunded_amount": str(amounts[EscrowStatus.REFUNDED.value]),
            "disputed_transactions": counts[EscrowStatus.DISPUTED.value],
            "by_status": counts,
        }

    # ------------------------------------------------------------------
    # Escrow operations
    # ------------------------------------------------------------------
    def release(self, escrow_id: int, identity: Identity, reason: Optional[str] = None) -> EscrowTransaction:
        escrow = self._load(escrow_id)
        if not (identity.is_admin or (identity.is_buyer and escrow.buyerID == identity.id)):
            raise AuthorizationError("Only the buyer or an admin can release funds")
        if escrow.status != EscrowStatus.HELD:
            raise ValidationError(f"Cannot release escrow in {EscrowStatus(escrow.status).value} status")

        escrow.mark_released(identity.reference, reason or "Released by buyer")
        order_completed = self._complete_order_if_settled(escrow.order)
        self.db.commit()

        increment_counter("escrow_released_total", labels={"trigger": identity.user_type.value})
        self.audit.log(
            "RELEASE_ESCROW",
            "escrow",
            escrow.escrowID,
            actor=identity,
            details={"order_id": escrow.orderID, "amount": str(escrow.net_amount)},
        )
        if order_completed:
            self._publish_completion(escrow.order)
        self.logger.info("Escrow %s released", escrow.escrow_number, extra={"order_id": escrow.orderID})
        return escrow

    def dispute(
        self,
        escrow_id: int,
        identity: Identity,
        reason: str,
        description: Optional[str] = None,
    ) -> EscrowTransaction:
        escrow = self._load(escrow_id)
        is_party = (identity.is_buyer and escrow.buyerID == identity.id) or (
            identity.is_seller and escrow.sellerID == identity.id
        )
        if not is_party:
            raise AuthorizationError("Only the buyer or seller can dispute this transaction")
        if escrow.status != EscrowStatus.HELD:
            raise ValidationError(f"Cannot dispute escrow in {EscrowStatus(escrow.status).value} status")

        escrow.status = EscrowStatus.DISPUTED
        escrow.disputed_at = utcnow()
        escrow.disputed_by = identity.reference
        escrow.dispute_reason = require_text(reason, "reason", max_length=255)
        escrow.dispute_description = require_text(description, "description", max_length=2000, required=False)
        self.db.commit()

        increment_counter("escrow_disputes_total")
        record_event("escrow_disputed", {"escrow_id": escrow.escrowID, "by": identity.reference})
        self.audit.log(
            "DISPUTE_ESCROW",
            "escrow",
            escrow.escrowID,
            actor=identity,
            details={"reason": escrow.dispute_reason},
        )
        self.logger.warning("Escrow %s disputed by %s", escrow.escrow_number, identity.reference)
        return escrow

    def resolve_dispute(
        self,
        escrow_id: int,
        identity: Identity,
        refund_to_buyer: bool = False,
        release_to_seller: bool = False,
        resolution: Optional[str] = None,
        admin_notes: Optional[str] = None,
    ) -> EscrowTransaction:
        if not identity.is_admin:
            raise AuthorizationError("Only admins can resolve disputes")
        if refund_to_buyer == release_to_seller:
            raise ValidationError(
                "Choose exactly one of refundToBuyer or releaseToSeller",
                fields={"refundToBuyer": "exactly one required", "releaseToSeller": "exactly one required"},
            )
        escrow = self._load(escrow_id)
        if escrow.status != EscrowStatus.DISPUTED:
            raise ValidationError("Escrow is not in disputed status")

        escrow.resolution = require_text(resolution, "resolution", max_length=2000)
        escrow.admin_notes = require_text(admin_notes, "adminNotes", max_length=2000, required=False)
        escrow.resolved_at = utcnow()
        order_completed = False
        if refund_to_buyer:
            escrow.mark_refunded()
        else:
            escrow.mark_released(identity.reference, "Dispute resolved in favour of seller")
            order_completed = self._complete_order_if_settled(escrow.order)
        self.db.commit()

        outcome = "refunded" if refund_to_buyer else "released"
        increment_counter("escrow_disputes_resolved_total", labels={"outcome": outcome})
        self.audit.log(
            "RESOLVE_ESCROW_DISPUTE",
            "escrow",
            escrow.escrowID,
            actor=identity,
            details={"outcome": outcome, "resolution": escrow.resolution},
        )
        if order_completed:
            self._publish_completion(escrow.order)
        return escrow

    def auto_release(self, identity: Optional[Identity] = None, now: Optional[datetime] = None) -> int:
        """Release held escrows past their hold date on delivered orders."""
        if identity is not None and not identity.is_admin:
            raise AuthorizationError("Only admins can trigger auto-release")
        cutoff = as_utc(now) or utcnow()

        candidates = (
            self.db.query(EscrowTransaction)
            .join(EscrowTransaction.order)
            .filter(EscrowTransaction.status == EscrowStatus.HELD)
            .filter(Order.status.in_([OrderStatus.DELIVERED, OrderStatus.COMPLETED]))
            .all()
        )
        released = [escrow for escrow in candidates if as_utc(escrow.hold_until) <= cutoff]
        completed_orders = []
        for escrow in released:
            escrow.mark_released(SYSTEM_ACTOR, "Auto-released after hold period")
        for order in {escrow.order for escrow in released}:
            if self._complete_order_if_settled(order):
                completed_orders.append(order)
        self.db.commit()

        for escrow in released:
            self.audit.log(
                "RELEASE_ESCROW",
                "escrow",
                escrow.escrowID,
                actor=identity,
                details={"order_id": escrow.orderID, "automatic": True},
            )
        for order in completed_orders:
            self._publish_completion(order)
        increment_counter("escrow_released_total", amount=len(released), labels={"trigger": SYSTEM_ACTOR})
        self.logger.info("Auto-released %d escrow transactions", len(released))
        return len(released)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _complete_order_if_settled(self, order: Order) -> bool:
        if OrderStatus(order.status) != OrderStatus.DELIVERED:
            return False
        if not all(EscrowStatus(escrow.status) in SETTLED_ESCROW_STATUSES for escrow in order.escrows):
            return False
        order.transition_to(OrderStatus.COMPLETED)
        order.payment_status = PaymentStatus.PAID
        return True

    def _publish_completion(self, order: Order) -> None:
        publish_order_status_change(
            order_id=order.orderID,
            order_number=order.order_number,
            buyer_id=order.buyerID,
            seller_ids=order.seller_ids(),
            old_status=OrderStatus.DELIVERED.value,
            new_status=OrderStatus.COMPLETED.value,
        )
