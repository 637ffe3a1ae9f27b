from __future__ import annotations

import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from gule.errors import (
    AuthorizationError,
    DuplicateReportError,
    DuplicateReviewError,
    NotFoundError,
    PurchaseNotVerifiedError,
    ValidationError,
)
from gule.identity import Identity
from gule.models import (
    REVIEWABLE_ORDER_STATUSES,
    Order,
    OrderStatus,
    Product,
    ReportReason,
    Review,
    ReviewReport,
    UserType,
    utcnow,
)
from gule.observability import increment_counter, record_event
from gule.services.audit import AuditLogger, get_audit_logger
from gule.validation import paginate, require_enum, require_id, require_int, require_text

MAX_COMMENT_LENGTH = 1000
MAX_TITLE_LENGTH = 100
_ONE_DECIMAL = Decimal("0.1")


def rollup_rating(ratings: List[int]) -> Tuple[Decimal, int]:
    """Mean of integer ratings, half-up to one decimal; (0.0, 0) when empty."""
    if not ratings:
        return Decimal("0.0"), 0
    mean = Decimal(sum(ratings)) / Decimal(len(ratings))
    return mean.quantize(_ONE_DECIMAL, rounding=ROUND_HALF_UP), len(ratings)


class ReviewService:
    """Verified-purchase reviews and the cached product rating."""

    def __init__(self, db_session: Session, audit_logger: Optional[AuditLogger] = None) -> None:
        self.db = db_session
        self.audit = audit_logger or get_audit_logger()
        self.logger = logging.getLogger(__name__)

    def _load(self, review_id: int) -> Review:
        review = self.db.get(Review, review_id)
        if review is None:
            raise NotFoundError("Review not found")
        return review

    def get_review(self, review_id: int) -> Review:
        return self._load(review_id)

    def recompute_product_rating(self, product_id: int) -> Product:
        """Refresh rating and review_count from every stored review. Caller commits."""
        product = self.db.get(Product, product_id)
        ratings = [rating for (rating,) in self.db.query(Review.rating).filter(Review.productID == product_id)]
        product.rating, product.review_count = rollup_rating(ratings)
        return product

    # ------------------------------------------------------------------
    # Buyer flows
    # ------------------------------------------------------------------
    def create_review(
        self,
        buyer_id: int,
        product_id: Any,
        order_id: Any,
        rating: Any,
        comment: Any,
        title: Any = None,
    ) -> Review:
        product_id = require_id(product_id, "productId")
        order_id = require_id(order_id, "orderId")
        rating = require_int(rating, "rating", minimum=1, maximum=5)
        comment = require_text(comment, "comment", max_length=MAX_COMMENT_LENGTH)
        title = require_text(title, "title", max_length=MAX_TITLE_LENGTH, required=False)

        product = self.db.get(Product, product_id)
        if product is None:
            raise NotFoundError("Product not found")

        order = self.db.get(Order, order_id)
        verified = (
            order is not None
            and order.buyerID == buyer_id
            and order.contains_product(product_id)
            and OrderStatus(order.status) in REVIEWABLE_ORDER_STATUSES
        )
        if not verified:
            increment_counter("reviews_rejected_total", labels={"reason": "unverified"})
            raise PurchaseNotVerifiedError("You can only review products you have purchased and received")

        existing = (
            self.db.query(Review.reviewID)
            .filter(Review.buyerID == buyer_id, Review.productID == product_id)
            .first()
        )
        if existing is not None:
            increment_counter("reviews_rejected_total", labels={"reason": "duplicate"})
            raise DuplicateReviewError("You have already reviewed this product")

        review = Review(
            buyerID=buyer_id,
            sellerID=product.sellerID,
            productID=product_id,
            orderID=order_id,
            rating=rating,
            title=title,
            comment=comment,
        )
        self.db.add(review)
        try:
            self.db.flush()
        except IntegrityError:
            # A concurrent request won the unique (buyer, product) slot
            self.db.rollback()
            raise DuplicateReviewError("You have already reviewed this product") from None
        self.recompute_product_rating(product_id)
        self.db.commit()

        increment_counter("reviews_created_total", labels={"rating": str(rating)})
        record_event("review_created", {"review_id": review.reviewID, "product_id": product_id, "rating": rating})
        self.audit.log(
            "CREATE_REVIEW",
            "review",
            review.reviewID,
            actor=Identity(buyer_id, UserType.BUYER, UserType.BUYER.value),
            details={"product_id": product_id, "order_id": order_id, "rating": rating},
        )
        self.logger.info("Review %s created for product %s", review.reviewID, product_id)
        return review

    def update_review(
        self,
        review_id: int,
        buyer_id: int,
        rating: Any = None,
        comment: Any = None,
        title: Any = None,
    ) -> Review:
        review = self._load(review_id)
        if review.buyerID != buyer_id:
            raise AuthorizationError("You can only update your own reviews")
        if rating is None and comment is None and title is None:
            raise ValidationError("Nothing to update")

        changes: Dict[str, Any] = {}
        if rating is not None:
            review.rating = changes["rating"] = require_int(rating, "rating", minimum=1, maximum=5)
        if comment is not None:
            review.comment = require_text(comment, "comment", max_length=MAX_COMMENT_LENGTH)
            changes["comment"] = True
        if title is not None:
            review.title = require_text(title, "title", max_length=MAX_TITLE_LENGTH, required=False)
            changes["title"] = True
        self.db.flush()
        self.recompute_product_rating(review.productID)
        self.db.commit()

        self.audit.log(
            "UPDATE_REVIEW",
            "review",
            review.reviewID,
            actor=Identity(buyer_id, UserType.BUYER, UserType.BUYER.value),
            details=changes,
        )
        return review

    def delete_review(self, review_id: int, identity: Identity) -> None:
        review = self._load(review_id)
        if not (identity.is_admin or (identity.is_buyer and review.buyerID == identity.id)):
            raise AuthorizationError("You can only delete your own reviews")

        product_id = review.productID
        self.db.delete(review)
        self.db.flush()
        self.recompute_product_rating(product_id)
        self.db.commit()

        increment_counter("reviews_deleted_total", labels={"by": identity.user_type.value})
        self.audit.log(
            "DELETE_REVIEW",
            "review",
            review_id,
            actor=identity,
            details={"product_id": product_id},
        )

    # ------------------------------------------------------------------
    # Moderation and seller replies
    # ------------------------------------------------------------------
    def report_review(
        self,
        review_id: int,
        identity: Identity,
        reason: Any,
        description: Any = None,
    ) -> ReviewReport:
        review = self._load(review_id)
        reason = require_enum(ReportReason, reason, "reason")
        description = require_text(description, "description", max_length=500, required=False)
        if review.has_report_from(identity.user_type, identity.id):
            raise DuplicateReportError("You have already reported this review")

        report = ReviewReport(
            reporterID=identity.id,
            reporter_type=identity.user_type,
            reason=reason,
            description=description,
        )
        review.reports.append(report)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise DuplicateReportError("You have already reported this review") from None

        increment_counter("review_reports_total", labels={"reason": reason.value})
        self.audit.log(
            "REPORT_REVIEW",
            "review",
            review_id,
            actor=identity,
            details={"reason": reason.value},
        )
        self.logger.info("Review %s reported by %s", review_id, identity.reference)
        return report

    def respond_to_review(self, review_id: int, seller_id: int, response: Any) -> Review:
        review = self._load(review_id)
        if review.sellerID != seller_id:
            raise AuthorizationError("You can only respond to reviews of your own products")
        review.seller_response = require_text(response, "response", max_length=MAX_COMMENT_LENGTH)
        review.seller_responded_at = utcnow()
        self.db.commit()

        self.audit.log(
            "RESPOND_REVIEW",
            "review",
            review_id,
            actor=Identity(seller_id, UserType.SELLER, UserType.SELLER.value),
        )
        return review

    # ------------------------------------------------------------------
    # Listings
    # ------------------------------------------------------------------
    def list_product_reviews(
        self,
        product_id: int,
        page: int,
        limit: int,
        rating: Any = None,
    ) -> Tuple[List[Review], Dict[str, int], Dict[str, Any]]:
        product = self.db.get(Product, product_id)
        if product is None:
            raise NotFoundError("Product not found")

        query = self.db.query(Review).filter(Review.productID == product_id)
        if rating not in (None, ""):
            query = query.filter(Review.rating == require_int(rating, "rating", minimum=1, maximum=5))
        reviews, meta = paginate(query.order_by(Review.created_at.desc(), Review.reviewID.desc()), page, limit)
        return reviews, meta, self.product_review_statistics(product)

    def product_review_statistics(self, product: Product) -> Dict[str, Any]:
        distribution = {str(star): 0 for star in range(1, 6)}
        rows = (
            self.db.query(Review.rating, func.count(Review.reviewID))
            .filter(Review.productID == product.productID)
            .group_by(Review.rating)
            .all()
        )
        for star, total in rows:
            distribution[str(star)] = total
        return {
            "average_rating": float(product.rating or 0),
            "total_reviews": product.review_count or 0,
            "rating_distribution": distribution,
        }

    def review_statistics(self, identity: Identity) -> Dict[str, Any]:
        """Rating summary over the reviews a caller wrote, received, or (admin) all."""
        query = self.db.query(Review.rating, func.count(Review.reviewID))
        if identity.is_buyer:
            query = query.filter(Review.buyerID == identity.id)
        elif identity.is_seller:
            query = query.filter(Review.sellerID == identity.id)

        distribution = {str(star): 0 for star in range(1, 6)}
        ratings: List[int] = []
        for star, total in query.group_by(Review.rating).all():
            distribution[str(star)] = total
            ratings.extend([star] * total)
        average, count = rollup_rating(ratings)
        return {
            "total_reviews": count,
            "average_rating": float(average),
            "rating_distribution": distribution,
        }

    def list_buyer_reviews(self, buyer_id: int, page: int, limit: int):
        query = self.db.query(Review).filter(Review.buyerID == buyer_id).order_by(Review.created_at.desc())
        return paginate(query, page, limit)

    def list_seller_reviews(self, seller_id: int, page: int, limit: int):
        query = self.db.query(Review).filter(Review.sellerID == seller_id).order_by(Review.created_at.desc())
        return paginate(query, page, limit)
