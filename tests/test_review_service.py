from __future__ import annotations

from decimal import Decimal

import pytest

from gule.errors import (
    AuthorizationError,
    DuplicateReportError,
    DuplicateReviewError,
    NotFoundError,
    PurchaseNotVerifiedError,
    ValidationError,
)
from gule.models import Product, Review
from gule.services.review_service import rollup_rating


@pytest.fixture
def delivered_purchase(factory, place_order, advance):
    """A buyer holding a delivered order for one product."""
    buyer = factory.buyer()
    seller = factory.seller()
    product = factory.product(seller=seller)
    order = place_order(buyer, (product, 1))
    order = advance(order, "confirmed", "processing", "shipped", "delivered")
    return buyer, seller, product, order


def _product(db_session, product):
    db_session.expire_all()
    return db_session.get(Product, product.productID)


@pytest.mark.parametrize(
    "ratings, expected",
    [
        ([], (Decimal("0.0"), 0)),
        ([5], (Decimal("5.0"), 1)),
        ([5, 3], (Decimal("4.0"), 2)),
        ([5, 4, 4], (Decimal("4.3"), 3)),
        ([4, 5], (Decimal("4.5"), 2)),
        ([1, 2, 2, 2], (Decimal("1.8"), 4)),
    ],
)
def test_rollup_rating(ratings, expected):
    assert rollup_rating(ratings) == expected


def test_review_on_pending_order_is_refused(factory, place_order, review_service):
    buyer = factory.buyer()
    product = factory.product()
    order = place_order(buyer, (product, 1))

    with pytest.raises(PurchaseNotVerifiedError) as excinfo:
        review_service.create_review(buyer.buyerID, product.productID, order.orderID, 5, "Great")
    assert excinfo.value.status_code == 403


def test_review_with_someone_elses_order_is_refused(factory, delivered_purchase, review_service):
    _, _, product, order = delivered_purchase
    stranger = factory.buyer()

    with pytest.raises(PurchaseNotVerifiedError):
        review_service.create_review(stranger.buyerID, product.productID, order.orderID, 4, "Nice")


def test_review_for_product_not_in_order_is_refused(factory, delivered_purchase, review_service):
    buyer, seller, _, order = delivered_purchase
    other_product = factory.product(seller=seller)

    with pytest.raises(PurchaseNotVerifiedError):
        review_service.create_review(buyer.buyerID, other_product.productID, order.orderID, 4, "Nice")


def test_review_for_missing_product_is_not_found(delivered_purchase, review_service):
    buyer, _, _, order = delivered_purchase

    with pytest.raises(NotFoundError):
        review_service.create_review(buyer.buyerID, 9999, order.orderID, 4, "Nice")


@pytest.mark.parametrize("rating", [0, 6, 4.5, "five", None])
def test_rating_must_be_integer_between_one_and_five(delivered_purchase, review_service, rating):
    buyer, _, product, order = delivered_purchase

    with pytest.raises(ValidationError):
        review_service.create_review(buyer.buyerID, product.productID, order.orderID, rating, "Hmm")


def test_comment_length_is_bounded(delivered_purchase, review_service):
    buyer, _, product, order = delivered_purchase

    with pytest.raises(ValidationError):
        review_service.create_review(buyer.buyerID, product.productID, order.orderID, 4, "x" * 1001)


def test_rollup_follows_reviews(factory, place_order, advance, review_service, db_session, delivered_purchase):
    buyer, seller, product, order = delivered_purchase

    review_service.create_review(buyer.buyerID, product.productID, order.orderID, 5, "Lovely")
    refreshed = _product(db_session, product)
    assert (refreshed.rating, refreshed.review_count) == (Decimal("5.0"), 1)

    second_buyer = factory.buyer()
    second_order = advance(place_order(second_buyer, (product, 1)), "confirmed", "processing", "shipped", "delivered")
    review_service.create_review(second_buyer.buyerID, product.productID, second_order.orderID, 3, "Fine")
    refreshed = _product(db_session, product)
    assert (refreshed.rating, refreshed.review_count) == (Decimal("4.0"), 2)


def test_duplicate_review_always_fails(delivered_purchase, review_service, db_session):
    buyer, _, product, order = delivered_purchase
    review_service.create_review(buyer.buyerID, product.productID, order.orderID, 5, "Lovely")

    with pytest.raises(DuplicateReviewError) as excinfo:
        review_service.create_review(buyer.buyerID, product.productID, order.orderID, 2, "Changed my mind", title="Update")
    assert excinfo.value.status_code == 400
    assert db_session.query(Review).count() == 1
    assert _product(db_session, product).review_count == 1


def test_completed_orders_also_admit_reviews(factory, place_order, advance, review_service):
    buyer = factory.buyer()
    product = factory.product()
    order = advance(place_order(buyer, (product, 1)), "confirmed", "processing", "shipped", "delivered", "completed")

    review = review_service.create_review(buyer.buyerID, product.productID, order.orderID, 4, "Arrived well")
    assert review.sellerID == product.sellerID


def test_update_and_delete_recompute_rollup(factory, delivered_purchase, review_service, db_session, audit_logger):
    buyer, _, product, order = delivered_purchase
    review = review_service.create_review(buyer.buyerID, product.productID, order.orderID, 5, "Lovely")

    with pytest.raises(AuthorizationError):
        review_service.update_review(review.reviewID, factory.buyer().buyerID, rating=1)

    review_service.update_review(review.reviewID, buyer.buyerID, rating=2)
    assert _product(db_session, product).rating == Decimal("2.0")

    review_service.delete_review(review.reviewID, factory.identity(factory.admin()))
    refreshed = _product(db_session, product)
    assert (refreshed.rating, refreshed.review_count) == (Decimal("0.0"), 0)
    assert audit_logger.actions() == ["CREATE_REVIEW", "UPDATE_REVIEW", "DELETE_REVIEW"]


def test_other_buyer_cannot_delete_review(factory, delivered_purchase, review_service):
    buyer, _, product, order = delivered_purchase
    review = review_service.create_review(buyer.buyerID, product.productID, order.orderID, 5, "Lovely")

    with pytest.raises(AuthorizationError):
        review_service.delete_review(review.reviewID, factory.identity(factory.buyer()))


def test_report_is_accepted_once_per_reporter(factory, delivered_purchase, review_service):
    buyer, seller, product, order = delivered_purchase
    review = review_service.create_review(buyer.buyerID, product.productID, order.orderID, 1, "Awful")
    seller_identity = factory.identity(seller)

    review_service.report_review(review.reviewID, seller_identity, "fake", "Never shipped to this person")
    with pytest.raises(DuplicateReportError):
        review_service.report_review(review.reviewID, seller_identity, "spam")

    review_service.report_review(review.reviewID, factory.identity(factory.buyer()), "offensive")
    assert len(review_service.get_review(review.reviewID).reports) == 2

    with pytest.raises(ValidationError):
        review_service.report_review(review.reviewID, factory.identity(factory.admin()), "boring")


def test_only_products_seller_may_respond(factory, delivered_purchase, review_service):
    buyer, seller, product, order = delivered_purchase
    review = review_service.create_review(buyer.buyerID, product.productID, order.orderID, 4, "Good")

    with pytest.raises(AuthorizationError):
        review_service.respond_to_review(review.reviewID, factory.seller().sellerID, "Thanks")

    review = review_service.respond_to_review(review.reviewID, seller.sellerID, "Thank you!")
    assert review.seller_response == "Thank you!"
    assert review.seller_responded_at is not None


def test_product_review_listing_includes_distribution(delivered_purchase, review_service):
    buyer, _, product, order = delivered_purchase
    review_service.create_review(buyer.buyerID, product.productID, order.orderID, 4, "Good")

    reviews, meta, stats = review_service.list_product_reviews(product.productID, page=1, limit=10)

    assert len(reviews) == 1
    assert meta["total"] == 1
    assert stats["average_rating"] == 4.0
    assert stats["total_reviews"] == 1
    assert stats["rating_distribution"] == {"1": 0, "2": 0, "3": 0, "4": 1, "5": 0}


def test_review_text_is_stripped_of_markup(delivered_purchase, review_service):
    buyer, _, product, order = delivered_purchase

    review = review_service.create_review(
        buyer.buyerID, product.productID, order.orderID, 5, "<script>alert(1)</script>Lovely <b>glaze</b>"
    )

    assert "<" not in review.comment
    assert review.comment.endswith("Lovely glaze")


def test_oversized_ids_are_rejected_before_lookup(delivered_purchase, review_service):
    buyer, _, product, _ = delivered_purchase

    with pytest.raises(ValidationError) as excinfo:
        review_service.create_review(buyer.buyerID, product.productID, 10**25, 5, "Great")
    assert "orderId" in excinfo.value.fields


def test_review_statistics_follow_the_caller(factory, delivered_purchase, place_order, advance, review_service):
    buyer, seller, product, order = delivered_purchase
    review_service.create_review(buyer.buyerID, product.productID, order.orderID, 5, "Superb")
    other_buyer = factory.buyer()
    other_product = factory.product(seller=seller)
    other_order = advance(
        place_order(other_buyer, (other_product, 1)), "confirmed", "processing", "shipped", "delivered"
    )
    review_service.create_review(other_buyer.buyerID, other_product.productID, other_order.orderID, 4, "Good")

    seller_stats = review_service.review_statistics(factory.identity(seller))
    assert seller_stats["total_reviews"] == 2
    assert seller_stats["average_rating"] == 4.5
    assert seller_stats["rating_distribution"] == {"1": 0, "2": 0, "3": 0, "4": 1, "5": 1}

    buyer_stats = review_service.review_statistics(factory.identity(buyer))
    assert (buyer_stats["total_reviews"], buyer_stats["average_rating"]) == (1, 5.0)

    assert review_service.review_statistics(factory.identity(factory.admin()))["total_reviews"] == 2
    assert review_service.review_statistics(factory.identity(factory.seller()))["total_reviews"] == 0
