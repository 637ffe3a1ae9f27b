from __future__ import annotations

import threading
from decimal import Decimal

import pytest

from gule.config import Config
from gule.database import SessionLocal
from gule.errors import (
    AuthorizationError,
    InsufficientStockError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from gule.models import (
    EscrowStatus,
    EscrowTransaction,
    Order,
    OrderStatus,
    PaymentStatus,
    Product,
    ProductStatus,
)
from gule.observability.metrics import get_counter_value
from gule.services.order_service import OrderService
from gule.services.audit import InMemoryAuditLogger
from gule.services.email_service import RecordingEmailSender, build_order_confirmation
from gule.services.notification_service import NotificationService

from conftest import SHIPPING_ADDRESS


class _RestockAfterShipmentConfig(Config):
    RESTOCK_AFTER_SHIPMENT = True


def _stock(db_session, product):
    db_session.expire_all()
    return db_session.get(Product, product.productID).stock


def test_create_order_snapshots_prices_and_decrements_stock(factory, place_order, db_session, email_sender, audit_logger):
    buyer = factory.buyer()
    lamp = factory.product(stock=5, price=Decimal("40.00"))
    rug = factory.product(stock=3, price=Decimal("12.50"))

    order = place_order(buyer, (lamp, 2), (rug, 3))

    assert order.status == OrderStatus.PENDING
    assert order.order_number.startswith("ORD-")
    assert order.total_amount == Decimal("117.50")
    assert order.subtotal == order.total_amount
    assert _stock(db_session, lamp) == 3
    assert _stock(db_session, rug) == 0
    assert db_session.get(Product, lamp.productID).total_sales == 2
    assert audit_logger.actions() == ["CREATE_ORDER"]
    assert email_sender.sent[0]["to"] == [buyer.email]


def test_client_supplied_unit_price_is_ignored(factory, order_service):
    buyer = factory.buyer()
    product = factory.product(price=Decimal("30.00"))

    order = order_service.create_order(
        buyer.buyerID,
        [{"product": product.productID, "quantity": 1, "unitPrice": "0.01"}],
        dict(SHIPPING_ADDRESS),
        "mobile_money",
    )

    assert order.items[0].unit_price == Decimal("30.00")
    assert order.total_amount == Decimal("30.00")


def test_creation_is_all_or_nothing(factory, place_order, db_session, audit_logger):
    buyer = factory.buyer()
    plenty = factory.product(stock=5)
    scarce = factory.product(stock=1)

    with pytest.raises(InsufficientStockError) as excinfo:
        place_order(buyer, (plenty, 2), (scarce, 3))

    assert excinfo.value.product_id == scarce.productID
    assert excinfo.value.status_code == 409
    assert _stock(db_session, plenty) == 5
    assert _stock(db_session, scarce) == 1
    assert db_session.query(Order).count() == 0
    assert db_session.query(EscrowTransaction).count() == 0
    assert audit_logger.entries == []


def test_missing_product_is_not_found(factory, place_order, db_session):
    buyer = factory.buyer()
    product = factory.product(stock=4)
    ghost = Product(productID=9999)

    with pytest.raises(NotFoundError):
        place_order(buyer, (product, 1), (ghost, 1))
    assert _stock(db_session, product) == 4


def test_inactive_product_cannot_be_purchased(factory, place_order):
    buyer = factory.buyer()
    pending = factory.product(status=ProductStatus.PENDING)

    with pytest.raises(ValidationError) as excinfo:
        place_order(buyer, (pending, 1))
    assert "not available" in excinfo.value.message


@pytest.mark.parametrize(
    "items",
    [
        [],
        [{"product": 1, "quantity": 0}],
        [{"product": 1, "quantity": -2}],
        [{"product": 1, "quantity": 1.5}],
        [{"product": 1, "quantity": 101}],
        [{"quantity": 1}],
    ],
)
def test_malformed_items_are_rejected(factory, order_service, items):
    buyer = factory.buyer()
    factory.product()

    with pytest.raises(ValidationError):
        order_service.create_order(buyer.buyerID, items, dict(SHIPPING_ADDRESS), "card")


def test_shipping_address_and_payment_method_are_validated(factory, order_service):
    buyer = factory.buyer()
    product = factory.product()
    items = [{"product": product.productID, "quantity": 1}]

    with pytest.raises(ValidationError):
        order_service.create_order(buyer.buyerID, items, {"street": "x", "city": "y"}, "card")
    with pytest.raises(ValidationError):
        order_service.create_order(buyer.buyerID, items, dict(SHIPPING_ADDRESS), "barter")


def test_stale_stock_read_cannot_oversell_last_unit(factory, db_session):
    buyer_one = factory.buyer()
    buyer_two = factory.buyer()
    product = factory.product(stock=1)
    items = [{"product": product.productID, "quantity": 1}]

    first_session = SessionLocal()
    second_session = SessionLocal()
    try:
        first = OrderService(first_session, audit_logger=InMemoryAuditLogger(), email_sender=RecordingEmailSender())
        second = OrderService(second_session, audit_logger=InMemoryAuditLogger(), email_sender=RecordingEmailSender())

        # Both checkouts observe one unit in stock before either writes
        assert first_session.get(Product, product.productID).stock == 1
        assert second_session.get(Product, product.productID).stock == 1

        first.create_order(buyer_one.buyerID, items, dict(SHIPPING_ADDRESS), "card")
        with pytest.raises(InsufficientStockError):
            second.create_order(buyer_two.buyerID, items, dict(SHIPPING_ADDRESS), "card")
    finally:
        first_session.close()
        second_session.close()

    assert _stock(db_session, product) == 0
    assert db_session.query(Order).count() == 1



def test_concurrent_checkouts_sell_the_last_unit_once(factory, db_session):
    product = factory.product(stock=1)
    buyer_ids = [factory.buyer().buyerID for _ in range(6)]
    items = [{"product": product.productID, "quantity": 1}]
    barrier = threading.Barrier(len(buyer_ids))
    outcomes = []
    outcomes_lock = threading.Lock()

    def checkout(buyer_id):
        session = SessionLocal()
        service = OrderService(session, audit_logger=InMemoryAuditLogger(), email_sender=RecordingEmailSender())
        try:
            barrier.wait()
            service.create_order(buyer_id, items, dict(SHIPPING_ADDRESS), "card")
            outcome = "sold"
        except InsufficientStockError:
            outcome = "out_of_stock"
        except Exception as exc:
            outcome = type(exc).__name__
        finally:
            session.close()
        with outcomes_lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=checkout, args=(buyer_id,)) for buyer_id in buyer_ids]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert sorted(outcomes) == ["out_of_stock"] * 5 + ["sold"]
    assert _stock(db_session, product) == 0
    assert db_session.query(Order).count() == 1


class _FailingEmailSender(RecordingEmailSender):
    def send(self, payload):
        raise RuntimeError("mail queue is down")


class _BrokenAuditLogger(InMemoryAuditLogger):
    def write(self, entry):
        raise OSError("audit volume is full")


def test_email_failure_does_not_fail_checkout(factory, db_session, audit_logger):
    service = OrderService(db_session, audit_logger=audit_logger, email_sender=_FailingEmailSender())
    product = factory.product(stock=2)

    order = service.create_order(
        factory.buyer().buyerID, [{"product": product.productID, "quantity": 1}], dict(SHIPPING_ADDRESS), "card"
    )

    assert order.status == OrderStatus.PENDING
    assert "CREATE_ORDER" in audit_logger.actions()
    assert get_counter_value("emails_failed_total") == 1


def test_audit_failure_does_not_fail_checkout(factory, db_session, email_sender):
    service = OrderService(db_session, audit_logger=_BrokenAuditLogger(), email_sender=email_sender)
    product = factory.product(stock=2)

    order = service.create_order(
        factory.buyer().buyerID, [{"product": product.productID, "quantity": 1}], dict(SHIPPING_ADDRESS), "card"
    )

    assert order.orderID is not None
    assert db_session.query(Order).count() == 1
    assert len(email_sender.sent) == 1
    assert get_counter_value("audit_failures_total", labels={"action": "CREATE_ORDER"}) == 1

def test_one_escrow_is_held_per_seller(factory, place_order):
    buyer = factory.buyer()
    seller_a = factory.seller()
    seller_b = factory.seller()
    a1 = factory.product(seller=seller_a, price=Decimal("100.00"))
    a2 = factory.product(seller=seller_a, price=Decimal("50.00"))
    b1 = factory.product(seller=seller_b, price=Decimal("20.00"))

    order = place_order(buyer, (a1, 1), (a2, 1), (b1, 2))

    escrows = {escrow.sellerID: escrow for escrow in order.escrows}
    assert set(escrows) == {seller_a.sellerID, seller_b.sellerID}
    assert escrows[seller_a.sellerID].amount == Decimal("150.00")
    assert escrows[seller_a.sellerID].commission == Decimal("7.50")
    assert escrows[seller_a.sellerID].net_amount == Decimal("142.50")
    assert escrows[seller_b.sellerID].amount == Decimal("40.00")
    assert all(escrow.status == EscrowStatus.HELD for escrow in order.escrows)


def test_order_creation_notifies_buyer_and_seller(factory, place_order):
    buyer = factory.buyer()
    seller = factory.seller()
    product = factory.product(seller=seller)

    place_order(buyer, (product, 1))

    notifications = NotificationService()
    assert notifications.get_unread_count(f"buyer:{buyer.buyerID}") == 1
    assert notifications.get_unread_count(f"seller:{seller.sellerID}") == 1


# ----------------------------------------------------------------------
# Status transitions
# ----------------------------------------------------------------------
def test_seller_walks_order_to_shipped_and_buyer_confirms_delivery(factory, place_order, order_service):
    buyer = factory.buyer()
    seller = factory.seller()
    product = factory.product(seller=seller)
    order = place_order(buyer, (product, 1))
    seller_id = factory.identity(seller)

    for status in ("confirmed", "processing", "shipped"):
        order = order_service.update_status(order.orderID, seller_id, status)
    assert order.shipped_at is not None

    order = order_service.update_status(order.orderID, factory.identity(buyer), "delivered")
    assert order.status == OrderStatus.DELIVERED
    assert order.delivered_at is not None


def test_buyer_cannot_confirm_their_own_order(factory, place_order, order_service):
    buyer = factory.buyer()
    order = place_order(buyer, (factory.product(), 1))

    with pytest.raises(AuthorizationError):
        order_service.update_status(order.orderID, factory.identity(buyer), "confirmed")


def test_unrelated_seller_cannot_touch_order(factory, place_order, order_service):
    buyer = factory.buyer()
    order = place_order(buyer, (factory.product(), 1))

    with pytest.raises(AuthorizationError):
        order_service.update_status(order.orderID, factory.identity(factory.seller()), "confirmed")


def test_backward_transition_is_rejected(factory, place_order, advance, order_service):
    order = place_order(factory.buyer(), (factory.product(), 1))
    order = advance(order, "confirmed", "processing", "shipped")

    with pytest.raises(InvalidTransitionError) as excinfo:
        advance(order, "pending")
    assert excinfo.value.status_code == 400


def test_skipping_ahead_requires_admin_override(factory, place_order, order_service, audit_logger):
    buyer = factory.buyer()
    seller = factory.seller()
    order = place_order(buyer, (factory.product(seller=seller), 1))
    admin = factory.identity(factory.admin())

    with pytest.raises(InvalidTransitionError):
        order_service.update_status(order.orderID, admin, "shipped")
    with pytest.raises(AuthorizationError):
        order_service.update_status(order.orderID, factory.identity(seller), "shipped", override=True)

    order = order_service.update_status(order.orderID, admin, "shipped", override=True)
    assert order.status == OrderStatus.SHIPPED
    assert audit_logger.entries[-1].details["override"] is True


@pytest.mark.parametrize("terminal", ["completed", "cancelled", "refunded"])
def test_terminal_orders_never_change_status(factory, place_order, advance, order_service, terminal):
    order = place_order(factory.buyer(), (factory.product(), 1))
    if terminal == "completed":
        order = advance(order, "confirmed", "processing", "shipped", "delivered", "completed")
    else:
        order = advance(order, terminal)
    admin = factory.identity(factory.admin())

    for target in ("pending", "confirmed", "delivered", "completed"):
        with pytest.raises(InvalidTransitionError):
            order_service.update_status(order.orderID, admin, target, override=True)

    updated = order_service.update_status(order.orderID, admin, tracking_number="TRK-1", notes="archived")
    assert updated.tracking_number == "TRK-1"
    assert updated.status == OrderStatus(terminal)


def test_cancel_before_shipment_restores_stock_once(factory, place_order, order_service, db_session):
    buyer = factory.buyer()
    product = factory.product(stock=4)
    order = place_order(buyer, (product, 3))
    assert _stock(db_session, product) == 1

    order = order_service.cancel_order(order.orderID, factory.identity(buyer), reason="changed my mind")

    assert order.status == OrderStatus.CANCELLED
    assert order.cancellation_reason == "changed my mind"
    assert order.stock_restored is True
    assert all(escrow.status == EscrowStatus.CANCELLED for escrow in order.escrows)
    assert _stock(db_session, product) == 4

    with pytest.raises(InvalidTransitionError):
        order_service.cancel_order(order.orderID, factory.identity(buyer))
    assert _stock(db_session, product) == 4


def test_cancel_order_only_from_cancellable_states(factory, place_order, advance, order_service):
    buyer = factory.buyer()
    order = place_order(buyer, (factory.product(), 1))
    order = advance(order, "confirmed", "processing", "shipped")

    with pytest.raises(InvalidTransitionError):
        order_service.cancel_order(order.orderID, factory.identity(factory.admin()))



def test_buyer_can_cancel_while_processing(factory, place_order, advance, order_service, db_session):
    buyer = factory.buyer()
    product = factory.product(stock=3)
    order = advance(place_order(buyer, (product, 2)), "confirmed", "processing")

    with pytest.raises(AuthorizationError):
        order_service.cancel_order(order.orderID, factory.identity(factory.buyer()))

    order = order_service.cancel_order(order.orderID, factory.identity(buyer), reason="found it cheaper")

    assert order.status == OrderStatus.CANCELLED
    assert order.cancellation_reason == "found it cheaper"
    assert _stock(db_session, product) == 3

def test_refund_after_shipment_keeps_stock_by_default(factory, place_order, advance, db_session):
    product = factory.product(stock=5)
    order = place_order(factory.buyer(), (product, 2))
    order = advance(order, "confirmed", "processing", "shipped", "refunded")

    assert order.payment_status == PaymentStatus.REFUNDED
    assert all(escrow.status == EscrowStatus.REFUNDED for escrow in order.escrows)
    assert order.stock_restored is False
    assert _stock(db_session, product) == 3


def test_refund_after_shipment_restocks_when_enabled(factory, db_session, audit_logger, email_sender):
    service = OrderService(
        db_session,
        config=_RestockAfterShipmentConfig,
        audit_logger=audit_logger,
        email_sender=email_sender,
    )
    buyer = factory.buyer()
    product = factory.product(stock=5)
    admin = factory.identity(factory.admin())
    order = service.create_order(
        buyer.buyerID, [{"product": product.productID, "quantity": 2}], dict(SHIPPING_ADDRESS), "card"
    )
    for status in ("confirmed", "processing", "shipped", "delivered", "refunded"):
        order = service.update_status(order.orderID, admin, status)

    assert order.stock_restored is True
    assert _stock(db_session, product) == 5


def test_completion_releases_escrow_and_marks_paid(factory, place_order, advance):
    order = place_order(factory.buyer(), (factory.product(), 1))
    order = advance(order, "confirmed", "processing", "shipped", "delivered", "completed")

    assert order.payment_status == PaymentStatus.PAID
    assert order.completed_at is not None
    assert all(escrow.status == EscrowStatus.RELEASED for escrow in order.escrows)


def test_seller_view_and_listing(factory, place_order, order_service):
    buyer = factory.buyer()
    seller = factory.seller()
    other = factory.seller()
    order = place_order(buyer, (factory.product(seller=seller), 1), (factory.product(seller=other), 1))
    place_order(buyer, (factory.product(seller=other), 1))

    orders, meta = order_service.list_seller_orders(seller.sellerID, page=1, limit=10)
    assert [o.orderID for o in orders] == [order.orderID]
    assert meta["total"] == 1

    orders, meta = order_service.list_buyer_orders(buyer.buyerID, page=1, limit=1)
    assert meta == {"page": 1, "limit": 1, "total": 2, "pages": 2}


def test_order_statistics_exclude_cancelled_revenue(factory, place_order, advance, order_service):
    buyer = factory.buyer()
    product = factory.product(price=Decimal("10.00"))
    place_order(buyer, (product, 2))
    cancelled = place_order(buyer, (product, 1))
    advance(cancelled, "cancelled")

    stats = order_service.order_statistics(factory.identity(buyer))

    assert stats["total_orders"] == 2
    assert stats["by_status"]["pending"] == 1
    assert stats["by_status"]["cancelled"] == 1
    assert stats["total_revenue"] == "20.00"
    assert stats["average_order_value"] == "20.00"


def test_confirmation_email_escapes_item_names(factory, place_order, email_sender):
    product = factory.product(name='<img src=x onerror="alert(1)">Clay vase')

    place_order(factory.buyer(), (product, 1))

    html = email_sender.sent[0]["html"]
    assert "<img" not in html
    assert "<td>Clay vase</td>" in html


def test_confirmation_email_lists_each_line():
    payload = build_order_confirmation(
        "ORD-1",
        "hana@example.com",
        [{"name": "Mug & saucer", "quantity": 2, "line_total": "18.00"}],
        Decimal("18.00"),
    )

    assert payload["to"] == ["hana@example.com"]
    assert payload["subject"] == "Order ORD-1 confirmed"
    assert "<td>Mug &amp; saucer</td><td>2</td><td>18.00</td>" in payload["html"]
