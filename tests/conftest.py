# tests/conftest.py
"""
Shared fixtures: a throwaway SQLite database, account/product factories,
services wired with in-memory collaborators, and a Flask test client.
"""
import os
import tempfile
from decimal import Decimal
from itertools import count

import pytest

# Must be set before gule.config is imported
_DB_DIR = tempfile.mkdtemp(prefix="gule-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_DB_DIR}/gule_test.db"
os.environ["AUDIT_LOG_BACKEND"] = "memory"
os.environ["EMAIL_ENABLED"] = "false"
os.environ["STRUCTURED_LOGS_ENABLED"] = "false"
os.environ["SUPER_ADMIN_EMAIL"] = ""
os.environ["JWT_SECRET_KEY"] = "gule-test-signing-key-0123456789abcdef"

from gule.database import Base, SessionLocal, engine  # noqa: E402
from gule.identity import Identity  # noqa: E402
from gule.main import app  # noqa: E402
from gule.auth import issue_token  # noqa: E402
from gule.models import (  # noqa: E402
    Admin,
    Buyer,
    Product,
    ProductStatus,
    Seller,
    SellerStatus,
)
from gule.observability.metrics import reset_metrics  # noqa: E402
from gule.services.audit import InMemoryAuditLogger, get_audit_logger  # noqa: E402
from gule.services.email_service import RecordingEmailSender  # noqa: E402
from gule.services.escrow_service import EscrowService  # noqa: E402
from gule.services.notification_service import NotificationService  # noqa: E402
from gule.services.order_service import OrderService  # noqa: E402
from gule.services.product_service import ProductService  # noqa: E402
from gule.services.review_service import ReviewService  # noqa: E402

PASSWORD = "password123"
SHIPPING_ADDRESS = {
    "street": "12 Bole Road",
    "city": "Addis Ababa",
    "state": "AA",
    "zip_code": "1000",
    "country": "Ethiopia",
}

_sequence = count(1)


class Factory:
    """Creates committed rows through the test session."""

    def __init__(self, session):
        self.session = session

    def _save(self, obj):
        self.session.add(obj)
        self.session.commit()
        return obj

    def buyer(self, **overrides):
        n = next(_sequence)
        buyer = Buyer(
            email=overrides.pop("email", f"buyer{n}@example.com"),
            first_name=overrides.pop("first_name", "Abebe"),
            last_name=overrides.pop("last_name", f"Buyer{n}"),
            **overrides,
        )
        buyer.set_password(PASSWORD)
        return self._save(buyer)

    def seller(self, **overrides):
        n = next(_sequence)
        seller = Seller(
            email=overrides.pop("email", f"seller{n}@example.com"),
            business_name=overrides.pop("business_name", f"Shop {n}"),
            status=overrides.pop("status", SellerStatus.ACTIVE),
            **overrides,
        )
        seller.set_password(PASSWORD)
        return self._save(seller)

    def admin(self, **overrides):
        n = next(_sequence)
        admin = Admin(
            email=overrides.pop("email", f"admin{n}@example.com"),
            name=overrides.pop("name", f"Admin {n}"),
            **overrides,
        )
        admin.set_password(PASSWORD)
        return self._save(admin)

    def product(self, seller=None, stock=10, price=Decimal("25.00"), status=ProductStatus.ACTIVE, **overrides):
        seller = seller or self.seller()
        product = Product(
            sellerID=seller.sellerID,
            name=overrides.pop("name", f"Product {next(_sequence)}"),
            description=overrides.pop("description", "Handmade"),
            category=overrides.pop("category", "crafts"),
            price=price,
            stock=stock,
            status=status,
            **overrides,
        )
        return self._save(product)

    @staticmethod
    def identity(account):
        return Identity(account.id, account.user_type, account.role)


@pytest.fixture(autouse=True)
def fresh_database():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    reset_metrics()
    NotificationService().clear()
    get_audit_logger().clear()
    yield


@pytest.fixture
def db_session():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def factory(db_session):
    return Factory(db_session)


@pytest.fixture
def audit_logger():
    return InMemoryAuditLogger()


@pytest.fixture
def email_sender():
    return RecordingEmailSender()


@pytest.fixture
def order_service(db_session, audit_logger, email_sender):
    return OrderService(db_session, audit_logger=audit_logger, email_sender=email_sender)


@pytest.fixture
def escrow_service(db_session, audit_logger):
    return EscrowService(db_session, audit_logger=audit_logger)


@pytest.fixture
def review_service(db_session, audit_logger):
    return ReviewService(db_session, audit_logger=audit_logger)


@pytest.fixture
def product_service(db_session, audit_logger):
    return ProductService(db_session, audit_logger=audit_logger)


@pytest.fixture
def place_order(order_service):
    """Checkout helper: place_order(buyer, (product, qty), ...)."""

    def _place(buyer, *lines, payment_method="card"):
        items = [{"product": product.productID, "quantity": quantity} for product, quantity in lines]
        return order_service.create_order(buyer.buyerID, items, dict(SHIPPING_ADDRESS), payment_method)

    return _place


@pytest.fixture
def advance(order_service, factory):
    """Walk an order forward as an admin, one legal step at a time."""
    admin = factory.admin()
    admin_identity = factory.identity(admin)

    def _advance(order, *statuses):
        for status in statuses:
            order = order_service.update_status(order.orderID, admin_identity, status)
        return order

    return _advance


@pytest.fixture
def client():
    app.config["TESTING"] = True
    with app.test_client() as test_client:
        yield test_client


@pytest.fixture
def auth_headers():
    def _headers(account):
        with app.app_context():
            token = issue_token(account)
        return {"Authorization": f"Bearer {token}"}

    return _headers
