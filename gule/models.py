# gule/models.py
from enum import Enum
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Enum as SAEnum,
)
from sqlalchemy.orm import relationship
from werkzeug.security import check_password_hash, generate_password_hash

# Use a single, shared Base for all models
from gule.database import Base
from gule.errors import InvalidTransitionError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _enum_column(enum_cls, name: str, **kwargs):
    return Column(
        SAEnum(
            enum_cls,
            name=name,
            native_enum=False,
            validate_strings=True,
            values_callable=lambda members: [member.value for member in members],
        ),
        **kwargs,
    )


class UserType(str, Enum):
    BUYER = "buyer"
    SELLER = "seller"
    ADMIN = "admin"


class SellerStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    SUSPENDED = "suspended"


class ProductStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    REJECTED = "rejected"
    DELETED = "deleted"


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class PaymentMethod(str, Enum):
    CARD = "card"
    MOBILE_MONEY = "mobile_money"
    BANK_TRANSFER = "bank_transfer"
    CASH_ON_DELIVERY = "cash_on_delivery"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class EscrowStatus(str, Enum):
    HELD = "held"
    RELEASED = "released"
    DISPUTED = "disputed"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


class ReportReason(str, Enum):
    SPAM = "spam"
    INAPPROPRIATE = "inappropriate"
    FAKE = "fake"
    OFFENSIVE = "offensive"
    OTHER = "other"


TERMINAL_ORDER_STATUSES = frozenset(
    {OrderStatus.COMPLETED, OrderStatus.CANCELLED, OrderStatus.REFUNDED}
)
REVIEWABLE_ORDER_STATUSES = frozenset({OrderStatus.DELIVERED, OrderStatus.COMPLETED})
# Linear fulfilment path; cancelled/refunded branch off it
FULFILMENT_SEQUENCE = (
    OrderStatus.PENDING,
    OrderStatus.CONFIRMED,
    OrderStatus.PROCESSING,
    OrderStatus.SHIPPED,
    OrderStatus.DELIVERED,
    OrderStatus.COMPLETED,
)


class AccountMixin:
    email = Column(String(255), unique=True, nullable=False)
    password_hash = Column(String(255), nullable=False)
    phone = Column(String(50))
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    last_login_at = Column(DateTime(timezone=True))

    def set_password(self, password: str) -> None:
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        return check_password_hash(self.password_hash, password)

    @property
    def role(self) -> str:
        return self.user_type.value

    @property
    def display_name(self) -> str:
        return self.email


class Buyer(AccountMixin, Base):
    __tablename__ = 'Buyer'
    buyerID = Column(Integer, primary_key=True, autoincrement=True)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)

    orders = relationship("Order", back_populates="buyer")
    reviews = relationship("Review", back_populates="buyer")

    user_type = UserType.BUYER

    @property
    def id(self) -> int:
        return self.buyerID

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class Seller(AccountMixin, Base):
    __tablename__ = 'Seller'
    sellerID = Column(Integer, primary_key=True, autoincrement=True)
    business_name = Column(String(255), nullable=False)
    status = _enum_column(SellerStatus, "seller_status", default=SellerStatus.ACTIVE, nullable=False)
    suspension_reason = Column(Text)
    suspended_at = Column(DateTime(timezone=True))

    products = relationship("Product", back_populates="seller")

    user_type = UserType.SELLER

    @property
    def id(self) -> int:
        return self.sellerID

    @property
    def display_name(self) -> str:
        return self.business_name


class Admin(AccountMixin, Base):
    __tablename__ = 'Admin'
    adminID = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    admin_role = Column(String(50), default='admin', nullable=False)  # admin, super_admin

    user_type = UserType.ADMIN

    @property
    def id(self) -> int:
        return self.adminID

    @property
    def role(self) -> str:
        return self.admin_role or UserType.ADMIN.value

    @property
    def display_name(self) -> str:
        return self.name


# One table per account kind; resolved once at the request boundary.
ACCOUNT_MODELS = {
    UserType.BUYER: Buyer,
    UserType.SELLER: Seller,
    UserType.ADMIN: Admin,
}


class Product(Base):
    __tablename__ = 'Product'
    __table_args__ = (
        CheckConstraint('stock >= 0', name='ck_product_stock_nonnegative'),
        CheckConstraint('rating >= 0 AND rating <= 5', name='ck_product_rating_range'),
    )

    productID = Column(Integer, primary_key=True, autoincrement=True)
    sellerID = Column(Integer, ForeignKey('Seller.sellerID'), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=False, default='')
    category = Column(String(100), nullable=False, default='general', index=True)
    price = Column(Numeric(10, 2), nullable=False)
    stock = Column(Integer, nullable=False, default=0)
    low_stock_threshold = Column(Integer, nullable=False, default=5)
    status = _enum_column(ProductStatus, "product_status", default=ProductStatus.PENDING, nullable=False, index=True)
    review_notes = Column(Text)
    reviewed_at = Column(DateTime(timezone=True))
    rating = Column(Numeric(2, 1), nullable=False, default=Decimal("0.0"))
    review_count = Column(Integer, nullable=False, default=0)
    total_sales = Column(Integer, nullable=False, default=0)
    # Status the product held before its seller was suspended
    suspended_from_status = Column(String(20))
    deleted_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    seller = relationship("Seller", back_populates="products")
    reviews = relationship("Review", back_populates="product")


class Order(Base):
    __tablename__ = 'Order'

    orderID = Column(Integer, primary_key=True, autoincrement=True)
    order_number = Column(String(50), unique=True, nullable=False)
    buyerID = Column(Integer, ForeignKey('Buyer.buyerID'), nullable=False, index=True)
    status = _enum_column(OrderStatus, "order_status", default=OrderStatus.PENDING, nullable=False, index=True)
    payment_method = _enum_column(PaymentMethod, "payment_method", nullable=False)
    payment_status = _enum_column(PaymentStatus, "payment_status", default=PaymentStatus.PENDING, nullable=False)
    shipping_address = Column(JSON, nullable=False)
    subtotal = Column(Numeric(12, 2), nullable=False)
    total_amount = Column(Numeric(12, 2), nullable=False)
    notes = Column(Text)
    tracking_number = Column(String(120))
    cancellation_reason = Column(Text)
    stock_restored = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    confirmed_at = Column(DateTime(timezone=True))
    shipped_at = Column(DateTime(timezone=True))
    delivered_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))
    cancelled_at = Column(DateTime(timezone=True))
    refunded_at = Column(DateTime(timezone=True))

    buyer = relationship("Buyer", back_populates="orders")
    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")
    escrows = relationship("EscrowTransaction", back_populates="order", cascade="all, delete-orphan")

    _VALID_TRANSITIONS = {
        OrderStatus.PENDING: {OrderStatus.CONFIRMED, OrderStatus.CANCELLED, OrderStatus.REFUNDED},
        OrderStatus.CONFIRMED: {OrderStatus.PROCESSING, OrderStatus.CANCELLED, OrderStatus.REFUNDED},
        OrderStatus.PROCESSING: {OrderStatus.SHIPPED, OrderStatus.CANCELLED, OrderStatus.REFUNDED},
        OrderStatus.SHIPPED: {OrderStatus.DELIVERED, OrderStatus.CANCELLED, OrderStatus.REFUNDED},
        OrderStatus.DELIVERED: {OrderStatus.COMPLETED, OrderStatus.CANCELLED, OrderStatus.REFUNDED},
    }

    _STATUS_TIMESTAMPS = {
        OrderStatus.CONFIRMED: "confirmed_at",
        OrderStatus.SHIPPED: "shipped_at",
        OrderStatus.DELIVERED: "delivered_at",
        OrderStatus.COMPLETED: "completed_at",
        OrderStatus.CANCELLED: "cancelled_at",
        OrderStatus.REFUNDED: "refunded_at",
    }

    @property
    def is_terminal(self) -> bool:
        return OrderStatus(self.status) in TERMINAL_ORDER_STATUSES

    def can_transition(self, new_status: OrderStatus) -> bool:
        allowed = self._VALID_TRANSITIONS.get(OrderStatus(self.status), set())
        return new_status in allowed

    def can_skip_to(self, new_status: OrderStatus) -> bool:
        """Forward jumps along the fulfilment path, used by admin overrides."""
        current = OrderStatus(self.status)
        if self.is_terminal or new_status not in FULFILMENT_SEQUENCE:
            return False
        return FULFILMENT_SEQUENCE.index(new_status) > FULFILMENT_SEQUENCE.index(current)

    def transition_to(self, new_status: OrderStatus, override: bool = False) -> None:
        permitted = self.can_transition(new_status) or (override and self.can_skip_to(new_status))
        if not permitted:
            raise InvalidTransitionError(
                f"Cannot change order status from {OrderStatus(self.status).value} to {new_status.value}",
                fields={"status": new_status.value},
            )
        self.status = new_status
        stamp = self._STATUS_TIMESTAMPS.get(new_status)
        if stamp:
            setattr(self, stamp, utcnow())

    def contains_product(self, product_id: int) -> bool:
        return any(item.productID == product_id for item in self.items)

    def seller_ids(self) -> set[int]:
        return {item.sellerID for item in self.items}

    def calculate_total(self) -> Decimal:
        total = Decimal("0.00")
        for item in self.items:
            total += Decimal(item.unit_price) * item.quantity
        return total.quantize(Decimal("0.01"))


class OrderItem(Base):
    __tablename__ = 'OrderItem'
    __table_args__ = (
        CheckConstraint('quantity > 0', name='ck_order_item_quantity_positive'),
    )

    orderItemID = Column(Integer, primary_key=True, autoincrement=True)
    orderID = Column(Integer, ForeignKey('Order.orderID'), nullable=False, index=True)
    productID = Column(Integer, ForeignKey('Product.productID'), nullable=False, index=True)
    sellerID = Column(Integer, ForeignKey('Seller.sellerID'), nullable=False, index=True)
    product_name = Column(String(200), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(10, 2), nullable=False)
    line_total = Column(Numeric(12, 2), nullable=False)

    order = relationship("Order", back_populates="items")
    product = relationship("Product")
    seller = relationship("Seller")


class Review(Base):
    __tablename__ = 'Review'
    __table_args__ = (
        UniqueConstraint('buyerID', 'productID', name='uq_review_buyer_product'),
        CheckConstraint('rating >= 1 AND rating <= 5', name='ck_review_rating_range'),
    )

    reviewID = Column(Integer, primary_key=True, autoincrement=True)
    buyerID = Column(Integer, ForeignKey('Buyer.buyerID'), nullable=False, index=True)
    sellerID = Column(Integer, ForeignKey('Seller.sellerID'), nullable=False, index=True)
    productID = Column(Integer, ForeignKey('Product.productID'), nullable=False, index=True)
    orderID = Column(Integer, ForeignKey('Order.orderID'), nullable=False)
    rating = Column(Integer, nullable=False)
    title = Column(String(100))
    comment = Column(Text)
    seller_response = Column(Text)
    seller_responded_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    buyer = relationship("Buyer", back_populates="reviews")
    product = relationship("Product", back_populates="reviews")
    order = relationship("Order")
    reports = relationship("ReviewReport", back_populates="review", cascade="all, delete-orphan")

    def has_report_from(self, reporter_type: UserType, reporter_id: int) -> bool:
        return any(
            report.reporter_type == reporter_type and report.reporterID == reporter_id
            for report in self.reports
        )


class ReviewReport(Base):
    __tablename__ = 'ReviewReport'
    __table_args__ = (
        UniqueConstraint('reviewID', 'reporter_type', 'reporterID', name='uq_review_report_reporter'),
    )

    reportID = Column(Integer, primary_key=True, autoincrement=True)
    reviewID = Column(Integer, ForeignKey('Review.reviewID', ondelete="CASCADE"), nullable=False)
    reporterID = Column(Integer, nullable=False)
    reporter_type = _enum_column(UserType, "reporter_type", nullable=False)
    reason = _enum_column(ReportReason, "report_reason", nullable=False)
    description = Column(Text)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    review = relationship("Review", back_populates="reports")


class EscrowTransaction(Base):
    __tablename__ = 'EscrowTransaction'
    __table_args__ = (
        UniqueConstraint('orderID', 'sellerID', name='uq_escrow_order_seller'),
    )

    escrowID = Column(Integer, primary_key=True, autoincrement=True)
    escrow_number = Column(String(50), unique=True, nullable=False)
    orderID = Column(Integer, ForeignKey('Order.orderID'), nullable=False, index=True)
    buyerID = Column(Integer, ForeignKey('Buyer.buyerID'), nullable=False, index=True)
    sellerID = Column(Integer, ForeignKey('Seller.sellerID'), nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    commission = Column(Numeric(12, 2), nullable=False)
    net_amount = Column(Numeric(12, 2), nullable=False)
    status = _enum_column(EscrowStatus, "escrow_status", default=EscrowStatus.HELD, nullable=False, index=True)
    hold_until = Column(DateTime(timezone=True), nullable=False)
    released_at = Column(DateTime(timezone=True))
    released_by = Column(String(50))  # "<userType>:<id>" or "system"
    release_reason = Column(Text)
    disputed_at = Column(DateTime(timezone=True))
    disputed_by = Column(String(50))
    dispute_reason = Column(String(255))
    dispute_description = Column(Text)
    resolved_at = Column(DateTime(timezone=True))
    resolution = Column(Text)
    admin_notes = Column(Text)
    refunded_at = Column(DateTime(timezone=True))
    cancelled_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=utcnow)

    order = relationship("Order", back_populates="escrows")
    seller = relationship("Seller")

    def mark_released(self, actor: str, reason: str | None = None) -> None:
        self.status = EscrowStatus.RELEASED
        self.released_at = utcnow()
        self.released_by = actor
        self.release_reason = reason

    def mark_refunded(self) -> None:
        self.status = EscrowStatus.REFUNDED
        self.refunded_at = utcnow()

    def mark_cancelled(self) -> None:
        self.status = EscrowStatus.CANCELLED
        self.cancelled_at = utcnow()


class AuditLog(Base):
    __tablename__ = 'AuditLog'
    auditID = Column(Integer, primary_key=True, autoincrement=True)
    actor_id = Column(Integer)
    actor_type = Column(String(20))
    action = Column(String(100), nullable=False, index=True)
    resource = Column(String(50), nullable=False)
    resource_id = Column(Integer)
    details = Column(JSON)
    ip_address = Column(String(45))
    user_agent = Column(String(512))
    success = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
