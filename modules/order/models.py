"""
Order Module - Models
======================
Order with full snapshot per item for audit trail.

Three independent status axes (order / payment / shipping), each a
closed enum with an explicit transition table. The tables are enforced
by OrderService; the entity only exposes pure predicates.
"""

import enum
from sqlalchemy import (
    Column, Integer, String, Numeric, Text, JSON,
    ForeignKey, DateTime, Index, CheckConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from config.database import Base
from config.settings import STORE_CURRENCY
from common.helpers import as_utc, to_decimal


# ==========================================
# Enums
# ==========================================

class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    RETURNED = "returned"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


class ShippingStatus(str, enum.Enum):
    NOT_SHIPPED = "not_shipped"
    PREPARING = "preparing"
    SHIPPED = "shipped"
    IN_TRANSIT = "in_transit"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    FAILED_DELIVERY = "failed_delivery"
    RETURNED = "returned"


class StatusAxis(str, enum.Enum):
    ORDER = "order"
    PAYMENT = "payment"
    SHIPPING = "shipping"


# ==========================================
# Transition tables
# ==========================================

ORDER_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.CONFIRMED, OrderStatus.CANCELLED},
    OrderStatus.CONFIRMED: {
        OrderStatus.PROCESSING, OrderStatus.SHIPPED, OrderStatus.CANCELLED,
        OrderStatus.REFUNDED, OrderStatus.RETURNED,
    },
    OrderStatus.PROCESSING: {OrderStatus.SHIPPED, OrderStatus.REFUNDED, OrderStatus.RETURNED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED, OrderStatus.REFUNDED, OrderStatus.RETURNED},
    OrderStatus.DELIVERED: set(),
    OrderStatus.CANCELLED: set(),
    OrderStatus.REFUNDED: set(),
    OrderStatus.RETURNED: set(),
}

PAYMENT_TRANSITIONS = {
    PaymentStatus.PENDING: {
        PaymentStatus.PROCESSING, PaymentStatus.PAID, PaymentStatus.FAILED, PaymentStatus.CANCELLED,
    },
    PaymentStatus.PROCESSING: {PaymentStatus.PAID, PaymentStatus.FAILED, PaymentStatus.CANCELLED},
    PaymentStatus.FAILED: {PaymentStatus.PROCESSING, PaymentStatus.PAID},  # retry
    PaymentStatus.PAID: {PaymentStatus.REFUNDED, PaymentStatus.PARTIALLY_REFUNDED},
    PaymentStatus.PARTIALLY_REFUNDED: {PaymentStatus.REFUNDED},
    PaymentStatus.CANCELLED: set(),
    PaymentStatus.REFUNDED: set(),
}

_UNDELIVERED_EXITS = {ShippingStatus.FAILED_DELIVERY, ShippingStatus.RETURNED}

SHIPPING_TRANSITIONS = {
    ShippingStatus.NOT_SHIPPED: {ShippingStatus.PREPARING, ShippingStatus.SHIPPED} | _UNDELIVERED_EXITS,
    ShippingStatus.PREPARING: {ShippingStatus.SHIPPED} | _UNDELIVERED_EXITS,
    ShippingStatus.SHIPPED: {
        ShippingStatus.IN_TRANSIT, ShippingStatus.OUT_FOR_DELIVERY, ShippingStatus.DELIVERED,
    } | _UNDELIVERED_EXITS,
    ShippingStatus.IN_TRANSIT: {ShippingStatus.OUT_FOR_DELIVERY, ShippingStatus.DELIVERED} | _UNDELIVERED_EXITS,
    ShippingStatus.OUT_FOR_DELIVERY: {ShippingStatus.DELIVERED} | _UNDELIVERED_EXITS,
    ShippingStatus.FAILED_DELIVERY: {ShippingStatus.OUT_FOR_DELIVERY, ShippingStatus.RETURNED},
    ShippingStatus.DELIVERED: set(),
    ShippingStatus.RETURNED: set(),
}

AXES = {
    StatusAxis.ORDER: (OrderStatus, ORDER_TRANSITIONS),
    StatusAxis.PAYMENT: (PaymentStatus, PAYMENT_TRANSITIONS),
    StatusAxis.SHIPPING: (ShippingStatus, SHIPPING_TRANSITIONS),
}

TERMINAL_ORDER_STATES = {s for s, targets in ORDER_TRANSITIONS.items() if not targets}
SHIPPED_FAMILY = {ShippingStatus.SHIPPED, ShippingStatus.IN_TRANSIT, ShippingStatus.OUT_FOR_DELIVERY}


def can_transition(axis: StatusAxis, current: str, target: str) -> bool:
    """Whether `current -> target` is an edge of the axis' transition table."""
    enum_cls, table = AXES[StatusAxis(axis)]
    return enum_cls(target) in table[enum_cls(current)]


# ==========================================
# Order
# ==========================================

class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    order_number = Column(String(32), unique=True, nullable=False, index=True)
    customer_id = Column(Integer, nullable=True, index=True)  # NULL for guest orders
    cart_id = Column(Integer, nullable=True)

    # Status axes
    status = Column(String, default=OrderStatus.PENDING.value, nullable=False)
    payment_status = Column(String, default=PaymentStatus.PENDING.value, nullable=False)
    shipping_status = Column(String, default=ShippingStatus.NOT_SHIPPED.value, nullable=False)

    # Money (snapshot of the cart)
    subtotal = Column(Numeric(10, 2), default=0, nullable=False)
    discount_amount = Column(Numeric(10, 2), default=0, nullable=False)
    shipping_cost = Column(Numeric(10, 2), default=0, nullable=False)
    # Shipping waived by a free-shipping coupon
    shipping_discount = Column(Numeric(10, 2), default=0, nullable=False)
    tax_amount = Column(Numeric(10, 2), default=0, nullable=False)
    total = Column(Numeric(10, 2), default=0, nullable=False)
    currency = Column(String(3), default=STORE_CURRENCY, nullable=False)
    coupon_code = Column(String(50), nullable=True)

    # Addresses (owned by the customer module)
    billing_address_id = Column(Integer, nullable=True)
    shipping_address_id = Column(Integer, nullable=True)

    # Payment
    payment_method = Column(String, nullable=True)
    payment_gateway = Column(String, nullable=True)
    transaction_id = Column(String, nullable=True)
    payment_data = Column(JSON, nullable=True)

    # Shipping
    shipping_method = Column(String, nullable=True)
    tracking_number = Column(String, nullable=True)
    tracking_url = Column(String, nullable=True)

    notes = Column(Text, nullable=True)
    internal_notes = Column(Text, nullable=True)
    meta_data = Column(JSON, nullable=True)
    cancellation_reason = Column(String, nullable=True)

    # Milestones
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    shipped_at = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan", order_by="OrderItem.id")
    history = relationship(
        "OrderStatusHistory", back_populates="order",
        cascade="all, delete-orphan", order_by="OrderStatusHistory.id",
    )

    __table_args__ = (
        Index("ix_order_status_created", "status", "created_at"),
    )

    # ------------------------------------------
    # Predicates
    # ------------------------------------------

    @property
    def order_status(self) -> OrderStatus:
        return OrderStatus(self.status)

    def can_be_cancelled(self) -> bool:
        return (
            self.order_status in (OrderStatus.PENDING, OrderStatus.CONFIRMED)
            and PaymentStatus(self.payment_status) in (PaymentStatus.PENDING, PaymentStatus.FAILED)
        )

    def can_be_shipped(self) -> bool:
        return (
            self.order_status in (OrderStatus.CONFIRMED, OrderStatus.PROCESSING)
            and self.is_paid()
        )

    def can_be_refunded(self) -> bool:
        return (
            self.order_status in (OrderStatus.CONFIRMED, OrderStatus.PROCESSING, OrderStatus.SHIPPED)
            and self.is_paid()
        )

    def is_paid(self) -> bool:
        return PaymentStatus(self.payment_status) == PaymentStatus.PAID

    def is_shipped(self) -> bool:
        return ShippingStatus(self.shipping_status) in SHIPPED_FAMILY

    def is_delivered(self) -> bool:
        return self.order_status == OrderStatus.DELIVERED

    def is_cancelled(self) -> bool:
        return self.order_status == OrderStatus.CANCELLED

    def is_terminal(self) -> bool:
        return self.order_status in TERMINAL_ORDER_STATES

    # ------------------------------------------
    # Derived values
    # ------------------------------------------

    @property
    def grand_total(self):
        """Amount due: total + shipping (less any waived part) + tax."""
        return (
            to_decimal(self.total)
            + to_decimal(self.shipping_cost) - to_decimal(self.shipping_discount)
            + to_decimal(self.tax_amount)
        )

    @property
    def items_count(self) -> int:
        return sum(item.quantity for item in self.items)

    @property
    def processing_time(self):
        """Hours from creation to confirmation (None until confirmed)."""
        if not self.confirmed_at or not self.created_at:
            return None
        return (as_utc(self.confirmed_at) - as_utc(self.created_at)).total_seconds() / 3600

    @property
    def delivery_time(self):
        """Hours from shipment to delivery (None until delivered)."""
        if not self.shipped_at or not self.delivered_at:
            return None
        return (as_utc(self.delivered_at) - as_utc(self.shipped_at)).total_seconds() / 3600

    @property
    def status_label(self) -> str:
        return self.status.replace("_", " ").capitalize()

    def __repr__(self):
        return f"<Order {self.order_number} {self.status}/{self.payment_status}/{self.shipping_status}>"


# ==========================================
# Order Item (immutable snapshot)
# ==========================================

class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="RESTRICT"), nullable=False)
    variant_id = Column(Integer, ForeignKey("product_variants.id", ondelete="RESTRICT"), nullable=True)

    # Snapshot at order time
    product_name = Column(String, nullable=False)
    product_sku = Column(String, nullable=True)
    quantity = Column(Integer, nullable=False)
    price = Column(Numeric(10, 2), nullable=False)
    discount_amount = Column(Numeric(10, 2), default=0, nullable=False)
    tax_amount = Column(Numeric(10, 2), default=0, nullable=False)
    total = Column(Numeric(10, 2), nullable=False)
    options = Column(JSON, nullable=True)
    attributes = Column(JSON, nullable=True)
    meta_data = Column(JSON, nullable=True)

    # Corrections happen through counters, never deletion
    refunded_quantity = Column(Integer, default=0, nullable=False)
    returned_quantity = Column(Integer, default=0, nullable=False)

    order = relationship("Order", back_populates="items")

    __table_args__ = (
        CheckConstraint("quantity >= 1", name="ck_order_item_qty"),
    )

    @property
    def is_refunded(self) -> bool:
        return (self.refunded_quantity or 0) >= self.quantity

    @property
    def is_returned(self) -> bool:
        return (self.returned_quantity or 0) >= self.quantity


# ==========================================
# Status History (append-only)
# ==========================================

class OrderStatusHistory(Base):
    __tablename__ = "order_status_history"

    id = Column(Integer, primary_key=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    axis = Column(String, default=StatusAxis.ORDER.value, nullable=False)
    status = Column(String, nullable=False)
    previous_status = Column(String, nullable=True)
    user_id = Column(Integer, nullable=True)  # NULL = system
    notes = Column(Text, nullable=True)
    meta_data = Column(JSON, nullable=True)   # ip_address / user_agent
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    order = relationship("Order", back_populates="history")

    @property
    def is_system(self) -> bool:
        return self.user_id is None
