"""
Cart Module - Models
=====================
Shopping cart owned by a customer or an anonymous session.
Derived totals are written only by CartService.recompute_totals.
"""

from sqlalchemy import (
    Column, Integer, String, Numeric, JSON, ForeignKey, DateTime,
    CheckConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from config.database import Base
from common.helpers import to_decimal


class Cart(Base):
    __tablename__ = "carts"

    id = Column(Integer, primary_key=True)
    customer_id = Column(Integer, unique=True, nullable=True)
    session_id = Column(String(128), unique=True, nullable=True)

    coupon_code = Column(String(50), nullable=True)

    # Derived fields
    subtotal = Column(Numeric(10, 2), default=0, nullable=False)
    discount_amount = Column(Numeric(10, 2), default=0, nullable=False)
    shipping_cost = Column(Numeric(10, 2), default=0, nullable=False)
    # Shipping waived by a free-shipping coupon
    shipping_discount = Column(Numeric(10, 2), default=0, nullable=False)
    tax_amount = Column(Numeric(10, 2), default=0, nullable=False)
    total = Column(Numeric(10, 2), default=0, nullable=False)
    items_count = Column(Integer, default=0, nullable=False)

    meta_data = Column(JSON, nullable=True)
    last_activity = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    items = relationship(
        "CartItem", back_populates="cart",
        cascade="all, delete-orphan", order_by="CartItem.id",
    )

    __table_args__ = (
        CheckConstraint(
            "(customer_id IS NULL) <> (session_id IS NULL)",
            name="ck_cart_single_owner",
        ),
    )

    @property
    def is_empty(self) -> bool:
        return not self.items

    @property
    def is_guest(self) -> bool:
        return self.customer_id is None

    @property
    def grand_total(self):
        """Amount due: total + shipping (less any waived part) + tax."""
        return (
            to_decimal(self.total)
            + to_decimal(self.shipping_cost) - to_decimal(self.shipping_discount)
            + to_decimal(self.tax_amount)
        )

    @property
    def product_ids(self):
        return [item.product_id for item in self.items]

    def find_item(self, product_id: int, variant_id=None):
        for item in self.items:
            if item.product_id == product_id and item.variant_id == variant_id:
                return item
        return None

    def __repr__(self):
        owner = f"customer={self.customer_id}" if self.customer_id else f"session={self.session_id}"
        return f"<Cart {self.id} {owner}>"


class CartItem(Base):
    __tablename__ = "cart_items"

    id = Column(Integer, primary_key=True)
    cart_id = Column(Integer, ForeignKey("carts.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False)
    variant_id = Column(Integer, ForeignKey("product_variants.id", ondelete="CASCADE"), nullable=True)
    quantity = Column(Integer, default=1, nullable=False)
    unit_price = Column(Numeric(10, 2), nullable=False)
    line_total = Column(Numeric(10, 2), nullable=False)
    options = Column(JSON, nullable=True)     # size / colour / personalisation
    meta_data = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    cart = relationship("Cart", back_populates="items")
    product = relationship("Product")
    variant = relationship("ProductVariant")

    # (cart, product, variant) uniqueness is enforced by CartService:
    # a NULL variant_id never collides in a SQL unique index.
    __table_args__ = (
        CheckConstraint("quantity >= 1", name="ck_cart_qty"),
    )

    def __repr__(self):
        return f"<CartItem product={self.product_id} variant={self.variant_id} x{self.quantity}>"
