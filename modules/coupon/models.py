"""
Coupon Module - Models
========================
Discount coupon system.

Features:
  - Fixed amount, percentage (with optional cap) or free shipping
  - Inclusion / exclusion lists for products, categories and brands
  - Usage limits (total + per-customer)
  - Date range (starts_at / expires_at)
  - Minimum order amount
  - First-purchase-only flag and customer-group allowlist
  - Combinable flag (stack with other coupons)
"""

import enum
from sqlalchemy import (
    Column, Integer, String, Boolean, Text, JSON,
    DateTime, ForeignKey, Numeric, Index, UniqueConstraint, CheckConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from config.database import Base


# ==========================================
# Enums
# ==========================================

class DiscountType(str, enum.Enum):
    FIXED = "fixed"                  # fixed amount off
    PERCENTAGE = "percentage"        # percent of subtotal
    FREE_SHIPPING = "free_shipping"  # waives the shipping cost


SCOPE_FIELDS = (
    "applicable_products", "applicable_categories", "applicable_brands",
    "excluded_products", "excluded_categories", "excluded_brands",
)


# ==========================================
# Coupon
# ==========================================

class Coupon(Base):
    __tablename__ = "coupons"

    id = Column(Integer, primary_key=True)
    code = Column(String(50), unique=True, nullable=False, index=True)
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)

    # Discount
    discount_type = Column(String, default=DiscountType.FIXED.value, nullable=False)
    value = Column(Numeric(10, 2), nullable=False)
    minimum_amount = Column(Numeric(10, 2), nullable=True)
    maximum_discount = Column(Numeric(10, 2), nullable=True)  # percentage only

    # Usage limits
    usage_limit = Column(Integer, nullable=True)
    usage_per_customer = Column(Integer, nullable=True)
    used_count = Column(Integer, default=0, nullable=False)

    # Date range
    starts_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)

    # Scope (lists of ids)
    applicable_products = Column(JSON, nullable=True)
    applicable_categories = Column(JSON, nullable=True)
    applicable_brands = Column(JSON, nullable=True)
    excluded_products = Column(JSON, nullable=True)
    excluded_categories = Column(JSON, nullable=True)
    excluded_brands = Column(JSON, nullable=True)

    # Special flags
    customer_groups = Column(JSON, nullable=True)
    first_purchase_only = Column(Boolean, default=False, nullable=False)
    combine_with_others = Column(Boolean, default=False, nullable=False)

    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    usages = relationship("CouponUsage", back_populates="coupon", cascade="all, delete-orphan")

    __table_args__ = (
        CheckConstraint("used_count >= 0", name="ck_coupon_used_count"),
        Index("ix_coupon_code_active", "code", "is_active"),
    )

    @property
    def discount_type_label(self) -> str:
        return {
            DiscountType.FIXED.value: "Fixed amount",
            DiscountType.PERCENTAGE.value: "Percentage",
            DiscountType.FREE_SHIPPING.value: "Free shipping",
        }.get(self.discount_type, self.discount_type)

    @property
    def discount_display(self) -> str:
        """Human-readable discount value."""
        if self.discount_type == DiscountType.PERCENTAGE.value:
            s = f"{self.value:f}".rstrip("0").rstrip(".") + "%"
            if self.maximum_discount:
                s += f" (max {self.maximum_discount})"
            return s
        if self.discount_type == DiscountType.FREE_SHIPPING.value:
            return "Free shipping"
        return f"{self.value}"

    @property
    def has_scope_rules(self) -> bool:
        return any(getattr(self, name) for name in SCOPE_FIELDS)

    @property
    def remaining_uses(self):
        if self.usage_limit is None:
            return None
        return max(0, self.usage_limit - (self.used_count or 0))

    def __repr__(self):
        return f"<Coupon {self.code}>"


# ==========================================
# CouponUsage (audit trail)
# ==========================================

class CouponUsage(Base):
    __tablename__ = "coupon_usages"

    id = Column(Integer, primary_key=True)
    coupon_id = Column(Integer, ForeignKey("coupons.id", ondelete="CASCADE"), nullable=False)
    customer_id = Column(Integer, nullable=True, index=True)  # NULL for guest orders
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False)
    coupon_code = Column(String(50), nullable=False)
    discount_amount = Column(Numeric(10, 2), nullable=False)
    used_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    coupon = relationship("Coupon", back_populates="usages")
    order = relationship("Order")

    __table_args__ = (
        UniqueConstraint("coupon_id", "order_id", name="uq_coupon_usage_order"),
        Index("ix_usage_coupon_customer", "coupon_id", "customer_id"),
    )
