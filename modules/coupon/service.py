"""
Coupon Service
================
Validate, calculate and record coupons.

Validation chain:
  1. Code exists
  2. Usable: active, inside date range, total usage limit
  3. Per-customer usage limit
  4. Order rules: minimum amount, first-purchase-only, customer group
  5. Product scope: exclusions first, then the first non-empty inclusion list
  6. Calculate discount amount with caps

"Not applicable" is an expected outcome: the chain reports a reason,
it never raises.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Any

from sqlalchemy.orm import Session
from sqlalchemy import func as sa_func, desc, or_

from common.exceptions import DuplicateUsageError, CouponLimitReachedError, NotFoundError
from common.helpers import now_utc, as_utc, round_money, to_decimal, generate_code, generate_unique_value
from config.settings import COUPON_CODE_PREFIX
from modules.catalog.service import ProductFacts, catalog_service
from modules.coupon.models import Coupon, CouponUsage, DiscountType
from modules.order.models import Order, OrderStatus

logger = logging.getLogger("storefront.coupon")

# Order states from which a coupon usage may still be reversed
REVERSIBLE_ORDER_STATES = {OrderStatus.PENDING, OrderStatus.CONFIRMED}


@dataclass
class CouponContext:
    """What the engine needs to know about the cart and its owner."""
    subtotal: Decimal = Decimal("0")
    product_ids: List[int] = field(default_factory=list)
    customer_id: Optional[int] = None
    customer_group: Optional[str] = None
    shipping_cost: Decimal = Decimal("0")


@dataclass
class CouponCheck:
    coupon: Optional[Coupon]
    reason: Optional[str] = None  # None means applicable

    @property
    def ok(self) -> bool:
        return self.coupon is not None and self.reason is None


@dataclass
class DiscountResult:
    amount: Decimal
    discount_type: Optional[str]
    description: str


class CouponService:

    # ------------------------------------------
    # Pure rules (no database access)
    # ------------------------------------------

    def usability_reason(self, coupon: Coupon, now: Optional[datetime] = None) -> Optional[str]:
        now = now or now_utc()
        if not coupon.is_active:
            return "inactive"
        if coupon.starts_at and as_utc(coupon.starts_at) > now:
            return "not_started"
        if coupon.expires_at and as_utc(coupon.expires_at) < now:
            return "expired"
        if coupon.usage_limit is not None and (coupon.used_count or 0) >= coupon.usage_limit:
            return "usage_limit_reached"
        return None

    def is_usable(self, coupon: Coupon, now: Optional[datetime] = None) -> bool:
        return self.usability_reason(coupon, now) is None

    def can_customer_use(self, coupon: Coupon, customer_id: Optional[int], usage_count: int) -> bool:
        """Per-customer limit; anonymous shoppers have no usage history to check."""
        if not coupon.usage_per_customer or customer_id is None:
            return True
        return usage_count < coupon.usage_per_customer

    def order_reason(
        self,
        coupon: Coupon,
        order_total,
        customer_order_count: int,
        customer_group: Optional[str],
    ) -> Optional[str]:
        if coupon.minimum_amount is not None and to_decimal(order_total) < to_decimal(coupon.minimum_amount):
            return "minimum_amount"
        if coupon.first_purchase_only and customer_order_count > 0:
            return "first_purchase_only"
        if coupon.customer_groups and customer_group not in coupon.customer_groups:
            return "customer_group"
        return None

    def is_applicable_to_order(
        self,
        coupon: Coupon,
        order_total,
        customer_order_count: int = 0,
        customer_group: Optional[str] = None,
    ) -> bool:
        return self.order_reason(coupon, order_total, customer_order_count, customer_group) is None

    def is_applicable_to_products(
        self,
        coupon: Coupon,
        product_ids: Iterable[int],
        facts: Dict[int, ProductFacts],
    ) -> bool:
        """
        No scope lists -> always applicable.
        Exclusions (products, categories, brands) short-circuit to False.
        Otherwise the first non-empty inclusion list (products, else
        categories, else brands) needs at least one overlap.
        """
        if not coupon.has_scope_rules:
            return True

        product_ids = set(product_ids)
        category_ids = {cid for pid in product_ids for cid in facts.get(pid, ProductFacts()).category_ids}
        brand_ids = {facts[pid].brand_id for pid in product_ids if pid in facts and facts[pid].brand_id}

        if coupon.excluded_products and product_ids & set(coupon.excluded_products):
            return False
        if coupon.excluded_categories and category_ids & set(coupon.excluded_categories):
            return False
        if coupon.excluded_brands and brand_ids & set(coupon.excluded_brands):
            return False

        if coupon.applicable_products:
            return bool(product_ids & set(coupon.applicable_products))
        if coupon.applicable_categories:
            return bool(category_ids & set(coupon.applicable_categories))
        if coupon.applicable_brands:
            return bool(brand_ids & set(coupon.applicable_brands))
        return True

    def calculate_discount(self, coupon: Coupon, subtotal, shipping_cost=0) -> DiscountResult:
        """Discount for the given amounts, rounded half away from zero."""
        subtotal = to_decimal(subtotal)
        shipping = to_decimal(shipping_cost)
        value = to_decimal(coupon.value)

        if coupon.discount_type == DiscountType.FIXED.value:
            amount = min(value, subtotal + shipping)
            description = f"{round_money(value)} off"
        elif coupon.discount_type == DiscountType.PERCENTAGE.value:
            amount = subtotal * value / Decimal("100")
            if coupon.maximum_discount is not None:
                amount = min(amount, to_decimal(coupon.maximum_discount))
            description = f"{value.normalize():f}% off"
        elif coupon.discount_type == DiscountType.FREE_SHIPPING.value:
            amount = shipping
            description = "Free shipping"
        else:
            amount = Decimal("0")
            description = ""

        return DiscountResult(
            amount=round_money(max(amount, Decimal("0"))),
            discount_type=coupon.discount_type,
            description=description,
        )

    def shipping_discount(self, coupon: Coupon, shipping_cost) -> Decimal:
        """Part of the quoted shipping a free-shipping coupon waives."""
        if coupon.discount_type != DiscountType.FREE_SHIPPING.value:
            return Decimal("0.00")
        return round_money(max(to_decimal(shipping_cost), Decimal("0")))

    # ------------------------------------------
    # Validation chain (database lookups)
    # ------------------------------------------

    def get_by_code(self, db: Session, code: str) -> Optional[Coupon]:
        if not code:
            return None
        return db.query(Coupon).filter(Coupon.code == code.strip().upper()).first()

    def get_by_id(self, db: Session, coupon_id: int) -> Optional[Coupon]:
        return db.query(Coupon).filter(Coupon.id == coupon_id).first()

    def customer_usage_count(self, db: Session, coupon: Coupon, customer_id: Optional[int]) -> int:
        if customer_id is None:
            return 0
        return db.query(sa_func.count(CouponUsage.id)).filter(
            CouponUsage.coupon_id == coupon.id,
            CouponUsage.customer_id == customer_id,
        ).scalar() or 0

    def customer_order_count(self, db: Session, customer_id: Optional[int]) -> int:
        """Orders that count towards "first purchase" (anything not cancelled)."""
        if customer_id is None:
            return 0
        return db.query(sa_func.count(Order.id)).filter(
            Order.customer_id == customer_id,
            Order.status != OrderStatus.CANCELLED.value,
        ).scalar() or 0

    def check(self, db: Session, code: str, context: CouponContext) -> CouponCheck:
        """Run the whole chain. Returns the coupon and None, or the first failing reason."""
        coupon = self.get_by_code(db, code)
        if not coupon:
            return CouponCheck(None, "not_found")

        reason = self.usability_reason(coupon)
        if reason:
            return CouponCheck(coupon, reason)

        usage_count = self.customer_usage_count(db, coupon, context.customer_id)
        if not self.can_customer_use(coupon, context.customer_id, usage_count):
            return CouponCheck(coupon, "customer_limit")

        order_count = self.customer_order_count(db, context.customer_id) if coupon.first_purchase_only else 0
        reason = self.order_reason(coupon, context.subtotal, order_count, context.customer_group)
        if reason:
            return CouponCheck(coupon, reason)

        if coupon.has_scope_rules:
            facts = catalog_service.product_facts(db, context.product_ids)
            if not self.is_applicable_to_products(coupon, context.product_ids, facts):
                return CouponCheck(coupon, "products")

        return CouponCheck(coupon)

    def get_valid_coupon(self, db: Session, code: str, context: CouponContext) -> Optional[Coupon]:
        result = self.check(db, code, context)
        return result.coupon if result.ok else None

    def get_applicable_coupons(self, db: Session, context: CouponContext) -> List[Coupon]:
        """Active coupons that would pass the chain for this context."""
        coupons = db.query(Coupon).filter(Coupon.is_active.is_(True)).order_by(desc(Coupon.created_at)).all()
        return [c for c in coupons if self.check(db, c.code, context).ok]

    # ------------------------------------------
    # Usage (record / reverse)
    # ------------------------------------------

    def record_usage(
        self,
        db: Session,
        coupon: Coupon,
        customer_id: Optional[int],
        order_id: int,
        discount_amount,
    ) -> CouponUsage:
        """
        Append a CouponUsage and increment used_count in one conditional UPDATE.
        Raises DuplicateUsageError if this order already used the coupon,
        CouponLimitReachedError if the global limit was hit concurrently.
        """
        existing = db.query(CouponUsage.id).filter(
            CouponUsage.coupon_id == coupon.id,
            CouponUsage.order_id == order_id,
        ).first()
        if existing:
            raise DuplicateUsageError(f"Coupon {coupon.code} already recorded for order {order_id}.")

        updated = db.query(Coupon).filter(
            Coupon.id == coupon.id,
            or_(Coupon.usage_limit.is_(None), Coupon.used_count < Coupon.usage_limit),
        ).update({Coupon.used_count: Coupon.used_count + 1}, synchronize_session=False)
        if not updated:
            raise CouponLimitReachedError(f"Coupon {coupon.code} has reached its usage limit.")

        usage = CouponUsage(
            coupon_id=coupon.id,
            customer_id=customer_id,
            order_id=order_id,
            coupon_code=coupon.code,
            discount_amount=round_money(discount_amount),
        )
        db.add(usage)
        db.flush()
        db.expire(coupon, ["used_count"])

        logger.info(f"Coupon {coupon.code} used on order {order_id} ({usage.discount_amount})")
        return usage

    def reverse_usage(self, db: Session, usage: CouponUsage, order: Order) -> bool:
        """Delete the usage and decrement used_count while the order is still reversible."""
        if OrderStatus(order.status) not in REVERSIBLE_ORDER_STATES:
            logger.warning(
                f"Coupon usage {usage.id} not reversed: order {order.order_number} is {order.status}"
            )
            return False

        db.query(Coupon).filter(
            Coupon.id == usage.coupon_id,
            Coupon.used_count > 0,
        ).update({Coupon.used_count: Coupon.used_count - 1}, synchronize_session=False)
        coupon = usage.coupon
        db.delete(usage)
        db.flush()
        if coupon is not None:
            db.expire(coupon, ["used_count"])

        logger.info(f"Coupon usage reversed: {usage.coupon_code} on order {order.order_number}")
        return True

    def reverse_order_usages(self, db: Session, order: Order) -> int:
        usages = db.query(CouponUsage).filter(CouponUsage.order_id == order.id).all()
        return sum(1 for usage in usages if self.reverse_usage(db, usage, order))

    def get_usage_history(self, db: Session, customer_id: int) -> List[CouponUsage]:
        return db.query(CouponUsage).filter(
            CouponUsage.customer_id == customer_id,
        ).order_by(desc(CouponUsage.used_at), desc(CouponUsage.id)).all()

    # ------------------------------------------
    # Admin: CRUD
    # ------------------------------------------

    def validate_coupon_data(self, db: Session, data: dict, coupon_id: Optional[int] = None) -> List[str]:
        """Operator input checks. Returns a list of error messages (empty = valid)."""
        errors = []

        code = (data.get("code") or "").strip().upper()
        if code:
            if len(code) < 3:
                errors.append("Code must have at least 3 characters")
            else:
                q = db.query(Coupon.id).filter(Coupon.code == code)
                if coupon_id:
                    q = q.filter(Coupon.id != coupon_id)
                if q.first():
                    errors.append("This code is already in use")

        if not data.get("name"):
            errors.append("Name is required")

        discount_type = data.get("discount_type")
        if not discount_type:
            errors.append("Discount type is required")
        elif discount_type not in {t.value for t in DiscountType}:
            errors.append("Invalid discount type")

        value = data.get("value")
        if value is None or to_decimal(value) <= 0:
            errors.append("Value must be greater than zero")
        elif discount_type == DiscountType.PERCENTAGE.value and to_decimal(value) > 100:
            errors.append("Percentage cannot exceed 100")

        for key in ("minimum_amount", "maximum_discount"):
            if data.get(key) is not None and to_decimal(data[key]) < 0:
                errors.append(f"{key} must be positive")
        if data.get("usage_limit") is not None and int(data["usage_limit"]) < 0:
            errors.append("usage_limit must be positive")
        if data.get("usage_per_customer") is not None and int(data["usage_per_customer"]) < 1:
            errors.append("usage_per_customer must be at least 1")

        starts_at, expires_at = data.get("starts_at"), data.get("expires_at")
        if starts_at and expires_at and as_utc(starts_at) >= as_utc(expires_at):
            errors.append("starts_at must be before expires_at")

        return errors

    def create_coupon(self, db: Session, data: dict) -> Coupon:
        errors = self.validate_coupon_data(db, data)
        if errors:
            raise ValueError("; ".join(errors))

        code = (data.get("code") or "").strip().upper() or self._generate_unique_code(db)
        coupon = Coupon(code=code, used_count=0)
        self._assign(coupon, data)
        db.add(coupon)
        db.flush()
        logger.info(f"Coupon created: {coupon.code}")
        return coupon

    def update_coupon(self, db: Session, coupon_id: int, data: dict) -> Coupon:
        coupon = self.get_by_id(db, coupon_id)
        if not coupon:
            raise NotFoundError("Coupon not found")

        merged = {**self._as_data(coupon), **data}
        errors = self.validate_coupon_data(db, merged, coupon_id=coupon.id)
        if errors:
            raise ValueError("; ".join(errors))

        if data.get("code"):
            coupon.code = data["code"].strip().upper()
        self._assign(coupon, data)
        db.flush()
        return coupon

    def activate_coupon(self, db: Session, coupon_id: int) -> Coupon:
        return self._set_active(db, coupon_id, True)

    def deactivate_coupon(self, db: Session, coupon_id: int) -> Coupon:
        return self._set_active(db, coupon_id, False)

    def delete_coupon(self, db: Session, coupon_id: int) -> bool:
        coupon = self.get_by_id(db, coupon_id)
        if not coupon:
            return False
        if coupon.used_count > 0:
            raise ValueError("This coupon has already been used and cannot be deleted. Deactivate it instead.")
        db.delete(coupon)
        db.flush()
        return True

    def duplicate_coupon(self, db: Session, coupon_id: int) -> Coupon:
        """Inactive copy with a fresh code and zeroed usage."""
        source = self.get_by_id(db, coupon_id)
        if not source:
            raise NotFoundError("Coupon not found")

        data = self._as_data(source)
        data["name"] = f"{source.name} (Copy)"
        data["is_active"] = False

        copy = Coupon(code=self._generate_unique_code(db), used_count=0)
        self._assign(copy, data)
        db.add(copy)
        db.flush()
        return copy

    def get_stats(self, db: Session) -> Dict[str, Any]:
        now = now_utc()
        coupons = db.query(Coupon).all()
        today = now.date()
        usages = db.query(CouponUsage.used_at, CouponUsage.discount_amount).all()
        return {
            "total_coupons": len(coupons),
            "active_coupons": sum(1 for c in coupons if c.is_active),
            "expired_coupons": sum(
                1 for c in coupons if self.usability_reason(c, now) in ("expired", "usage_limit_reached")
            ),
            "used_today": sum(1 for used_at, _ in usages if used_at and as_utc(used_at).date() == today),
            "total_usage": len(usages),
            "total_discount": round_money(sum((to_decimal(a) for _, a in usages), Decimal("0"))),
        }

    # ------------------------------------------
    # Private helpers
    # ------------------------------------------

    _FIELDS = (
        "name", "description", "discount_type", "value", "minimum_amount", "maximum_discount",
        "usage_limit", "usage_per_customer", "starts_at", "expires_at",
        "applicable_products", "applicable_categories", "applicable_brands",
        "excluded_products", "excluded_categories", "excluded_brands",
        "customer_groups", "first_purchase_only", "combine_with_others", "is_active",
    )

    def _assign(self, coupon: Coupon, data: dict):
        for key in self._FIELDS:
            if key not in data:
                continue
            val = data[key]
            if key in ("value", "minimum_amount", "maximum_discount"):
                val = to_decimal(val) if val is not None else None
            elif key in ("first_purchase_only", "combine_with_others", "is_active"):
                val = bool(val)
            elif key.startswith(("applicable_", "excluded_")) or key == "customer_groups":
                val = list(val) if val else None
            setattr(coupon, key, val)

    def _as_data(self, coupon: Coupon) -> dict:
        return {key: getattr(coupon, key) for key in self._FIELDS}

    def _set_active(self, db: Session, coupon_id: int, active: bool) -> Coupon:
        coupon = self.get_by_id(db, coupon_id)
        if not coupon:
            raise NotFoundError("Coupon not found")
        coupon.is_active = active
        db.flush()
        logger.info(f"Coupon {coupon.code} {'activated' if active else 'deactivated'}")
        return coupon

    def _generate_unique_code(self, db: Session) -> str:
        return generate_unique_value(db, Coupon.code, lambda: f"{COUPON_CODE_PREFIX}{generate_code(6)}")


coupon_service = CouponService()
