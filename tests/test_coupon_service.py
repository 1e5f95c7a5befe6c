"""Tests for the coupon engine: pure rules, validation chain, usage, admin."""

from datetime import timedelta
from decimal import Decimal

import pytest

from common.exceptions import CouponLimitReachedError, DuplicateUsageError
from common.helpers import now_utc
from modules.catalog.service import ProductFacts
from modules.coupon.models import Coupon, CouponUsage
from modules.coupon.service import CouponContext, coupon_service
from modules.order.models import Order


def _coupon(**kwargs):
    """Transient coupon for the pure rules."""
    data = dict(
        code="TEST", name="Test", discount_type="fixed", value=Decimal("10"),
        is_active=True, used_count=0, first_purchase_only=False,
    )
    data.update(kwargs)
    return Coupon(**data)


def _order(db, number, customer_id=None, status="pending"):
    order = Order(
        order_number=number, customer_id=customer_id, status=status,
        payment_status="pending", shipping_status="not_shipped",
        subtotal=Decimal("0"), discount_amount=Decimal("0"), shipping_cost=Decimal("0"),
        tax_amount=Decimal("0"), total=Decimal("0"), currency="BRL",
    )
    db.add(order)
    db.commit()
    return order


class TestCalculateDiscount:

    def test_percentage_is_capped(self):
        coupon = _coupon(discount_type="percentage", value=Decimal("10"), maximum_discount=Decimal("50"))
        result = coupon_service.calculate_discount(coupon, Decimal("1000"))
        assert result.amount == Decimal("50.00")

    def test_percentage_without_cap(self):
        coupon = _coupon(discount_type="percentage", value=Decimal("15"))
        result = coupon_service.calculate_discount(coupon, Decimal("200"))
        assert result.amount == Decimal("30.00")
        assert result.description == "15% off"

    def test_fixed_never_exceeds_order_total(self):
        coupon = _coupon(discount_type="fixed", value=Decimal("30"))
        assert coupon_service.calculate_discount(coupon, Decimal("20")).amount == Decimal("20.00")

    def test_fixed_may_cover_shipping(self):
        coupon = _coupon(discount_type="fixed", value=Decimal("30"))
        result = coupon_service.calculate_discount(coupon, Decimal("20"), Decimal("5"))
        assert result.amount == Decimal("25.00")

    def test_free_shipping_equals_shipping_cost(self):
        coupon = _coupon(discount_type="free_shipping", value=Decimal("1"))
        assert coupon_service.calculate_discount(coupon, Decimal("80"), Decimal("12.90")).amount == Decimal("12.90")

    def test_shipping_discount_only_for_free_shipping(self):
        free = _coupon(discount_type="free_shipping", value=Decimal("1"))
        fixed = _coupon(discount_type="fixed", value=Decimal("30"))
        assert coupon_service.shipping_discount(free, Decimal("12.90")) == Decimal("12.90")
        assert coupon_service.calculate_discount(free, Decimal("80")).amount == 0
        assert coupon_service.shipping_discount(fixed, Decimal("12.90")) == 0

    def test_rounding_half_away_from_zero(self):
        coupon = _coupon(discount_type="percentage", value=Decimal("12.5"))
        # 12.5% of 0.20 = 0.025
        assert coupon_service.calculate_discount(coupon, Decimal("0.20")).amount == Decimal("0.03")

    def test_unknown_type_gives_zero(self):
        coupon = _coupon(discount_type="bogus")
        assert coupon_service.calculate_discount(coupon, Decimal("100")).amount == Decimal("0.00")


class TestUsability:

    def test_active_coupon_is_usable(self):
        assert coupon_service.is_usable(_coupon())

    def test_inactive(self):
        assert not coupon_service.is_usable(_coupon(is_active=False))

    def test_outside_window(self):
        now = now_utc()
        assert not coupon_service.is_usable(_coupon(starts_at=now + timedelta(hours=1)), now)
        assert not coupon_service.is_usable(_coupon(expires_at=now - timedelta(hours=1)), now)
        assert coupon_service.is_usable(
            _coupon(starts_at=now - timedelta(hours=1), expires_at=now + timedelta(hours=1)), now,
        )

    def test_usage_limit_reached(self):
        assert not coupon_service.is_usable(_coupon(usage_limit=5, used_count=5))
        assert coupon_service.is_usable(_coupon(usage_limit=5, used_count=4))

    def test_per_customer_limit(self):
        coupon = _coupon(usage_per_customer=1)
        assert coupon_service.can_customer_use(coupon, 7, 0)
        assert not coupon_service.can_customer_use(coupon, 7, 1)
        assert coupon_service.can_customer_use(_coupon(), 7, 10)


class TestOrderRules:

    def test_minimum_amount(self):
        coupon = _coupon(minimum_amount=Decimal("100"))
        assert not coupon_service.is_applicable_to_order(coupon, Decimal("99.99"))
        assert coupon_service.is_applicable_to_order(coupon, Decimal("100"))

    def test_first_purchase_only(self):
        coupon = _coupon(first_purchase_only=True)
        assert coupon_service.is_applicable_to_order(coupon, Decimal("10"), customer_order_count=0)
        assert not coupon_service.is_applicable_to_order(coupon, Decimal("10"), customer_order_count=1)

    def test_customer_group_allowlist(self):
        coupon = _coupon(customer_groups=["vip"])
        assert coupon_service.is_applicable_to_order(coupon, Decimal("10"), customer_group="vip")
        assert not coupon_service.is_applicable_to_order(coupon, Decimal("10"), customer_group="retail")
        assert not coupon_service.is_applicable_to_order(coupon, Decimal("10"))


class TestProductScope:

    FACTS = {
        1: ProductFacts(category_ids=[10], brand_id=100),
        2: ProductFacts(category_ids=[20], brand_id=200),
    }

    def test_no_lists_always_applicable(self):
        assert coupon_service.is_applicable_to_products(_coupon(), [1], self.FACTS)

    def test_excluded_product_short_circuits(self):
        coupon = _coupon(applicable_categories=[10], excluded_products=[2])
        assert not coupon_service.is_applicable_to_products(coupon, [1, 2], self.FACTS)

    def test_excluded_brand(self):
        coupon = _coupon(excluded_brands=[100])
        assert not coupon_service.is_applicable_to_products(coupon, [1], self.FACTS)
        assert coupon_service.is_applicable_to_products(coupon, [2], self.FACTS)

    def test_inclusion_needs_overlap(self):
        coupon = _coupon(applicable_products=[2])
        assert coupon_service.is_applicable_to_products(coupon, [1, 2], self.FACTS)
        assert not coupon_service.is_applicable_to_products(coupon, [1], self.FACTS)

    def test_product_list_takes_priority_over_categories(self):
        coupon = _coupon(applicable_products=[2], applicable_categories=[10])
        assert not coupon_service.is_applicable_to_products(coupon, [1], self.FACTS)

    def test_category_inclusion(self):
        coupon = _coupon(applicable_categories=[20])
        assert coupon_service.is_applicable_to_products(coupon, [2], self.FACTS)
        assert not coupon_service.is_applicable_to_products(coupon, [1], self.FACTS)


class TestCheckChain:

    def test_valid_code_is_case_insensitive(self, db, make_coupon):
        make_coupon(code="WELCOME")
        result = coupon_service.check(db, "welcome", CouponContext(subtotal=Decimal("50")))
        assert result.ok
        assert result.coupon.code == "WELCOME"

    def test_unknown_code(self, db):
        result = coupon_service.check(db, "NOPE", CouponContext())
        assert not result.ok
        assert result.reason == "not_found"

    def test_expired(self, db, make_coupon, yesterday):
        make_coupon(code="OLD", expires_at=yesterday)
        assert coupon_service.check(db, "OLD", CouponContext()).reason == "expired"

    def test_customer_limit_counts_usages(self, db, make_coupon):
        coupon = make_coupon(code="ONCE", usage_per_customer=1)
        order = _order(db, "ORD-A", customer_id=5)
        coupon_service.record_usage(db, coupon, 5, order.id, Decimal("10"))
        db.commit()

        assert coupon_service.check(db, "ONCE", CouponContext(customer_id=5)).reason == "customer_limit"
        assert coupon_service.check(db, "ONCE", CouponContext(customer_id=6)).ok

    def test_first_purchase_ignores_cancelled_orders(self, db, make_coupon):
        make_coupon(code="FIRST", first_purchase_only=True)
        _order(db, "ORD-C", customer_id=9, status="cancelled")
        assert coupon_service.check(db, "FIRST", CouponContext(customer_id=9)).ok

        _order(db, "ORD-D", customer_id=9, status="delivered")
        assert coupon_service.check(db, "FIRST", CouponContext(customer_id=9)).reason == "first_purchase_only"

    def test_category_scope_uses_catalog(self, db, make_coupon, make_product, make_category):
        shoes = make_category("Shoes")
        shoe = make_product(name="Runner", category_ids=[shoes.id])
        hat = make_product(name="Cap")
        make_coupon(code="SHOES", applicable_categories=[shoes.id])

        assert coupon_service.check(db, "SHOES", CouponContext(product_ids=[shoe.id, hat.id])).ok
        assert coupon_service.check(db, "SHOES", CouponContext(product_ids=[hat.id])).reason == "products"


class TestUsage:

    def test_record_usage_increments_count(self, db, make_coupon):
        coupon = make_coupon(code="USE")
        order = _order(db, "ORD-U1", customer_id=1)

        usage = coupon_service.record_usage(db, coupon, 1, order.id, Decimal("10"))
        db.commit()

        assert usage.coupon_code == "USE"
        assert coupon.used_count == 1

    def test_duplicate_usage_for_same_order(self, db, make_coupon):
        coupon = make_coupon(code="DUP")
        order = _order(db, "ORD-U2", customer_id=1)
        coupon_service.record_usage(db, coupon, 1, order.id, Decimal("10"))

        with pytest.raises(DuplicateUsageError):
            coupon_service.record_usage(db, coupon, 1, order.id, Decimal("10"))

    def test_limit_enforced_on_increment(self, db, make_coupon):
        coupon = make_coupon(code="LIMIT", usage_limit=1)
        first = _order(db, "ORD-U3")
        second = _order(db, "ORD-U4")
        coupon_service.record_usage(db, coupon, None, first.id, Decimal("10"))

        with pytest.raises(CouponLimitReachedError):
            coupon_service.record_usage(db, coupon, None, second.id, Decimal("10"))

    def test_reverse_usage_while_pending(self, db, make_coupon):
        coupon = make_coupon(code="BACK")
        order = _order(db, "ORD-U5", customer_id=2)
        usage = coupon_service.record_usage(db, coupon, 2, order.id, Decimal("10"))
        db.commit()

        assert coupon_service.reverse_usage(db, usage, order)
        db.commit()

        assert coupon.used_count == 0
        assert db.query(CouponUsage).count() == 0

    def test_reverse_refused_after_shipping(self, db, make_coupon):
        coupon = make_coupon(code="KEEP")
        order = _order(db, "ORD-U6", customer_id=2, status="shipped")
        usage = coupon_service.record_usage(db, coupon, 2, order.id, Decimal("10"))
        db.commit()

        assert not coupon_service.reverse_usage(db, usage, order)
        assert coupon.used_count == 1


class TestAdmin:

    def test_create_uppercases_code(self, db):
        coupon = coupon_service.create_coupon(db, {
            "code": "summer", "name": "Summer", "discount_type": "percentage", "value": "15",
        })
        assert coupon.code == "SUMMER"
        assert coupon.value == Decimal("15")

    def test_create_generates_code(self, db):
        coupon = coupon_service.create_coupon(db, {"name": "Auto", "discount_type": "fixed", "value": 5})
        assert coupon.code.startswith("CP")
        assert len(coupon.code) == 8

    def test_validation_errors(self, db, make_coupon):
        make_coupon(code="TAKEN")
        errors = coupon_service.validate_coupon_data(db, {
            "code": "TAKEN", "discount_type": "percentage", "value": 150,
        })
        assert "This code is already in use" in errors
        assert "Name is required" in errors
        assert "Percentage cannot exceed 100" in errors

        with pytest.raises(ValueError):
            coupon_service.create_coupon(db, {"code": "X", "name": "Bad", "discount_type": "fixed", "value": 0})

    def test_used_coupon_cannot_be_deleted(self, db, make_coupon):
        coupon = make_coupon(code="USED", used_count=3)
        with pytest.raises(ValueError):
            coupon_service.delete_coupon(db, coupon.id)

        coupon_service.deactivate_coupon(db, coupon.id)
        assert coupon.is_active is False

    def test_unused_coupon_is_deleted(self, db, make_coupon):
        coupon = make_coupon(code="GONE")
        assert coupon_service.delete_coupon(db, coupon.id)
        assert coupon_service.get_by_code(db, "GONE") is None

    def test_duplicate_is_inactive_copy(self, db, make_coupon):
        source = make_coupon(code="ORIGINAL", used_count=4, minimum_amount=Decimal("50"))
        copy = coupon_service.duplicate_coupon(db, source.id)

        assert copy.code != "ORIGINAL"
        assert copy.name == "Coupon ORIGINAL (Copy)"
        assert copy.used_count == 0
        assert copy.is_active is False
        assert copy.minimum_amount == Decimal("50")

    def test_update_keeps_other_fields(self, db, make_coupon):
        coupon = make_coupon(code="EDIT", minimum_amount=Decimal("20"))
        coupon_service.update_coupon(db, coupon.id, {"value": "25", "code": "edited"})

        assert coupon.code == "EDITED"
        assert coupon.value == Decimal("25")
        assert coupon.minimum_amount == Decimal("20")

    def test_activate_deactivate(self, db, make_coupon):
        coupon = make_coupon(code="TOGGLE", is_active=False)
        assert coupon_service.activate_coupon(db, coupon.id).is_active is True
        assert coupon_service.deactivate_coupon(db, coupon.id).is_active is False

    def test_stats(self, db, make_coupon, yesterday):
        make_coupon(code="LIVE")
        make_coupon(code="OLD", expires_at=yesterday)
        make_coupon(code="OFF", is_active=False)

        stats = coupon_service.get_stats(db)

        assert stats["total_coupons"] == 3
        assert stats["active_coupons"] == 2
        assert stats["expired_coupons"] == 1
        assert stats["total_usage"] == 0
        assert stats["total_discount"] == Decimal("0.00")
