"""Tests for Order predicates and the status transition tables."""

from datetime import timedelta

import pytest

from common.helpers import now_utc
from modules.order.models import (
    Order, OrderItem, StatusAxis, can_transition,
    ORDER_TRANSITIONS, PAYMENT_TRANSITIONS, SHIPPING_TRANSITIONS,
    OrderStatus, PaymentStatus, ShippingStatus,
)


def _order(status="pending", payment="pending", shipping="not_shipped", **kwargs):
    return Order(order_number="ORD-T", status=status, payment_status=payment, shipping_status=shipping, **kwargs)


class TestPredicates:

    @pytest.mark.parametrize("status,payment,expected", [
        ("pending", "pending", True),
        ("confirmed", "failed", True),
        ("pending", "paid", False),
        ("processing", "pending", False),
        ("delivered", "pending", False),
    ])
    def test_can_be_cancelled(self, status, payment, expected):
        assert _order(status, payment).can_be_cancelled() is expected

    @pytest.mark.parametrize("status,payment,expected", [
        ("confirmed", "paid", True),
        ("processing", "paid", True),
        ("confirmed", "pending", False),
        ("pending", "paid", False),
        ("shipped", "paid", False),
    ])
    def test_can_be_shipped(self, status, payment, expected):
        assert _order(status, payment).can_be_shipped() is expected

    @pytest.mark.parametrize("status,payment,expected", [
        ("shipped", "paid", True),
        ("confirmed", "paid", True),
        ("delivered", "paid", False),
        ("processing", "failed", False),
    ])
    def test_can_be_refunded(self, status, payment, expected):
        assert _order(status, payment).can_be_refunded() is expected

    def test_shipped_family(self):
        for shipping in ("shipped", "in_transit", "out_for_delivery"):
            assert _order(shipping=shipping).is_shipped()
        for shipping in ("not_shipped", "preparing", "delivered", "returned"):
            assert not _order(shipping=shipping).is_shipped()

    def test_terminal_states(self):
        assert {s.value for s in OrderStatus if _order(s.value).is_terminal()} == {
            "delivered", "cancelled", "refunded", "returned",
        }

    def test_processing_and_delivery_time(self):
        created = now_utc()
        order = _order(
            created_at=created,
            confirmed_at=created + timedelta(hours=2),
            shipped_at=created + timedelta(hours=5),
            delivered_at=created + timedelta(hours=53),
        )
        assert order.processing_time == pytest.approx(2.0)
        assert order.delivery_time == pytest.approx(48.0)
        assert _order().processing_time is None

    def test_item_refund_flags(self):
        item = OrderItem(quantity=2, refunded_quantity=1, returned_quantity=2)
        assert not item.is_refunded
        assert item.is_returned


class TestTransitionTables:

    def test_every_state_has_an_entry(self):
        assert set(ORDER_TRANSITIONS) == set(OrderStatus)
        assert set(PAYMENT_TRANSITIONS) == set(PaymentStatus)
        assert set(SHIPPING_TRANSITIONS) == set(ShippingStatus)

    def test_order_happy_path(self):
        path = ["pending", "confirmed", "processing", "shipped", "delivered"]
        for current, target in zip(path, path[1:]):
            assert can_transition(StatusAxis.ORDER, current, target)

    def test_order_illegal_edges(self):
        assert not can_transition(StatusAxis.ORDER, "pending", "shipped")
        assert not can_transition(StatusAxis.ORDER, "shipped", "cancelled")
        assert not can_transition(StatusAxis.ORDER, "cancelled", "confirmed")
        assert not can_transition(StatusAxis.ORDER, "delivered", "refunded")

    def test_payment_edges(self):
        assert can_transition(StatusAxis.PAYMENT, "pending", "paid")
        assert can_transition(StatusAxis.PAYMENT, "processing", "failed")
        assert can_transition(StatusAxis.PAYMENT, "paid", "partially_refunded")
        assert not can_transition(StatusAxis.PAYMENT, "pending", "refunded")
        assert not can_transition(StatusAxis.PAYMENT, "refunded", "paid")

    def test_shipping_edges(self):
        path = ["not_shipped", "preparing", "shipped", "in_transit", "out_for_delivery", "delivered"]
        for current, target in zip(path, path[1:]):
            assert can_transition(StatusAxis.SHIPPING, current, target)
        for state in path[:-1]:
            assert can_transition(StatusAxis.SHIPPING, state, "failed_delivery")
            assert can_transition(StatusAxis.SHIPPING, state, "returned")
        assert not can_transition(StatusAxis.SHIPPING, "delivered", "returned")

    def test_unknown_status_rejected(self):
        with pytest.raises(ValueError):
            can_transition(StatusAxis.ORDER, "pending", "teleported")
