"""
Order Module - Service Layer
===============================
Checkout (cart -> order), status transitions and their side effects:
inventory reservation / restoration, coupon usage, status history,
notifications.

Every workflow runs inside config.database.transaction(): either all
of its writes are committed or none are. Notifications are sent after
commit and never roll anything back.
"""

import logging
from typing import Callable, List, Optional

from sqlalchemy import desc
from sqlalchemy.orm import Session

from common.exceptions import CartInvalidError, CartIssue, InvalidTransitionError
from common.helpers import (
    RequestContext, now_utc, to_decimal, generate_order_number, generate_unique_value,
)
from common.notifications import notify_order_event
from config.database import transaction
from config.settings import STORE_CURRENCY
from modules.cart.models import Cart
from modules.cart.service import cart_service
from modules.catalog.service import catalog_service
from modules.coupon.service import coupon_service
from modules.inventory.service import InventoryLedger, inventory_ledger
from modules.order.models import (
    Order, OrderItem, OrderStatusHistory,
    OrderStatus, PaymentStatus, ShippingStatus, StatusAxis,
    AXES, can_transition,
)

logger = logging.getLogger("storefront.order")

_STATUS_FIELDS = {
    StatusAxis.ORDER: "status",
    StatusAxis.PAYMENT: "payment_status",
    StatusAxis.SHIPPING: "shipping_status",
}


class OrderService:

    def __init__(
        self,
        ledger: Optional[InventoryLedger] = None,
        notifier: Optional[Callable[[Order, str], bool]] = None,
    ):
        self.ledger = ledger or inventory_ledger
        self.notifier = notifier or notify_order_event

    # ==========================================
    # Checkout
    # ==========================================

    def create_order_from_cart(
        self,
        db: Session,
        cart: Cart,
        billing_address_id: Optional[int] = None,
        shipping_address_id: Optional[int] = None,
        notes: Optional[str] = None,
        context: Optional[RequestContext] = None,
        actor_id: Optional[int] = None,
    ) -> Order:
        """
        Turn the cart into a pending order, as one transaction:
        1. Validate (CartInvalidError before any write)
        2. Create the order from the cart's totals
        3. Snapshot each line into an OrderItem
        4. Reserve stock for every tracked product / variant
        5. Record coupon usage
        6. Clear the cart
        7. History row for "pending"

        Raises CartInvalidError, InsufficientStockError or PersistenceError;
        on any of them nothing is written.
        """
        issues = self._validate_cart(db, cart)
        if issues:
            logger.warning(f"Checkout refused for cart {cart.id}: {[i.reason for i in issues]}")
            raise CartInvalidError(issues)

        with transaction(db):
            cart_service.recompute_totals(db, cart)

            order = Order(
                order_number=generate_unique_value(db, Order.order_number, generate_order_number),
                customer_id=cart.customer_id,
                cart_id=cart.id,
                status=OrderStatus.PENDING.value,
                payment_status=PaymentStatus.PENDING.value,
                shipping_status=ShippingStatus.NOT_SHIPPED.value,
                subtotal=cart.subtotal,
                discount_amount=cart.discount_amount,
                shipping_cost=cart.shipping_cost,
                shipping_discount=cart.shipping_discount,
                tax_amount=cart.tax_amount,
                total=cart.total,
                currency=STORE_CURRENCY,
                coupon_code=cart.coupon_code,
                billing_address_id=billing_address_id,
                shipping_address_id=shipping_address_id,
                notes=notes,
                meta_data=context.as_meta() if context else None,
            )
            db.add(order)
            db.flush()

            for item in cart.items:
                snap = catalog_service.snapshot(db, item.product_id, item.variant_id)
                order.items.append(OrderItem(
                    product_id=item.product_id,
                    variant_id=item.variant_id,
                    product_name=snap["product_name"],
                    product_sku=snap["product_sku"],
                    quantity=item.quantity,
                    price=item.unit_price,
                    total=item.line_total,
                    options=item.options,
                    attributes=snap["attributes"] or None,
                    meta_data=item.meta_data,
                ))
            db.flush()

            for oi in order.items:
                self.ledger.reserve(db, oi.product_id, oi.quantity, order.order_number, variant_id=oi.variant_id)

            if cart.coupon_code:
                coupon = coupon_service.get_by_code(db, cart.coupon_code)
                coupon_service.record_usage(
                    db, coupon, order.customer_id, order.id,
                    to_decimal(order.discount_amount) + to_decimal(order.shipping_discount),
                )

            cart_service.clear(db, cart)
            self._write_history(
                db, order, StatusAxis.ORDER, OrderStatus.PENDING, None,
                actor_id, "Order created", context,
            )

        logger.info(f"Order created: {order.order_number} ({len(order.items)} items, total {order.total})")
        self._notify(order, "order_created")
        return order

    # ==========================================
    # Order status transitions
    # ==========================================

    def confirm_order(
        self,
        db: Session,
        order: Order,
        actor_id: Optional[int] = None,
        notes: Optional[str] = None,
        context: Optional[RequestContext] = None,
    ) -> Order:
        """pending -> confirmed. Payment is not required."""
        self._require(order, StatusAxis.ORDER, OrderStatus.CONFIRMED)
        with transaction(db):
            self._confirm(db, order, actor_id, notes, context)
        self._notify(order, "order_confirmed")
        return order

    def process_order(
        self,
        db: Session,
        order: Order,
        actor_id: Optional[int] = None,
        notes: Optional[str] = None,
        context: Optional[RequestContext] = None,
    ) -> Order:
        """confirmed -> processing."""
        if OrderStatus(order.status) != OrderStatus.CONFIRMED:
            raise InvalidTransitionError(
                StatusAxis.ORDER.value, order.status, OrderStatus.PROCESSING.value,
                "Only confirmed orders can be processed",
            )
        with transaction(db):
            self._set_status(db, order, StatusAxis.ORDER, OrderStatus.PROCESSING, actor_id, notes, context)
        return order

    def ship_order(
        self,
        db: Session,
        order: Order,
        tracking_number: Optional[str] = None,
        tracking_url: Optional[str] = None,
        actor_id: Optional[int] = None,
        context: Optional[RequestContext] = None,
    ) -> Order:
        """Requires a paid, confirmed/processing order."""
        if not order.can_be_shipped():
            raise InvalidTransitionError(
                StatusAxis.ORDER.value, order.status, OrderStatus.SHIPPED.value,
                f"Order {order.order_number} cannot be shipped "
                f"(status {order.status}, payment {order.payment_status})",
            )
        self._require(order, StatusAxis.SHIPPING, ShippingStatus.SHIPPED)

        with transaction(db):
            note = f"Tracking: {tracking_number}" if tracking_number else None
            self._set_status(db, order, StatusAxis.ORDER, OrderStatus.SHIPPED, actor_id, note, context)
            self._set_status(db, order, StatusAxis.SHIPPING, ShippingStatus.SHIPPED, actor_id, note, context)
            if tracking_number:
                order.tracking_number = tracking_number
            if tracking_url:
                order.tracking_url = tracking_url
            order.shipped_at = now_utc()

        self._notify(order, "order_shipped")
        return order

    def deliver_order(
        self,
        db: Session,
        order: Order,
        actor_id: Optional[int] = None,
        context: Optional[RequestContext] = None,
    ) -> Order:
        """Requires shipping status shipped / in_transit / out_for_delivery."""
        if not order.is_shipped():
            raise InvalidTransitionError(
                StatusAxis.SHIPPING.value, order.shipping_status, ShippingStatus.DELIVERED.value,
                f"Order {order.order_number} has not been shipped",
            )
        self._require(order, StatusAxis.ORDER, OrderStatus.DELIVERED)

        with transaction(db):
            self._set_status(db, order, StatusAxis.ORDER, OrderStatus.DELIVERED, actor_id, None, context)
            self._set_status(db, order, StatusAxis.SHIPPING, ShippingStatus.DELIVERED, actor_id, None, context)
            order.delivered_at = now_utc()

        self._notify(order, "order_delivered")
        return order

    def cancel_order(
        self,
        db: Session,
        order: Order,
        reason: Optional[str] = None,
        actor_id: Optional[int] = None,
        context: Optional[RequestContext] = None,
    ) -> Order:
        """
        Give back the stock reserved under the order number, reverse coupon
        usage, then mark cancelled.
        A failed restoration aborts the whole cancellation.
        """
        if not order.can_be_cancelled():
            raise InvalidTransitionError(
                StatusAxis.ORDER.value, order.status, OrderStatus.CANCELLED.value,
                f"Order {order.order_number} cannot be cancelled "
                f"(status {order.status}, payment {order.payment_status})",
            )

        with transaction(db):
            self.ledger.release_reservation(db, order.order_number)
            coupon_service.reverse_order_usages(db, order)

            self._set_status(
                db, order, StatusAxis.ORDER, OrderStatus.CANCELLED,
                actor_id, reason or "Order cancelled", context,
            )
            order.cancellation_reason = reason
            order.cancelled_at = now_utc()

        logger.info(f"Order cancelled: {order.order_number} ({reason or 'no reason'})")
        self._notify(order, "order_cancelled")
        return order

    # ==========================================
    # Payment / shipping axes
    # ==========================================

    def update_payment_status(
        self,
        db: Session,
        order: Order,
        status,
        transaction_id: Optional[str] = None,
        payment_data: Optional[dict] = None,
        actor_id: Optional[int] = None,
        context: Optional[RequestContext] = None,
    ) -> Order:
        """
        Write payment status / transaction id. Becoming paid while the
        order is still pending confirms it in the same transaction.
        Re-sending the current status only updates the payment fields.
        """
        target = PaymentStatus(status)
        changed = target != PaymentStatus(order.payment_status)
        if changed:
            self._require(order, StatusAxis.PAYMENT, target)

        auto_confirm = target == PaymentStatus.PAID and OrderStatus(order.status) == OrderStatus.PENDING
        with transaction(db):
            if changed:
                self._set_status(db, order, StatusAxis.PAYMENT, target, actor_id, None, context)
            if transaction_id:
                order.transaction_id = transaction_id
            if payment_data is not None:
                order.payment_data = payment_data
            if auto_confirm:
                self._confirm(db, order, actor_id, "Payment confirmed", context)

        if auto_confirm:
            self._notify(order, "order_confirmed")
        return order

    def update_shipping_status(
        self,
        db: Session,
        order: Order,
        status,
        tracking_number: Optional[str] = None,
        tracking_url: Optional[str] = None,
        actor_id: Optional[int] = None,
        context: Optional[RequestContext] = None,
    ) -> Order:
        """Carrier updates. "shipped" and "delivered" go through ship_order / deliver_order."""
        target = ShippingStatus(status)
        if target == ShippingStatus.SHIPPED:
            return self.ship_order(db, order, tracking_number, tracking_url, actor_id, context)
        if target == ShippingStatus.DELIVERED:
            return self.deliver_order(db, order, actor_id, context)

        self._require(order, StatusAxis.SHIPPING, target)
        with transaction(db):
            self._set_status(db, order, StatusAxis.SHIPPING, target, actor_id, None, context)
            if tracking_number:
                order.tracking_number = tracking_number
            if tracking_url:
                order.tracking_url = tracking_url
        return order

    # ==========================================
    # Query
    # ==========================================

    def get_by_id(self, db: Session, order_id: int) -> Optional[Order]:
        return db.query(Order).filter(Order.id == order_id).first()

    def get_by_number(self, db: Session, order_number: str) -> Optional[Order]:
        return db.query(Order).filter(Order.order_number == order_number).first()

    def get_customer_orders(self, db: Session, customer_id: int) -> List[Order]:
        return db.query(Order).filter(
            Order.customer_id == customer_id,
        ).order_by(desc(Order.created_at), desc(Order.id)).all()

    def get_orders_by_status(self, db: Session, status) -> List[Order]:
        return db.query(Order).filter(
            Order.status == OrderStatus(status).value,
        ).order_by(desc(Order.id)).all()

    def get_pending_shipping_orders(self, db: Session) -> List[Order]:
        """Paid orders that are ready to ship but have not left yet."""
        return db.query(Order).filter(
            Order.status.in_([OrderStatus.CONFIRMED.value, OrderStatus.PROCESSING.value]),
            Order.payment_status == PaymentStatus.PAID.value,
            Order.shipping_status.in_([ShippingStatus.NOT_SHIPPED.value, ShippingStatus.PREPARING.value]),
        ).order_by(Order.id).all()

    def get_history(self, db: Session, order: Order, axis: Optional[StatusAxis] = None) -> List[OrderStatusHistory]:
        q = db.query(OrderStatusHistory).filter(OrderStatusHistory.order_id == order.id)
        if axis is not None:
            q = q.filter(OrderStatusHistory.axis == StatusAxis(axis).value)
        return q.order_by(OrderStatusHistory.id).all()

    # ==========================================
    # Private Helpers
    # ==========================================

    def _validate_cart(self, db: Session, cart: Cart) -> List[CartIssue]:
        return cart_service.validate_for_checkout(db, cart)

    def _require(self, order: Order, axis: StatusAxis, target):
        current = getattr(order, _STATUS_FIELDS[axis])
        if not can_transition(axis, current, target):
            raise InvalidTransitionError(axis.value, current, target.value)

    def _confirm(self, db: Session, order: Order, actor_id, notes, context):
        if OrderStatus(order.status) != OrderStatus.PENDING:
            raise InvalidTransitionError(
                StatusAxis.ORDER.value, order.status, OrderStatus.CONFIRMED.value,
                "Only pending orders can be confirmed",
            )
        self._set_status(db, order, StatusAxis.ORDER, OrderStatus.CONFIRMED, actor_id, notes, context)
        order.confirmed_at = now_utc()
        logger.info(f"Order confirmed: {order.order_number}")

    def _set_status(
        self,
        db: Session,
        order: Order,
        axis: StatusAxis,
        target,
        actor_id: Optional[int],
        notes: Optional[str],
        context: Optional[RequestContext],
    ):
        """Validated write of one status field plus its history row. Returns the previous status."""
        enum_cls, _ = AXES[axis]
        field = _STATUS_FIELDS[axis]
        current = enum_cls(getattr(order, field))
        target = enum_cls(target)
        if not can_transition(axis, current, target):
            raise InvalidTransitionError(axis.value, current.value, target.value)

        setattr(order, field, target.value)
        self._write_history(db, order, axis, target, current, actor_id, notes, context)
        logger.info(f"Order {order.order_number} {axis.value}: {current.value} -> {target.value}")
        return current

    def _write_history(
        self,
        db: Session,
        order: Order,
        axis: StatusAxis,
        status,
        previous,
        actor_id: Optional[int],
        notes: Optional[str],
        context: Optional[RequestContext],
    ) -> OrderStatusHistory:
        entry = OrderStatusHistory(
            axis=axis.value,
            status=status.value,
            previous_status=previous.value if previous is not None else None,
            user_id=actor_id,
            notes=notes,
            meta_data=context.as_meta() if context else None,
        )
        order.history.append(entry)
        db.flush()
        return entry

    def _notify(self, order: Order, event_type: str):
        """Fire-and-forget: the order is already committed."""
        try:
            self.notifier(order, event_type)
        except Exception as e:
            logger.error(f"Notification '{event_type}' failed for {order.order_number}: {e}")


# Singleton
order_service = OrderService()
