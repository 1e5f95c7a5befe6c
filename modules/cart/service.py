"""
Cart Module - Service Layer
==============================
Cart management: get/create, add/update/remove items, coupons,
guest-cart merge, checkout validation.

Every mutating operation ends with recompute_totals(), the only
writer of the cart's derived fields.
"""

import logging
from collections import Counter
from decimal import Decimal
from typing import Iterable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from common.exceptions import CartIssue, ItemNotFoundError, OutOfStockError
from common.helpers import RequestContext, now_utc, round_money, to_decimal
from config.settings import MAX_QUANTITY_PER_ITEM, MAX_CART_ITEMS, MERGE_GUEST_CART
from modules.cart.models import Cart, CartItem
from modules.catalog.service import catalog_service
from modules.coupon.service import CouponContext, coupon_service

logger = logging.getLogger("storefront.cart")

ZERO = Decimal("0.00")


class CartService:

    # ==========================================
    # Get / Create
    # ==========================================

    def get_cart(
        self, db: Session, customer_id: Optional[int] = None, session_id: Optional[str] = None,
    ) -> Optional[Cart]:
        if customer_id is not None:
            return db.query(Cart).filter(Cart.customer_id == customer_id).first()
        if session_id is not None:
            return db.query(Cart).filter(Cart.session_id == session_id).first()
        return None

    def get_or_create_cart(
        self, db: Session, customer_id: Optional[int] = None, session_id: Optional[str] = None,
    ) -> Cart:
        """
        Get existing cart or create a new one for the customer / session.
        Exactly one identity must be given. A concurrent creation loses on the
        unique constraint; only the insert's savepoint is rolled back and the
        winner's cart returned.
        """
        if (customer_id is None) == (session_id is None):
            raise ValueError("Exactly one of customer_id or session_id is required")

        cart = self.get_cart(db, customer_id=customer_id, session_id=session_id)
        if cart:
            return cart

        cart = Cart(customer_id=customer_id, session_id=session_id, last_activity=now_utc())
        self._zero_totals(cart)
        try:
            with db.begin_nested():
                db.add(cart)
                db.flush()
        except IntegrityError:
            cart = self.get_cart(db, customer_id=customer_id, session_id=session_id)
            if not cart:
                raise
            logger.info(f"Cart creation race resolved for customer={customer_id} session={session_id}")
        return cart

    # ==========================================
    # Items
    # ==========================================

    def add_item(
        self,
        db: Session,
        cart: Cart,
        product_id: int,
        quantity: int,
        unit_price,
        variant_id: Optional[int] = None,
        options: Optional[dict] = None,
        meta_data: Optional[dict] = None,
    ) -> CartItem:
        """
        Add a line, or increase the quantity of the existing (product, variant) line.
        Availability is not checked here; see add_product.
        """
        if quantity < 1:
            raise ValueError("Quantity must be at least 1")

        item = cart.find_item(product_id, variant_id)
        if item:
            new_qty = item.quantity + quantity
            if new_qty > MAX_QUANTITY_PER_ITEM:
                raise ValueError(f"At most {MAX_QUANTITY_PER_ITEM} units per item")
            item.quantity = new_qty
            item.line_total = round_money(to_decimal(item.unit_price) * new_qty)
        else:
            if quantity > MAX_QUANTITY_PER_ITEM:
                raise ValueError(f"At most {MAX_QUANTITY_PER_ITEM} units per item")
            if len(cart.items) >= MAX_CART_ITEMS:
                raise ValueError(f"A cart holds at most {MAX_CART_ITEMS} items")
            price = round_money(unit_price)
            item = CartItem(
                product_id=product_id,
                variant_id=variant_id,
                quantity=quantity,
                unit_price=price,
                line_total=round_money(price * quantity),
                options=options or None,
                meta_data=meta_data or None,
            )
            cart.items.append(item)

        self.recompute_totals(db, cart)
        return item

    def add_product(
        self,
        db: Session,
        cart: Cart,
        product_id: int,
        quantity: int = 1,
        variant_id: Optional[int] = None,
        options: Optional[dict] = None,
        context: Optional[RequestContext] = None,
    ) -> CartItem:
        """Catalog-validated add at the current final price. Raises OutOfStockError / NotFoundError."""
        product, variant = catalog_service.resolve(db, product_id, variant_id)
        name = f"{product.name} - {variant.name}" if variant else product.name

        purchasable = variant.is_purchasable if variant else product.is_purchasable
        if not purchasable:
            raise OutOfStockError(name)

        existing = cart.find_item(product_id, variant_id)
        wanted = quantity + (existing.quantity if existing else 0)
        available = catalog_service.available_quantity(db, product_id, variant_id)
        if wanted > available:
            raise OutOfStockError(name, available)

        return self.add_item(
            db, cart, product_id, quantity,
            catalog_service.final_price(db, product_id, variant_id),
            variant_id=variant_id,
            options=options,
            meta_data=context.as_meta() if context else None,
        )

    def update_item_quantity(
        self, db: Session, cart: Cart, item_id: int, quantity: int, check_stock: bool = True,
    ) -> bool:
        """Set a line's quantity. Zero is rejected: use remove_item to delete a line."""
        if quantity < 1:
            raise ValueError("Quantity must be at least 1 (use remove_item to delete a line)")
        if quantity > MAX_QUANTITY_PER_ITEM:
            raise ValueError(f"At most {MAX_QUANTITY_PER_ITEM} units per item")

        item = self._get_item(cart, item_id)
        if check_stock:
            available = catalog_service.available_quantity(db, item.product_id, item.variant_id)
            if quantity > available:
                raise OutOfStockError(f"product {item.product_id}", available)

        item.quantity = quantity
        item.line_total = round_money(to_decimal(item.unit_price) * quantity)
        self.recompute_totals(db, cart)
        return True

    def remove_item(self, db: Session, cart: Cart, item_id: int) -> bool:
        item = next((i for i in cart.items if i.id == item_id), None)
        if not item:
            return False
        cart.items.remove(item)
        self.recompute_totals(db, cart)
        return True

    def remove_items(self, db: Session, cart: Cart, item_ids: Iterable[int]) -> int:
        ids = set(item_ids)
        doomed = [i for i in cart.items if i.id in ids]
        for item in doomed:
            cart.items.remove(item)
        self.recompute_totals(db, cart)
        return len(doomed)

    def clear(self, db: Session, cart: Cart):
        """Remove all items, zero every derived field and drop the coupon."""
        cart.items.clear()
        cart.coupon_code = None
        self._zero_totals(cart)
        cart.last_activity = now_utc()
        db.flush()

    # ==========================================
    # Coupon / shipping quote
    # ==========================================

    def apply_coupon(self, db: Session, cart: Cart, code: str, customer_group: Optional[str] = None) -> bool:
        """
        Returns False (cart untouched) when the coupon does not apply.
        The customer group is kept in cart metadata for checkout re-validation.
        """
        result = coupon_service.check(db, code, self.coupon_context(cart, customer_group))
        if not result.ok:
            logger.info(f"Coupon '{code}' rejected for cart {cart.id}: {result.reason}")
            return False

        cart.coupon_code = result.coupon.code
        if customer_group is not None:
            cart.meta_data = {**(cart.meta_data or {}), "customer_group": customer_group}
        self.recompute_totals(db, cart)
        logger.info(f"Coupon {cart.coupon_code} applied to cart {cart.id} (-{cart.discount_amount})")
        return True

    def remove_coupon(self, db: Session, cart: Cart):
        cart.coupon_code = None
        cart.discount_amount = ZERO
        self.recompute_totals(db, cart)

    def set_shipping_quote(self, db: Session, cart: Cart, shipping_cost, tax_amount=0):
        """Store externally quoted shipping / tax; a free-shipping coupon depends on it."""
        shipping_cost, tax_amount = to_decimal(shipping_cost), to_decimal(tax_amount)
        if shipping_cost < 0 or tax_amount < 0:
            raise ValueError("Shipping cost and tax must not be negative")
        cart.shipping_cost = round_money(shipping_cost)
        cart.tax_amount = round_money(tax_amount)
        self.recompute_totals(db, cart)

    def coupon_context(self, cart: Cart, customer_group: Optional[str] = None) -> CouponContext:
        if customer_group is None:
            customer_group = (cart.meta_data or {}).get("customer_group")
        return CouponContext(
            subtotal=to_decimal(cart.subtotal),
            product_ids=cart.product_ids,
            customer_id=cart.customer_id,
            customer_group=customer_group,
            shipping_cost=to_decimal(cart.shipping_cost),
        )

    # ==========================================
    # Totals
    # ==========================================

    def recompute_totals(self, db: Session, cart: Cart):
        """
        subtotal = sum of lines, total = subtotal - discount. Idempotent.
        The item discount is bounded by the subtotal; a free-shipping waiver
        goes to shipping_discount so total never drops below zero.
        """
        subtotal = round_money(sum((to_decimal(i.line_total) for i in cart.items), Decimal("0")))
        discount = ZERO
        shipping_discount = ZERO
        if cart.coupon_code:
            coupon = coupon_service.get_by_code(db, cart.coupon_code)
            if coupon:
                discount = coupon_service.calculate_discount(coupon, subtotal).amount
                shipping_discount = coupon_service.shipping_discount(coupon, cart.shipping_cost)

        cart.subtotal = subtotal
        cart.items_count = sum(i.quantity for i in cart.items)
        cart.discount_amount = discount
        cart.shipping_discount = shipping_discount
        cart.total = round_money(subtotal - discount)
        cart.last_activity = now_utc()
        db.flush()

    # ==========================================
    # Merge (guest -> customer)
    # ==========================================

    def merge_from(self, db: Session, target: Cart, source: Cart) -> int:
        """
        Move every source line into target: matching (product, variant) lines
        sum quantities at the target's price, others change parent.
        The source cart is deleted. Returns the number of lines transferred.
        """
        if target.id == source.id:
            return 0

        transferred = 0
        for item in list(source.items):
            existing = target.find_item(item.product_id, item.variant_id)
            if existing:
                wanted = existing.quantity + item.quantity
                existing.quantity = min(wanted, MAX_QUANTITY_PER_ITEM)
                existing.line_total = round_money(to_decimal(existing.unit_price) * existing.quantity)
                dropped = wanted - existing.quantity
                if dropped:
                    logger.warning(
                        f"Merge capped product {item.product_id} at {MAX_QUANTITY_PER_ITEM}: "
                        f"{dropped} guest unit(s) dropped"
                    )
                    prior = (existing.meta_data or {}).get("merge_dropped_quantity", 0)
                    existing.meta_data = {**(existing.meta_data or {}), "merge_dropped_quantity": prior + dropped}
                if item.options and item.options != existing.options:
                    merged = list((existing.meta_data or {}).get("merged_options", []))
                    merged.append(item.options)
                    existing.meta_data = {**(existing.meta_data or {}), "merged_options": merged}
            else:
                item.cart = target
            transferred += 1

        db.delete(source)
        self.recompute_totals(db, target)
        logger.info(f"Merged {transferred} line(s) from cart {source.id} into cart {target.id}")
        return transferred

    def merge_guest_cart(self, db: Session, session_id: str, customer_id: int) -> Optional[Cart]:
        """On login: adopt the guest cart if the customer has none, otherwise merge it in."""
        guest = self.get_cart(db, session_id=session_id)
        customer_cart = self.get_cart(db, customer_id=customer_id)
        if not guest:
            return customer_cart

        if customer_cart is None:
            guest.session_id = None
            guest.customer_id = customer_id
            self.recompute_totals(db, guest)
            return guest

        if MERGE_GUEST_CART:
            self.merge_from(db, customer_cart, guest)
        return customer_cart

    # ==========================================
    # Checkout validation (read-only)
    # ==========================================

    def validate_for_checkout(self, db: Session, cart: Cart) -> List[CartIssue]:
        """Per-item problems that block order creation. Empty list = ready."""
        if cart.is_empty:
            return [CartIssue(reason="empty_cart", message="Cart is empty.")]

        issues = []
        # Lines of different variants share the product's stock
        per_product = Counter()
        for item in cart.items:
            per_product[item.product_id] += item.quantity

        for item in cart.items:
            where = dict(item_id=item.id, product_id=item.product_id, variant_id=item.variant_id)
            product = catalog_service.get_product(db, item.product_id)
            variant = (
                catalog_service.get_variant(db, item.product_id, item.variant_id)
                if item.variant_id is not None else None
            )
            if not product or (item.variant_id is not None and not variant):
                issues.append(CartIssue(reason="not_found", message="Product no longer exists.", **where))
                continue

            name = f"{product.name} - {variant.name}" if variant else product.name
            purchasable = variant.is_purchasable if variant else product.is_purchasable
            if not purchasable:
                issues.append(CartIssue(reason="not_purchasable", message=f"{name} is not available.", **where))
                continue

            short = per_product[item.product_id] > product.available_quantity
            if variant is not None and item.quantity > variant.available_quantity:
                short = True
            if short:
                issues.append(CartIssue(
                    reason="insufficient_stock",
                    message=f"Not enough stock for {name}.",
                    **where,
                ))

        if cart.coupon_code:
            result = coupon_service.check(db, cart.coupon_code, self.coupon_context(cart))
            if not result.ok:
                issues.append(CartIssue(
                    reason="coupon_invalid",
                    message=f"Coupon {cart.coupon_code} is no longer valid ({result.reason}).",
                ))

        return issues

    # ==========================================
    # Private helpers
    # ==========================================

    def _get_item(self, cart: Cart, item_id: int) -> CartItem:
        for item in cart.items:
            if item.id == item_id:
                return item
        raise ItemNotFoundError(item_id)

    def _zero_totals(self, cart: Cart):
        cart.subtotal = ZERO
        cart.discount_amount = ZERO
        cart.shipping_cost = ZERO
        cart.shipping_discount = ZERO
        cart.tax_amount = ZERO
        cart.total = ZERO
        cart.items_count = 0


cart_service = CartService()
