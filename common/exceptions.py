"""
Storefront Core - Custom Exceptions
====================================
Business-level exceptions raised by the service layer.
"""

from dataclasses import dataclass
from typing import List, Optional


class StoreError(Exception):
    """Base exception for all business logic errors."""
    def __init__(self, message: str = "An unexpected error occurred."):
        self.message = message
        super().__init__(self.message)


class NotFoundError(StoreError):
    """Raised when a requested resource doesn't exist."""
    pass


class ItemNotFoundError(NotFoundError):
    """Raised when a line item id does not belong to the cart."""
    def __init__(self, item_id: int):
        self.item_id = item_id
        super().__init__(f"Item {item_id} not found in cart.")


# ==========================================
# Cart / Checkout
# ==========================================

@dataclass
class CartIssue:
    """One offending line item (or the cart itself when item_id is None)."""
    reason: str
    message: str
    item_id: Optional[int] = None
    product_id: Optional[int] = None
    variant_id: Optional[int] = None


class CartInvalidError(StoreError):
    """Raised when a cart cannot be turned into an order."""
    def __init__(self, issues: List[CartIssue]):
        self.issues = list(issues)
        summary = "; ".join(issue.message for issue in self.issues) or "Cart is invalid."
        super().__init__(summary)


class OutOfStockError(StoreError):
    """Raised when the requested quantity is not available."""
    def __init__(self, product_name: str = "", available: Optional[int] = None):
        self.available = available
        msg = f"Not enough stock: {product_name}" if product_name else "Not enough stock."
        if available is not None:
            msg += f" (available: {available})"
        super().__init__(msg)


class InsufficientStockError(StoreError):
    """Raised when the ledger cannot reserve the requested quantity."""
    def __init__(self, product_id: int, requested: int, variant_id: Optional[int] = None):
        self.product_id = product_id
        self.variant_id = variant_id
        self.requested = requested
        target = f"variant {variant_id}" if variant_id else f"product {product_id}"
        super().__init__(f"Insufficient stock for {target} (requested: {requested})")


# ==========================================
# Order lifecycle
# ==========================================

class InvalidTransitionError(StoreError):
    """Raised when an action is not allowed in the order's current state."""
    def __init__(self, axis: str, current: str, target: str, message: str = ""):
        self.axis = axis
        self.current = current
        self.target = target
        super().__init__(
            message or f"Action not allowed in current state: {axis} {current} -> {target}"
        )


# ==========================================
# Coupons
# ==========================================

class DuplicateUsageError(StoreError):
    """Raised when a coupon usage is recorded twice for one order."""
    pass


class CouponLimitReachedError(StoreError):
    """Raised when the coupon's global usage limit is exhausted."""
    pass


# ==========================================
# Infrastructure
# ==========================================

class PersistenceError(StoreError):
    """Raised after rollback when the store fails mid-transaction."""
    pass
