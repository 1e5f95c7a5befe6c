"""
Inventory Module - Service Layer
==================================
InventoryLedger: atomic stock decrement/increment for products and
variants. Every change writes an InventoryMovement.

Decrements are a single conditional UPDATE
(stock_quantity >= n), never a read-then-write pair, so two
concurrent reservations of the last unit cannot both succeed.
"""

import logging
from typing import List, Optional

from sqlalchemy.orm import Session
from sqlalchemy import desc

from common.exceptions import InsufficientStockError
from modules.catalog.models import Product, ProductVariant
from modules.catalog.service import catalog_service
from modules.inventory.models import InventoryMovement, MovementType

logger = logging.getLogger("storefront.inventory")


class InventoryLedger:

    # ==========================================
    # Reserve / Restore
    # ==========================================

    def reserve(
        self,
        db: Session,
        product_id: int,
        quantity: int,
        reference: str,
        variant_id: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> List[InventoryMovement]:
        """
        Decrement stock for the product and, if given, the variant
        (each level only when it tracks stock).
        Raises InsufficientStockError when a tracked level cannot cover `quantity`.
        Returns the movements written (empty when nothing is tracked).
        """
        if quantity < 1:
            raise ValueError("Quantity must be at least 1")
        return self._move(
            db, product_id, variant_id, -quantity, MovementType.SALE,
            reference, notes or f"Order #{reference}",
        )

    def restore(
        self,
        db: Session,
        product_id: int,
        quantity: int,
        reference: str,
        variant_id: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> List[InventoryMovement]:
        """Compensating increment (order cancellation)."""
        if quantity < 1:
            raise ValueError("Quantity must be at least 1")
        return self._move(
            db, product_id, variant_id, quantity, MovementType.CANCELLATION,
            reference, notes or f"Cancelled order #{reference}",
        )

    def release_reservation(
        self, db: Session, reference: str, notes: Optional[str] = None,
    ) -> List[InventoryMovement]:
        """
        Give back what was actually taken under `reference`: every stock level
        with a net negative balance of movements is restored by that amount,
        whatever its current track_stock flag.
        """
        net = {}
        for movement in self.movements_for_reference(db, reference):
            key = (movement.product_id, movement.variant_id)
            net[key] = net.get(key, 0) + movement.quantity

        notes = notes or f"Cancelled order #{reference}"
        movements = []
        for (product_id, variant_id), balance in net.items():
            if balance >= 0:
                continue
            model, obj_id = (ProductVariant, variant_id) if variant_id is not None else (Product, product_id)
            obj = db.get(model, obj_id)
            if obj is None:
                logger.warning(f"Stock not restored for {reference}: {model.__name__} {obj_id} no longer exists")
                continue
            after = self._apply(db, model, obj, -balance, product_id, variant_id)
            movements.append(self._record(
                db, product_id, variant_id, -balance, after, MovementType.CANCELLATION, reference, notes,
            ))
            logger.info(
                f"Stock cancellation {-balance:+d} for product {product_id}"
                f"{f' variant {variant_id}' if variant_id else ''} ({reference})"
            )

        db.flush()
        return movements

    def stock_in(
        self,
        db: Session,
        product_id: int,
        quantity: int,
        variant_id: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> List[InventoryMovement]:
        """Manual receipt of goods."""
        if quantity < 1:
            raise ValueError("Quantity must be at least 1")
        return self._move(db, product_id, variant_id, quantity, MovementType.STOCK_IN, None, notes)

    # ==========================================
    # Query
    # ==========================================

    def history(
        self, db: Session, product_id: int, variant_id: Optional[int] = None,
    ) -> List[InventoryMovement]:
        q = db.query(InventoryMovement).filter(InventoryMovement.product_id == product_id)
        if variant_id is not None:
            q = q.filter(InventoryMovement.variant_id == variant_id)
        return q.order_by(desc(InventoryMovement.id)).all()

    def movements_for_reference(self, db: Session, reference: str) -> List[InventoryMovement]:
        return db.query(InventoryMovement).filter(
            InventoryMovement.reference == reference,
        ).order_by(InventoryMovement.id).all()

    # ==========================================
    # Private Helpers
    # ==========================================

    def _move(
        self,
        db: Session,
        product_id: int,
        variant_id: Optional[int],
        delta: int,
        movement_type: MovementType,
        reference: Optional[str],
        notes: Optional[str],
    ) -> List[InventoryMovement]:
        product, variant = catalog_service.resolve(db, product_id, variant_id)

        movements = []
        if product.track_stock:
            after = self._apply(db, Product, product, delta, product_id, None)
            movements.append(self._record(
                db, product_id, None, delta, after, movement_type, reference, notes,
            ))
        if variant is not None and variant.track_stock:
            after = self._apply(db, ProductVariant, variant, delta, product_id, variant_id)
            movements.append(self._record(
                db, product_id, variant_id, delta, after, movement_type, reference, notes,
            ))

        if movements:
            logger.info(
                f"Stock {movement_type.value} {delta:+d} for product {product_id}"
                f"{f' variant {variant_id}' if variant_id else ''} ({reference or '-'})"
            )
        db.flush()
        return movements

    def _apply(self, db: Session, model, obj, delta: int, product_id: int, variant_id: Optional[int]) -> int:
        """Conditional UPDATE on one stock level. Returns the new quantity."""
        q = db.query(model).filter(model.id == obj.id)
        if delta < 0 and not obj.allow_backorders:
            q = q.filter(model.stock_quantity >= -delta)

        updated = q.update(
            {model.stock_quantity: model.stock_quantity + delta},
            synchronize_session=False,
        )
        if updated == 0:
            logger.warning(
                f"Reservation refused: {-delta} units of product {product_id}"
                f"{f' variant {variant_id}' if variant_id else ''}"
            )
            raise InsufficientStockError(product_id, -delta, variant_id)

        db.expire(obj, ["stock_quantity"])
        return obj.stock_quantity

    def _record(
        self,
        db: Session,
        product_id: int,
        variant_id: Optional[int],
        delta: int,
        after: int,
        movement_type: MovementType,
        reference: Optional[str],
        notes: Optional[str],
    ) -> InventoryMovement:
        movement = InventoryMovement(
            product_id=product_id,
            variant_id=variant_id,
            movement_type=movement_type.value,
            quantity=delta,
            quantity_after=after,
            reference=reference,
            notes=notes,
        )
        db.add(movement)
        return movement


inventory_ledger = InventoryLedger()
