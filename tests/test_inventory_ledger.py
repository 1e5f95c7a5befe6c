"""Tests for InventoryLedger reserve / restore."""

import pytest

from common.exceptions import InsufficientStockError
from modules.catalog.models import Product, ProductVariant
from modules.inventory.models import InventoryMovement, MovementType
from modules.inventory.service import inventory_ledger


def _stock(db, model, obj_id):
    db.expire_all()
    return db.get(model, obj_id).stock_quantity


class TestReserve:

    def test_reserve_decrements_and_records_movement(self, db, make_product):
        product = make_product(stock=5)

        movements = inventory_ledger.reserve(db, product.id, 2, "ORD-1")
        db.commit()

        assert _stock(db, Product, product.id) == 3
        assert len(movements) == 1
        movement = movements[0]
        assert movement.movement_type == MovementType.SALE.value
        assert movement.quantity == -2
        assert movement.quantity_after == 3
        assert movement.reference == "ORD-1"

    def test_reserve_more_than_available_raises(self, db, make_product):
        product = make_product(stock=3)

        with pytest.raises(InsufficientStockError) as exc:
            inventory_ledger.reserve(db, product.id, 5, "ORD-2")
        db.rollback()

        assert exc.value.requested == 5
        assert _stock(db, Product, product.id) == 3
        assert db.query(InventoryMovement).count() == 0

    def test_reserve_exact_stock(self, db, make_product):
        product = make_product(stock=2)
        inventory_ledger.reserve(db, product.id, 2, "ORD-3")
        db.commit()
        assert _stock(db, Product, product.id) == 0

    def test_untracked_product_writes_nothing(self, db, make_product):
        product = make_product(stock=0, track_stock=False)

        movements = inventory_ledger.reserve(db, product.id, 4, "ORD-4")

        assert movements == []
        assert _stock(db, Product, product.id) == 0

    def test_variant_and_product_both_decremented(self, db, make_product, make_variant):
        product = make_product(stock=10)
        variant = make_variant(product, stock=4)

        movements = inventory_ledger.reserve(db, product.id, 3, "ORD-5", variant_id=variant.id)
        db.commit()

        assert len(movements) == 2
        assert _stock(db, Product, product.id) == 7
        assert _stock(db, ProductVariant, variant.id) == 1

    def test_backorders_allow_negative_stock(self, db, make_product):
        product = make_product(stock=1, allow_backorders=True)
        inventory_ledger.reserve(db, product.id, 3, "ORD-6")
        db.commit()
        assert _stock(db, Product, product.id) == -2

    def test_quantity_must_be_positive(self, db, make_product):
        product = make_product()
        with pytest.raises(ValueError):
            inventory_ledger.reserve(db, product.id, 0, "ORD-7")


class TestRestore:

    def test_restore_increments_with_cancellation_movement(self, db, make_product):
        product = make_product(stock=5)
        inventory_ledger.reserve(db, product.id, 2, "ORD-8")
        inventory_ledger.restore(db, product.id, 2, "ORD-8")
        db.commit()

        assert _stock(db, Product, product.id) == 5
        types = [m.movement_type for m in inventory_ledger.movements_for_reference(db, "ORD-8")]
        assert types == [MovementType.SALE.value, MovementType.CANCELLATION.value]

    def test_history_newest_first(self, db, make_product):
        product = make_product(stock=5)
        inventory_ledger.stock_in(db, product.id, 5, notes="Delivery")
        inventory_ledger.reserve(db, product.id, 1, "ORD-9")
        db.commit()

        history = inventory_ledger.history(db, product.id)

        assert [m.movement_type for m in history] == [MovementType.SALE.value, MovementType.STOCK_IN.value]
        assert history[0].quantity_after == 9

    def test_release_reservation_follows_recorded_movements(self, db, make_product, make_variant):
        product = make_product(stock=10)
        variant = make_variant(product, stock=4)
        inventory_ledger.reserve(db, product.id, 3, "ORD-10", variant_id=variant.id)
        db.commit()
        variant.track_stock = False
        db.commit()

        released = inventory_ledger.release_reservation(db, "ORD-10")
        db.commit()

        assert len(released) == 2
        assert {m.movement_type for m in released} == {MovementType.CANCELLATION.value}
        assert _stock(db, Product, product.id) == 10
        assert _stock(db, ProductVariant, variant.id) == 4

    def test_release_reservation_twice_gives_back_once(self, db, make_product):
        product = make_product(stock=5)
        inventory_ledger.reserve(db, product.id, 2, "ORD-11")
        inventory_ledger.release_reservation(db, "ORD-11")

        assert inventory_ledger.release_reservation(db, "ORD-11") == []
        db.commit()
        assert _stock(db, Product, product.id) == 5

    def test_release_unknown_reference_is_noop(self, db):
        assert inventory_ledger.release_reservation(db, "ORD-NONE") == []
