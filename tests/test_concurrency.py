"""Concurrent checkouts against a file-backed SQLite database."""

import threading
from decimal import Decimal

import pytest
from sqlalchemy.orm import sessionmaker

from common.exceptions import InsufficientStockError
from config.database import build_engine, init_db, transaction
from modules.cart.service import cart_service
from modules.catalog.models import Product
from modules.inventory.models import InventoryMovement
from modules.inventory.service import inventory_ledger
from modules.order.models import Order
from modules.order.service import OrderService


@pytest.fixture
def file_engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'race.db'}", connect_args={"timeout": 30})
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def Session(file_engine):
    return sessionmaker(bind=file_engine, autoflush=False)


@pytest.fixture
def last_unit(Session):
    with Session() as db:
        product = Product(name="Last One", sku="LAST-1", price=Decimal("25.00"), stock_quantity=1)
        db.add(product)
        db.commit()
        return product.id


def _run_in_threads(target, args_list):
    results = []
    lock = threading.Lock()

    def worker(*args):
        try:
            outcome = target(*args)
        except Exception as e:
            outcome = e
        with lock:
            results.append(outcome)

    threads = [threading.Thread(target=worker, args=args) for args in args_list]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)
    return results


class GatedOrderService(OrderService):
    """Both checkouts pass validation before either one reserves stock."""

    def __init__(self, barrier):
        super().__init__(notifier=lambda order, event: True)
        self.barrier = barrier

    def _validate_cart(self, db, cart):
        issues = super()._validate_cart(db, cart)
        self.barrier.wait(timeout=10)
        return issues


class TestConcurrentCheckout:

    def test_last_unit_sold_once(self, Session, last_unit):
        with Session() as db:
            for session_id in ("guest-a", "guest-b"):
                cart = cart_service.get_or_create_cart(db, session_id=session_id)
                cart_service.add_product(db, cart, last_unit, 1)
            db.commit()

        service = GatedOrderService(threading.Barrier(2))

        def checkout(session_id):
            with Session() as db:
                cart = cart_service.get_cart(db, session_id=session_id)
                return service.create_order_from_cart(db, cart).order_number

        results = _run_in_threads(checkout, [("guest-a",), ("guest-b",)])

        placed = [r for r in results if isinstance(r, str)]
        refused = [r for r in results if isinstance(r, InsufficientStockError)]
        assert len(placed) == 1, results
        assert len(refused) == 1, results

        with Session() as db:
            assert db.get(Product, last_unit).stock_quantity == 0
            assert db.query(Order).count() == 1
            assert db.query(InventoryMovement).count() == 1
            # The losing cart keeps its line
            carts = [cart_service.get_cart(db, session_id=s) for s in ("guest-a", "guest-b")]
            assert sorted(c.is_empty for c in carts) == [False, True]


class TestConcurrentReservation:

    def test_conditional_update_never_oversells(self, Session, last_unit):
        barrier = threading.Barrier(2)

        def reserve(reference):
            with Session() as db:
                db.get(Product, last_unit)
                barrier.wait(timeout=10)
                with transaction(db):
                    inventory_ledger.reserve(db, last_unit, 1, reference)
                return reference

        results = _run_in_threads(reserve, [("REF-A",), ("REF-B",)])

        assert sorted(type(r).__name__ for r in results) == ["InsufficientStockError", "str"]
        with Session() as db:
            assert db.get(Product, last_unit).stock_quantity == 0
