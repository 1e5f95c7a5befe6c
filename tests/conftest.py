"""Pytest fixtures for storefront tests."""

import itertools
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from common.helpers import now_utc
from config.database import init_db
from modules.catalog.models import Brand, Product, ProductCategory, ProductCategoryLink, ProductVariant
from modules.coupon.models import Coupon

_seq = itertools.count(1)


@pytest.fixture
def engine():
    """Fresh in-memory database per test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    Session = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    session = Session()
    yield session
    session.close()


@pytest.fixture
def make_category(db):
    def _make(name=None):
        n = next(_seq)
        category = ProductCategory(name=name or f"Category {n}", slug=f"category-{n}")
        db.add(category)
        db.commit()
        return category
    return _make


@pytest.fixture
def make_brand(db):
    def _make(name=None):
        brand = Brand(name=name or f"Brand {next(_seq)}")
        db.add(brand)
        db.commit()
        return brand
    return _make


@pytest.fixture
def make_product(db):
    """Committed product; stock defaults to 10 tracked units."""
    def _make(
        name="Widget",
        price="10.00",
        stock=10,
        track_stock=True,
        allow_backorders=False,
        is_active=True,
        brand_id=None,
        category_ids=(),
    ):
        product = Product(
            name=name,
            sku=f"SKU-{next(_seq)}",
            price=Decimal(price),
            stock_quantity=stock,
            track_stock=track_stock,
            allow_backorders=allow_backorders,
            is_active=is_active,
            brand_id=brand_id,
        )
        db.add(product)
        db.flush()
        for category_id in category_ids:
            db.add(ProductCategoryLink(product_id=product.id, category_id=category_id))
        db.commit()
        return product
    return _make


@pytest.fixture
def make_variant(db):
    def _make(product, name="Large", price=None, stock=5, track_stock=True, is_active=True):
        variant = ProductVariant(
            product_id=product.id,
            name=name,
            sku=f"VAR-{next(_seq)}",
            price=Decimal(price) if price is not None else None,
            stock_quantity=stock,
            track_stock=track_stock,
            is_active=is_active,
        )
        db.add(variant)
        db.commit()
        return variant
    return _make


@pytest.fixture
def make_coupon(db):
    """Committed, active coupon; keyword arguments override any column."""
    def _make(code="SAVE10", discount_type="fixed", value="10", **overrides):
        data = dict(
            code=code,
            name=f"Coupon {code}",
            discount_type=discount_type,
            value=Decimal(value),
            used_count=0,
            is_active=True,
            first_purchase_only=False,
            combine_with_others=False,
        )
        data.update(overrides)
        coupon = Coupon(**data)
        db.add(coupon)
        db.commit()
        return coupon
    return _make


@pytest.fixture
def yesterday():
    return now_utc() - timedelta(days=1)


@pytest.fixture
def tomorrow():
    return now_utc() + timedelta(days=1)
