"""
Catalog Module - Models
========================
Read-only catalog facts used for pricing and stock checks:
Product, ProductVariant, ProductCategory, Brand.
"""

from sqlalchemy import (
    Column, Integer, String, Numeric, Boolean,
    ForeignKey, DateTime, UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from config.database import Base
from config.settings import UNTRACKED_STOCK_QUANTITY


# ==========================================
# 🗂️ Product Category
# ==========================================

class ProductCategory(Base):
    __tablename__ = "product_categories"

    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False, unique=True)
    slug = Column(String, nullable=False, unique=True)
    is_active = Column(Boolean, default=True)

    product_links = relationship("ProductCategoryLink", back_populates="category", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<ProductCategory {self.name}>"


# ==========================================
# 🔗 Product ↔ Category (M2M Junction)
# ==========================================

class ProductCategoryLink(Base):
    __tablename__ = "product_category_links"

    id = Column(Integer, primary_key=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False)
    category_id = Column(Integer, ForeignKey("product_categories.id", ondelete="CASCADE"), nullable=False)

    product = relationship("Product", back_populates="category_links")
    category = relationship("ProductCategory", back_populates="product_links")

    __table_args__ = (
        UniqueConstraint("product_id", "category_id", name="uq_product_category_link"),
    )


# ==========================================
# 🏷️ Brand
# ==========================================

class Brand(Base):
    __tablename__ = "brands"

    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False, unique=True)
    is_active = Column(Boolean, default=True)

    def __repr__(self):
        return f"<Brand {self.name}>"


# ==========================================
# 📦 Product
# ==========================================

class StockMixin:
    """Stock predicates shared by products and variants."""

    @property
    def is_in_stock(self) -> bool:
        if not self.track_stock or self.allow_backorders:
            return True
        return (self.stock_quantity or 0) > 0

    @property
    def available_quantity(self) -> int:
        if not self.track_stock or self.allow_backorders:
            return UNTRACKED_STOCK_QUANTITY
        return max(0, self.stock_quantity or 0)


class Product(StockMixin, Base):
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    sku = Column(String, unique=True, nullable=True)
    price = Column(Numeric(10, 2), nullable=False)
    stock_quantity = Column(Integer, default=0, nullable=False)
    track_stock = Column(Boolean, default=True, nullable=False)
    allow_backorders = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    brand_id = Column(Integer, ForeignKey("brands.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    brand = relationship("Brand", foreign_keys=[brand_id])
    category_links = relationship("ProductCategoryLink", back_populates="product", cascade="all, delete-orphan")
    variants = relationship("ProductVariant", back_populates="product", cascade="all, delete-orphan")

    @property
    def categories(self):
        """Get list of ProductCategory objects for this product."""
        return [link.category for link in self.category_links]

    @property
    def category_ids(self):
        """Get list of category IDs for this product."""
        return [link.category_id for link in self.category_links]

    @property
    def is_purchasable(self) -> bool:
        return bool(self.is_active) and self.is_in_stock

    def __repr__(self):
        return f"<Product {self.name} ({self.sku})>"


class ProductVariant(StockMixin, Base):
    __tablename__ = "product_variants"

    id = Column(Integer, primary_key=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    sku = Column(String, unique=True, nullable=True)
    price = Column(Numeric(10, 2), nullable=True)  # falls back to product price
    stock_quantity = Column(Integer, default=0, nullable=False)
    track_stock = Column(Boolean, default=True, nullable=False)
    allow_backorders = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    product = relationship("Product", back_populates="variants")

    @property
    def final_price(self):
        return self.price if self.price is not None else self.product.price

    @property
    def is_purchasable(self) -> bool:
        return bool(self.is_active) and self.is_in_stock and self.product.is_purchasable

    def __repr__(self):
        return f"<ProductVariant {self.name} of product {self.product_id}>"
