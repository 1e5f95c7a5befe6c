"""
Catalog Module - Service Layer
================================
Read-only lookups used by the cart, coupon engine and order checkout:
purchasability, available quantity, final price, coupon facts and
name/SKU snapshots.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy.orm import Session

from common.exceptions import NotFoundError
from modules.catalog.models import Product, ProductVariant, ProductCategoryLink


@dataclass
class ProductFacts:
    """Category and brand membership of one product (for coupon scoping)."""
    category_ids: List[int] = field(default_factory=list)
    brand_id: Optional[int] = None


class CatalogService:

    # ==========================================
    # Lookups
    # ==========================================

    def get_product(self, db: Session, product_id: int) -> Optional[Product]:
        return db.query(Product).filter(Product.id == product_id).first()

    def get_variant(self, db: Session, product_id: int, variant_id: int) -> Optional[ProductVariant]:
        return db.query(ProductVariant).filter(
            ProductVariant.id == variant_id,
            ProductVariant.product_id == product_id,
        ).first()

    def resolve(
        self, db: Session, product_id: int, variant_id: Optional[int] = None,
    ) -> Tuple[Product, Optional[ProductVariant]]:
        """Load product (and variant). Raises NotFoundError if either is missing."""
        product = self.get_product(db, product_id)
        if not product:
            raise NotFoundError(f"Product {product_id} not found.")
        variant = None
        if variant_id is not None:
            variant = self.get_variant(db, product_id, variant_id)
            if not variant:
                raise NotFoundError(f"Variant {variant_id} not found for product {product_id}.")
        return product, variant

    # ==========================================
    # Purchasability / stock / price
    # ==========================================

    def is_purchasable(self, db: Session, product_id: int, variant_id: Optional[int] = None) -> bool:
        product = self.get_product(db, product_id)
        if not product or not product.is_purchasable:
            return False
        if variant_id is None:
            return True
        variant = self.get_variant(db, product_id, variant_id)
        return bool(variant and variant.is_purchasable)

    def available_quantity(self, db: Session, product_id: int, variant_id: Optional[int] = None) -> int:
        """The tighter of the product's and the variant's stock levels."""
        product = self.get_product(db, product_id)
        if not product:
            return 0
        available = product.available_quantity
        if variant_id is not None:
            variant = self.get_variant(db, product_id, variant_id)
            if not variant:
                return 0
            available = min(available, variant.available_quantity)
        return available

    def final_price(self, db: Session, product_id: int, variant_id: Optional[int] = None) -> Decimal:
        product, variant = self.resolve(db, product_id, variant_id)
        price = variant.final_price if variant else product.price
        return Decimal(str(price))

    # ==========================================
    # Facts & snapshots
    # ==========================================

    def product_facts(self, db: Session, product_ids: Iterable[int]) -> Dict[int, ProductFacts]:
        """{product_id: ProductFacts} for coupon inclusion/exclusion checks."""
        ids = list(set(product_ids))
        if not ids:
            return {}

        facts = {
            pid: ProductFacts(brand_id=brand_id)
            for pid, brand_id in db.query(Product.id, Product.brand_id).filter(Product.id.in_(ids)).all()
        }
        links = db.query(ProductCategoryLink.product_id, ProductCategoryLink.category_id).filter(
            ProductCategoryLink.product_id.in_(ids),
        ).all()
        for pid, cat_id in links:
            facts[pid].category_ids.append(cat_id)
        return facts

    def snapshot(self, db: Session, product_id: int, variant_id: Optional[int] = None) -> dict:
        """Name, SKU and attributes captured onto an order item."""
        product, variant = self.resolve(db, product_id, variant_id)
        if variant:
            return {
                "product_name": f"{product.name} - {variant.name}",
                "product_sku": variant.sku or product.sku,
                "attributes": {"variant": variant.name},
            }
        return {
            "product_name": product.name,
            "product_sku": product.sku,
            "attributes": {},
        }


catalog_service = CatalogService()
