"""
Inventory Module - Models
==========================
InventoryMovement: immutable record of every stock change
(sale, cancellation, manual stock-in, adjustment).
"""

import enum
from sqlalchemy import (
    Column, Integer, String, DateTime, ForeignKey, Text, Index,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from config.database import Base


# ==========================================
# Movement Type
# ==========================================

class MovementType(str, enum.Enum):
    SALE = "sale"                  # reserved by an order
    CANCELLATION = "cancellation"  # restored by order cancellation
    STOCK_IN = "stock_in"
    ADJUSTMENT = "adjustment"


# ==========================================
# Inventory Movement
# ==========================================

class InventoryMovement(Base):
    __tablename__ = "inventory_movements"

    id = Column(Integer, primary_key=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True)
    variant_id = Column(Integer, ForeignKey("product_variants.id", ondelete="CASCADE"), nullable=True)
    movement_type = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False)           # signed: negative = out
    quantity_after = Column(Integer, nullable=True)
    reference = Column(String, nullable=True)            # e.g. order number
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    product = relationship("Product")
    variant = relationship("ProductVariant")

    __table_args__ = (
        Index("ix_inventory_movement_reference", "reference"),
    )

    @property
    def movement_type_label(self) -> str:
        return {
            MovementType.SALE.value: "Sale",
            MovementType.CANCELLATION.value: "Cancellation",
            MovementType.STOCK_IN.value: "Stock in",
            MovementType.ADJUSTMENT.value: "Adjustment",
        }.get(self.movement_type, self.movement_type)

    def __repr__(self):
        return f"<InventoryMovement {self.movement_type} {self.quantity:+d} product={self.product_id}>"
