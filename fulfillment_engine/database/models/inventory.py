"""
Inventory transaction model: the append-only stock ledger.

Rows are inserted by the inventory ledger and never updated or deleted.
For every product the sum of ``quantity`` equals ``Product.current_stock``.
"""

import uuid
from enum import Enum
from typing import TYPE_CHECKING, Optional

from sqlalchemy import CheckConstraint, ForeignKey, Index, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from fulfillment_engine.database.base import BaseModel, enum_type

if TYPE_CHECKING:
    from fulfillment_engine.database.models.product import Product


class TransactionType(str, Enum):
    """
    Ledger transaction type.

    Attributes:
        SALE: Stock leaving for an order (negative delta)
        RETURN: Stock restored from an order (positive delta)
        ADJUSTMENT: Manual correction, qualified by an AdjustmentReason
    """

    SALE = "sale"
    RETURN = "return"
    ADJUSTMENT = "adjustment"


class AdjustmentReason(str, Enum):
    """Sub-reason recorded on adjustment transactions."""

    STOCK_RECEIVED = "stock_received"
    STOCK_COUNT_CORRECTION = "stock_count_correction"
    DAMAGED_GOODS = "damaged_goods"
    EXPIRED_STOCK = "expired_stock"


class InventoryTransaction(BaseModel):
    """
    Immutable stock movement.

    Attributes:
        product_id: Product whose stock moved
        type: Transaction type
        adjustment_reason: Sub-reason, set only for adjustments
        quantity: Signed stock delta
        previous_stock: Stock before the movement
        new_stock: Stock after the movement
        reference_order_id: Order that caused the movement, if any
        actor_id: Opaque id of the actor responsible
        notes: Free-form reason text
    """

    __tablename__ = "inventory_transactions"

    product_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("products.id", ondelete="RESTRICT"),
        nullable=False,
        comment="Product whose stock moved",
    )

    type: Mapped[TransactionType] = mapped_column(
        enum_type(TransactionType, "inventory_transaction_type"),
        nullable=False,
        comment="Transaction type",
    )

    adjustment_reason: Mapped[Optional[AdjustmentReason]] = mapped_column(
        enum_type(AdjustmentReason, "inventory_adjustment_reason"),
        nullable=True,
        comment="Adjustment sub-reason",
    )

    quantity: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="Signed stock delta",
    )

    previous_stock: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="Stock before the movement",
    )

    new_stock: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="Stock after the movement",
    )

    reference_order_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("orders.id", ondelete="SET NULL"),
        nullable=True,
        comment="Order that caused the movement",
    )

    actor_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        comment="Actor responsible for the movement",
    )

    notes: Mapped[Optional[str]] = mapped_column(
        String(1000),
        nullable=True,
        comment="Reason text",
    )

    product: Mapped["Product"] = relationship(
        "Product",
        back_populates="transactions",
        lazy="raise",
    )

    __table_args__ = (
        Index("ix_inventory_transactions_product_created", "product_id", "created_at"),
        Index("ix_inventory_transactions_reference_order", "reference_order_id"),
        CheckConstraint(
            "new_stock = previous_stock + quantity",
            name="ck_inventory_transactions_snapshot_consistent",
        ),
        CheckConstraint(
            "new_stock >= 0",
            name="ck_inventory_transactions_new_stock_non_negative",
        ),
        CheckConstraint(
            "quantity <> 0",
            name="ck_inventory_transactions_quantity_non_zero",
        ),
        CheckConstraint(
            "(type = 'adjustment') = (adjustment_reason IS NOT NULL)",
            name="ck_inventory_transactions_adjustment_reason",
        ),
    )
