"""
Inventory batch models: received stock lots and what was drawn from them.

Batches are a cost and expiry view of the same stock the ledger counts. For
every product the sum of ``quantity_remaining`` over its batches equals
``Product.current_stock``; the inventory ledger keeps both in step inside
one SAVEPOINT.
"""

import uuid
from datetime import date, datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from fulfillment_engine.database.base import BaseModel


class InventoryBatch(BaseModel):
    """
    Lot of stock received together, consumed first-in first-out.

    Attributes:
        product_id: Product the lot belongs to
        received_at: When the lot entered stock; FIFO order
        initial_quantity: Units received
        quantity_remaining: Units not yet consumed
        cost_per_unit: Purchase cost per unit in cents
        expiry_date: Use-by date, if the lot has one
        is_consumed: Set once quantity_remaining reaches zero
        consumed_at: When the lot was emptied
        source_transaction_id: Ledger entry that created the lot
        notes: Free-form detail
    """

    __tablename__ = "inventory_batches"

    product_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("products.id", ondelete="RESTRICT"),
        nullable=False,
        comment="Product the lot belongs to",
    )

    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        comment="When the lot entered stock",
    )

    initial_quantity: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="Units received",
    )

    quantity_remaining: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="Units not yet consumed",
    )

    cost_per_unit: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="Purchase cost per unit in cents",
    )

    expiry_date: Mapped[Optional[date]] = mapped_column(
        Date,
        nullable=True,
        comment="Use-by date",
    )

    is_consumed: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        comment="Lot fully consumed",
    )

    consumed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="When the lot was emptied",
    )

    source_transaction_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("inventory_transactions.id", ondelete="SET NULL"),
        nullable=True,
        comment="Ledger entry that created the lot",
    )

    notes: Mapped[Optional[str]] = mapped_column(
        String(1000),
        nullable=True,
        comment="Free-form detail",
    )

    __table_args__ = (
        Index("ix_inventory_batches_product_received", "product_id", "received_at"),
        Index("ix_inventory_batches_expiry", "expiry_date"),
        CheckConstraint("initial_quantity > 0", name="ck_inventory_batches_initial_positive"),
        CheckConstraint(
            "quantity_remaining >= 0 AND quantity_remaining <= initial_quantity",
            name="ck_inventory_batches_remaining_bounds",
        ),
        CheckConstraint("cost_per_unit >= 0", name="ck_inventory_batches_cost_non_negative"),
    )

    @property
    def total_value(self) -> int:
        """Cost of the units still in the lot, in cents."""
        return self.quantity_remaining * self.cost_per_unit

    def days_until_expiry(self, today: date) -> Optional[int]:
        if self.expiry_date is None:
            return None
        return (self.expiry_date - today).days


class BatchConsumption(BaseModel):
    """
    Units one ledger entry drew from one batch.

    Attributes:
        batch_id: Batch drawn from
        transaction_id: Ledger entry that drew the units
        quantity: Units drawn
        quantity_returned: Units later put back into the batch
        cost_per_unit: Batch cost at the time, in cents
        total_cost: quantity times cost_per_unit
        reference_order_id: Order the units left for, if any
    """

    __tablename__ = "batch_consumptions"

    batch_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("inventory_batches.id", ondelete="RESTRICT"),
        nullable=False,
        comment="Batch drawn from",
    )

    transaction_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("inventory_transactions.id", ondelete="RESTRICT"),
        nullable=False,
        comment="Ledger entry that drew the units",
    )

    quantity: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="Units drawn",
    )

    quantity_returned: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="Units put back into the batch",
    )

    cost_per_unit: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="Batch cost per unit in cents",
    )

    total_cost: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="Cost of the units drawn in cents",
    )

    reference_order_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("orders.id", ondelete="SET NULL"),
        nullable=True,
        comment="Order the units left for",
    )

    __table_args__ = (
        Index("ix_batch_consumptions_batch", "batch_id"),
        Index("ix_batch_consumptions_reference_order", "reference_order_id"),
        CheckConstraint("quantity > 0", name="ck_batch_consumptions_quantity_positive"),
        CheckConstraint(
            "quantity_returned >= 0 AND quantity_returned <= quantity",
            name="ck_batch_consumptions_returned_bounds",
        ),
    )

    @property
    def outstanding(self) -> int:
        """Units drawn and not yet put back."""
        return self.quantity - self.quantity_returned
