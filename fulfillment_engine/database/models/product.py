"""
Product model for stock-keeping units and their derived stock counter.

current_stock is a cache of the ledger: it is written only by the
inventory ledger, always together with an InventoryTransaction row.
"""

from typing import TYPE_CHECKING

from sqlalchemy import BigInteger, CheckConstraint, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from fulfillment_engine.database.base import BaseModel

if TYPE_CHECKING:
    from fulfillment_engine.database.models.inventory import InventoryTransaction


class Product(BaseModel):
    """
    Stock-keeping unit.

    Attributes:
        sku: Unique stock-keeping code
        name: Display name
        unit_of_measure: Selling unit (kg, box, each)
        unit_price: Default unit price in cents
        current_stock: Units on hand, derived from the ledger
        low_stock_threshold: Stock level at or below which alerts fire
    """

    __tablename__ = "products"

    sku: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        unique=True,
        comment="Stock-keeping unit code",
    )

    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        comment="Product name",
    )

    unit_of_measure: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default="each",
        comment="Selling unit",
    )

    unit_price: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        default=0,
        comment="Default unit price in cents",
    )

    current_stock: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="Units on hand; equals the sum of ledger deltas",
    )

    low_stock_threshold: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="Low-stock alert threshold",
    )

    transactions: Mapped[list["InventoryTransaction"]] = relationship(
        "InventoryTransaction",
        back_populates="product",
        lazy="raise",
        order_by="InventoryTransaction.created_at",
    )

    __table_args__ = (
        CheckConstraint(
            "current_stock >= 0",
            name="ck_products_current_stock_non_negative",
        ),
        CheckConstraint(
            "unit_price >= 0",
            name="ck_products_unit_price_non_negative",
        ),
        CheckConstraint(
            "low_stock_threshold >= 0",
            name="ck_products_low_stock_threshold_non_negative",
        ),
    )

    @property
    def is_low_stock(self) -> bool:
        """Check if stock is at or below the alert threshold."""
        return self.current_stock <= self.low_stock_threshold
