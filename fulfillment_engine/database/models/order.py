"""
Order models for order fulfillment tracking.

This module defines the Order model (identity, totals, delivery target,
packing and delivery sub-records, backorder state and the optimistic
concurrency version), its line items, and the append-only status history.
All money columns hold integer cents.
"""

import uuid
from datetime import date, datetime
from typing import TYPE_CHECKING, Any, Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from fulfillment_engine.database.base import (
    AuditedModel,
    BaseModel,
    JSONType,
    enum_type,
)
from fulfillment_engine.services.orders.enums import BackorderStatus, OrderStatus

if TYPE_CHECKING:
    from fulfillment_engine.database.models.customer import Customer


class Order(AuditedModel):
    """
    Customer order and its fulfillment record.

    The order number is the immutable identity; everything else is mutated
    only through the order state machine, each mutation bumping ``version``.

    Attributes:
        order_number: Human-readable order number
        customer_id: Ordering customer
        status: Current lifecycle status
        backorder_status: Backorder resolution status
        stock_shortfall: Per-product shortfall recorded at creation
        approved_quantities: Quantities approved by a partial approval
        subtotal: Sum of line subtotals (cents)
        tax_amount: Tax on the subtotal (cents)
        total_amount: subtotal + tax_amount (cents)
        delivery_address: Street address fields
        area_tag: Delivery area (north, east, south, west)
        latitude: Pre-resolved delivery latitude
        longitude: Pre-resolved delivery longitude
        delivery_date: Target delivery date
        packing_sequence: Position in the van loading order
        delivery_sequence: Position in the day's delivery route
        version: Optimistic concurrency version
    """

    __tablename__ = "orders"

    order_number: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        unique=True,
        comment="Human-readable order number",
    )

    customer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("customers.id", ondelete="RESTRICT"),
        nullable=False,
        comment="Ordering customer",
    )

    # Status
    status: Mapped[OrderStatus] = mapped_column(
        enum_type(OrderStatus, "order_status"),
        nullable=False,
        default=OrderStatus.PENDING,
        comment="Current order status",
    )

    version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=1,
        comment="Optimistic concurrency version",
    )

    # Backorder
    backorder_status: Mapped[BackorderStatus] = mapped_column(
        enum_type(BackorderStatus, "backorder_status"),
        nullable=False,
        default=BackorderStatus.NONE,
        comment="Backorder resolution status",
    )

    stock_shortfall: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSONType,
        nullable=True,
        comment="Per-product {requested, available, shortfall}",
    )

    approved_quantities: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSONType,
        nullable=True,
        comment="Per-product quantities approved by a partial approval",
    )

    # Pricing fields (cents)
    subtotal: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        comment="Sum of line subtotals",
    )

    tax_amount: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        default=0,
        comment="Tax amount",
    )

    total_amount: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        comment="Subtotal plus tax",
    )

    # Delivery target
    delivery_address: Mapped[dict[str, Any]] = mapped_column(
        JSONType,
        nullable=False,
        default=dict,
        comment="Delivery street address",
    )

    area_tag: Mapped[Optional[str]] = mapped_column(
        String(16),
        nullable=True,
        comment="Delivery area tag",
    )

    latitude: Mapped[Optional[float]] = mapped_column(
        Float,
        nullable=True,
        comment="Delivery latitude",
    )

    longitude: Mapped[Optional[float]] = mapped_column(
        Float,
        nullable=True,
        comment="Delivery longitude",
    )

    delivery_date: Mapped[date] = mapped_column(
        Date,
        nullable=False,
        comment="Target delivery date",
    )

    notes: Mapped[Optional[str]] = mapped_column(
        String(1000),
        nullable=True,
        comment="Customer order notes",
    )

    # Packing sub-record
    packing_sequence: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
        comment="Van loading position (reverse of delivery sequence)",
    )

    packed_skus: Mapped[list[Any]] = mapped_column(
        JSONType,
        nullable=False,
        default=list,
        comment="SKUs marked packed in the current packing session",
    )

    packing_started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="When the current packing session started",
    )

    last_packing_activity_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Last item-packed event or packing status change",
    )

    packed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="When packing completed",
    )

    packed_by: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        comment="Actor who completed packing",
    )

    packing_notes: Mapped[Optional[str]] = mapped_column(
        String(1000),
        nullable=True,
        comment="Packing notes",
    )

    # Delivery sub-record
    delivery_sequence: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
        comment="Position in the day's delivery route",
    )

    route_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("route_optimizations.id", ondelete="SET NULL"),
        nullable=True,
        comment="Route this order is sequenced on",
    )

    estimated_arrival: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Estimated arrival at the delivery address",
    )

    driver_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        comment="Assigned driver",
    )

    driver_assigned_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="When the driver was assigned",
    )

    actual_arrival: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Actual arrival at the delivery address",
    )

    delivered_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="When the order was delivered",
    )

    proof_of_delivery: Mapped[Optional[str]] = mapped_column(
        String(1000),
        nullable=True,
        comment="Proof-of-delivery reference",
    )

    return_reason: Mapped[Optional[str]] = mapped_column(
        String(1000),
        nullable=True,
        comment="Why the delivery came back to the depot",
    )

    # Cancellation
    manager_approved_cancellation: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        comment="Manager approved cancelling this order",
    )

    cancellation_reason: Mapped[Optional[str]] = mapped_column(
        String(1000),
        nullable=True,
        comment="Cancellation reason",
    )

    # Relationships
    customer: Mapped["Customer"] = relationship(
        "Customer",
        back_populates="orders",
        lazy="selectin",
    )

    line_items: Mapped[list["OrderLineItem"]] = relationship(
        "OrderLineItem",
        back_populates="order",
        lazy="selectin",
        cascade="all, delete-orphan",
        order_by="OrderLineItem.line_number",
    )

    status_history: Mapped[list["OrderStatusHistory"]] = relationship(
        "OrderStatusHistory",
        back_populates="order",
        lazy="selectin",
        cascade="all, delete-orphan",
        order_by="OrderStatusHistory.created_at",
    )

    __table_args__ = (
        Index("ix_orders_customer_status", "customer_id", "status"),
        Index("ix_orders_delivery_date_status", "delivery_date", "status"),
        Index("ix_orders_status_packing_activity", "status", "last_packing_activity_at"),
        CheckConstraint("subtotal >= 0", name="ck_orders_subtotal_non_negative"),
        CheckConstraint("tax_amount >= 0", name="ck_orders_tax_amount_non_negative"),
        CheckConstraint(
            "total_amount = subtotal + tax_amount",
            name="ck_orders_total_consistent",
        ),
        CheckConstraint("version >= 1", name="ck_orders_version_positive"),
        CheckConstraint(
            "area_tag IS NULL OR area_tag IN ('north', 'east', 'south', 'west')",
            name="ck_orders_area_tag_valid",
        ),
    )

    @property
    def packed_sku_set(self) -> set[str]:
        return set(self.packed_skus or [])

    @property
    def unpacked_skus(self) -> list[str]:
        """SKUs of line items not yet marked packed."""
        packed = self.packed_sku_set
        return [item.sku for item in self.line_items if item.sku not in packed]

    @property
    def has_coordinates(self) -> bool:
        return (
            self.latitude is not None
            and self.longitude is not None
            and self.area_tag is not None
        )


class OrderLineItem(BaseModel):
    """
    Ordered product line.

    Attributes:
        order_id: Owning order
        line_number: 1-based position within the order
        product_id: Ordered product
        sku: SKU snapshot at order time
        quantity: Ordered units
        unit_price: Unit price in cents
        subtotal: quantity * unit_price
        stock_deducted: Whether the ledger has deducted this line
    """

    __tablename__ = "order_line_items"

    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        comment="Owning order",
    )

    line_number: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="Position within the order",
    )

    product_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("products.id", ondelete="RESTRICT"),
        nullable=False,
        comment="Ordered product",
    )

    sku: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        comment="SKU snapshot",
    )

    quantity: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="Ordered units",
    )

    unit_price: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        comment="Unit price in cents",
    )

    subtotal: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        comment="quantity * unit_price",
    )

    stock_deducted: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        comment="Ledger has deducted this line",
    )

    order: Mapped["Order"] = relationship(
        "Order",
        back_populates="line_items",
    )

    __table_args__ = (
        Index("ix_order_line_items_order", "order_id"),
        CheckConstraint("quantity > 0", name="ck_order_line_items_quantity_positive"),
        CheckConstraint(
            "unit_price >= 0",
            name="ck_order_line_items_unit_price_non_negative",
        ),
        CheckConstraint(
            "subtotal = quantity * unit_price",
            name="ck_order_line_items_subtotal_consistent",
        ),
    )


class OrderStatusHistory(BaseModel):
    """
    Append-only record of one status change.

    Attributes:
        order_id: Order that changed
        from_status: Status before the change (NULL for creation)
        to_status: Status after the change
        actor_id: Who performed the change
        actor_role: Role the change was performed as
        note: Optional note
    """

    __tablename__ = "order_status_history"

    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        comment="Order that changed",
    )

    from_status: Mapped[Optional[OrderStatus]] = mapped_column(
        enum_type(OrderStatus, "order_status"),
        nullable=True,
        comment="Status before the change",
    )

    to_status: Mapped[OrderStatus] = mapped_column(
        enum_type(OrderStatus, "order_status"),
        nullable=False,
        comment="Status after the change",
    )

    actor_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        comment="Actor who performed the change",
    )

    actor_role: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        comment="Role the actor acted as",
    )

    note: Mapped[Optional[str]] = mapped_column(
        String(1000),
        nullable=True,
        comment="Optional note",
    )

    order: Mapped["Order"] = relationship(
        "Order",
        back_populates="status_history",
    )

    __table_args__ = (Index("ix_order_status_history_order", "order_id", "created_at"),)
