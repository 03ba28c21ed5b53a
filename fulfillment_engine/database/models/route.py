"""
Route optimization model: one optimized route per delivery date and area.
"""

from datetime import date, datetime
from enum import Enum
from typing import Any, Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Float,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from fulfillment_engine.database.base import BaseModel, JSONType


class DeliveryArea(str, Enum):
    """
    Fixed delivery areas, declared in route processing order.

    Delivery sequence numbers run North, then East, South and West.
    """

    NORTH = "north"
    EAST = "east"
    SOUTH = "south"
    WEST = "west"

    @classmethod
    def from_string(cls, value: str) -> "DeliveryArea":
        try:
            return cls(value.lower())
        except ValueError:
            valid_values = ", ".join([a.value for a in cls])
            raise ValueError(
                f"Invalid delivery area: {value}. Valid values are: {valid_values}"
            )

    @classmethod
    def processing_order(cls) -> list["DeliveryArea"]:
        return list(cls)


class RouteOptimization(BaseModel):
    """
    Optimized route for one area on one delivery date.

    Attributes:
        delivery_date: Date the route runs
        area_tag: Area the route covers
        waypoints: Ordered stops with coordinates, sequence and ETA
        order_count: Number of orders on the route
        total_distance: Route length in meters
        total_duration: Driving time in seconds
        route_geometry: GeoJSON line string of the path
        needs_reoptimization: Set when the underlying order set changed
        optimized_at: When the route was last computed
        optimized_by: Actor that triggered the computation
        failure_reason: Why the provider could not optimize the area, if it failed
    """

    __tablename__ = "route_optimizations"

    delivery_date: Mapped[date] = mapped_column(
        Date,
        nullable=False,
        comment="Date the route runs",
    )

    area_tag: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        comment="Area the route covers",
    )

    waypoints: Mapped[list[Any]] = mapped_column(
        JSONType,
        nullable=False,
        default=list,
        comment="Ordered stops",
    )

    order_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="Orders on the route",
    )

    total_distance: Mapped[float] = mapped_column(
        Float,
        nullable=False,
        default=0.0,
        comment="Route length in meters",
    )

    total_duration: Mapped[float] = mapped_column(
        Float,
        nullable=False,
        default=0.0,
        comment="Driving time in seconds",
    )

    route_geometry: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="GeoJSON line string",
    )

    needs_reoptimization: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        comment="Order set changed since the route was computed",
    )

    optimized_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        comment="When the route was computed",
    )

    optimized_by: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        comment="Actor that triggered the computation",
    )

    failure_reason: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Provider failure for the area, NULL when the route was optimized",
    )

    __table_args__ = (
        UniqueConstraint(
            "delivery_date",
            "area_tag",
            name="uq_route_optimizations_date_area",
        ),
        CheckConstraint("order_count >= 0", name="ck_route_optimizations_order_count"),
    )

    @property
    def failed(self) -> bool:
        """Whether the last attempt for this area failed at the provider."""
        return self.failure_reason is not None
