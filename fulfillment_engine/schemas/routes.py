"""
Route sequencing Pydantic schemas.

Responses for route recomputes and for the packing and delivery views.
"""

from datetime import date, datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from fulfillment_engine.services.orders.enums import OrderStatus


class RecomputeRequest(BaseModel):
    """Request schema for a route recompute."""

    force: bool = Field(
        default=False,
        description="Recompute even when the stored routes are current",
    )


class AreaFailureResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    area: str
    reason: str


class RouteResponse(BaseModel):
    """Stored route for one area."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    delivery_date: date
    area_tag: str
    waypoints: list[dict[str, Any]]
    order_count: int
    total_distance: float
    total_duration: float
    needs_reoptimization: bool
    optimized_at: datetime
    optimized_by: Optional[str] = None
    failure_reason: Optional[str] = None


class RouteRecomputeResponse(BaseModel):
    """Outcome of a recompute, including per-area failures."""

    delivery_date: date
    recomputed: bool
    partial_failure: bool
    succeeded_areas: list[str]
    failed_areas: list[AreaFailureResponse]
    skipped_orders: list[UUID]
    routes: list[RouteResponse]

    @classmethod
    def from_result(cls, result) -> "RouteRecomputeResponse":
        return cls(
            delivery_date=result.delivery_date,
            recomputed=result.recomputed,
            partial_failure=result.partial_failure,
            succeeded_areas=result.succeeded_areas,
            failed_areas=[
                AreaFailureResponse.model_validate(failure)
                for failure in result.failed_areas
            ],
            skipped_orders=result.skipped_orders,
            routes=[RouteResponse.model_validate(route) for route in result.routes],
        )


class RouteStopResponse(BaseModel):
    """Order as listed in a packing or delivery view."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    order_number: str
    status: OrderStatus
    version: int
    area_tag: Optional[str] = None
    delivery_sequence: Optional[int] = None
    packing_sequence: Optional[int] = None
    estimated_arrival: Optional[datetime] = None
    driver_id: Optional[str] = None
    total_amount: int


class RouteViewResponse(BaseModel):
    """Packing or delivery view for a date."""

    delivery_date: date
    loading: bool
    partial_failure: bool = False
    failed_areas: list[AreaFailureResponse] = Field(default_factory=list)
    orders: list[RouteStopResponse]

    @classmethod
    def from_view(cls, view) -> "RouteViewResponse":
        failed = view.failed_areas
        return cls(
            delivery_date=view.delivery_date,
            loading=view.loading,
            partial_failure=bool(failed),
            failed_areas=[AreaFailureResponse.model_validate(f) for f in failed],
            orders=[RouteStopResponse.model_validate(order) for order in view.orders],
        )
