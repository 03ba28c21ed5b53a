"""
Order Pydantic schemas for API request/response validation.

This module defines schemas for order placement, status transitions,
backorder decisions, packing and driver assignment, and the order response
with its line items and status history. All money fields are integer cents.
"""

from datetime import date, datetime, time
from typing import Any, Optional
from uuid import UUID

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

from fulfillment_engine.database.models.route import DeliveryArea
from fulfillment_engine.services.orders.enums import (
    BackorderDecision,
    BackorderStatus,
    OrderStatus,
)


class DeliveryAddressRequest(BaseModel):
    """Delivery address with pre-resolved routing fields."""

    model_config = ConfigDict(
        str_strip_whitespace=True,
        validate_assignment=True,
    )

    street: str = Field(
        ...,
        min_length=1,
        max_length=255,
        description="Street address",
    )
    city: Optional[str] = Field(
        None,
        max_length=100,
        description="City or suburb",
    )
    state: Optional[str] = Field(
        None,
        max_length=50,
        description="State or region",
    )
    postal_code: Optional[str] = Field(
        None,
        max_length=10,
        description="Postal code",
    )
    delivery_instructions: Optional[str] = Field(
        None,
        max_length=500,
        description="Special delivery instructions",
    )
    area_tag: Optional[str] = Field(
        None,
        description="Delivery area (north, east, south, west)",
    )
    latitude: Optional[float] = Field(
        None,
        ge=-90,
        le=90,
        description="Delivery latitude",
    )
    longitude: Optional[float] = Field(
        None,
        ge=-180,
        le=180,
        description="Delivery longitude",
    )

    @field_validator("area_tag")
    @classmethod
    def validate_area_tag(cls, v: Optional[str]) -> Optional[str]:
        """Normalize the area tag to one of the fixed delivery areas."""
        if v is None:
            return v
        return DeliveryArea.from_string(v).value

    @model_validator(mode="after")
    def validate_coordinates_pair(self) -> "DeliveryAddressRequest":
        """Latitude and longitude are given together or not at all."""
        if (self.latitude is None) != (self.longitude is None):
            raise ValueError("latitude and longitude must be provided together")
        return self


class OrderLineRequest(BaseModel):
    """Requested order line."""

    product_id: UUID = Field(..., description="Product identifier")
    quantity: int = Field(
        ...,
        gt=0,
        le=100000,
        description="Units ordered",
    )
    unit_price: Optional[int] = Field(
        None,
        ge=0,
        description="Unit price override in cents; product price when omitted",
    )


class OrderCreateRequest(BaseModel):
    """Request schema for placing an order."""

    model_config = ConfigDict(str_strip_whitespace=True)

    customer_id: UUID = Field(..., description="Ordering customer")
    lines: list[OrderLineRequest] = Field(
        ...,
        min_length=1,
        max_length=200,
        description="Order lines",
    )
    delivery_address: DeliveryAddressRequest
    delivery_date: date = Field(..., description="Requested delivery date")
    notes: Optional[str] = Field(
        None,
        max_length=1000,
        description="Order notes",
    )


class OrderTransitionRequest(BaseModel):
    """Request schema for a status transition."""

    model_config = ConfigDict(str_strip_whitespace=True)

    target_status: OrderStatus = Field(..., description="Status to move to")
    version: int = Field(..., ge=1, description="Order version last read")
    driver_id: Optional[str] = Field(None, max_length=255)
    proof_of_delivery: Optional[str] = Field(None, max_length=1000)
    actual_arrival: Optional[datetime] = None
    return_reason: Optional[str] = Field(None, max_length=1000)
    cancellation_reason: Optional[str] = Field(None, max_length=1000)
    packing_notes: Optional[str] = Field(None, max_length=1000)
    manager_approved: bool = False
    note: Optional[str] = Field(None, max_length=1000, description="Status history note")

    def extras(self) -> dict[str, Any]:
        """Edge-specific inputs for the state machine."""
        return self.model_dump(
            exclude={"target_status", "version", "note"},
            exclude_none=True,
            exclude_defaults=True,
        )


class BackorderDecisionRequest(BaseModel):
    """Request schema for resolving a backorder."""

    decision: BackorderDecision
    version: int = Field(..., ge=1, description="Order version last read")
    approved_quantities: Optional[dict[UUID, int]] = Field(
        None,
        description="Per-product approved quantities for a partial approval",
    )
    reason: Optional[str] = Field(None, max_length=1000)

    @model_validator(mode="after")
    def validate_partial_quantities(self) -> "BackorderDecisionRequest":
        """A partial approval needs quantities."""
        if (
            self.decision == BackorderDecision.PARTIAL_APPROVE
            and not self.approved_quantities
        ):
            raise ValueError("approved_quantities is required for partial_approve")
        return self


class PackedItemRequest(BaseModel):
    """Request schema for marking a line item packed."""

    product_id: UUID
    version: int = Field(..., ge=1)


class DriverAssignmentRequest(BaseModel):
    """Request schema for assigning a driver."""

    model_config = ConfigDict(str_strip_whitespace=True)

    driver_id: str = Field(..., min_length=1, max_length=255)
    version: int = Field(..., ge=1)


class VersionedRequest(BaseModel):
    """Request carrying only the caller's order version."""

    version: int = Field(..., ge=1)


class OrderLineResponse(BaseModel):
    """Order line in responses."""

    model_config = ConfigDict(from_attributes=True)

    line_number: int
    product_id: UUID
    sku: str
    quantity: int
    unit_price: int
    subtotal: int
    stock_deducted: bool


class StatusHistoryResponse(BaseModel):
    """One status change in responses."""

    model_config = ConfigDict(from_attributes=True)

    from_status: Optional[OrderStatus]
    to_status: OrderStatus
    actor_id: str
    actor_role: str
    note: Optional[str]
    created_at: datetime


class OrderResponse(BaseModel):
    """Response schema for an order."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    order_number: str
    customer_id: UUID
    status: OrderStatus
    version: int
    backorder_status: BackorderStatus
    stock_shortfall: Optional[dict[str, Any]] = None
    approved_quantities: Optional[dict[str, Any]] = None
    subtotal: int
    tax_amount: int
    total_amount: int
    delivery_address: dict[str, Any]
    area_tag: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    delivery_date: date
    notes: Optional[str] = None
    packing_sequence: Optional[int] = None
    delivery_sequence: Optional[int] = None
    estimated_arrival: Optional[datetime] = None
    packed_skus: list[str] = Field(default_factory=list)
    packing_started_at: Optional[datetime] = None
    last_packing_activity_at: Optional[datetime] = None
    packed_at: Optional[datetime] = None
    packed_by: Optional[str] = None
    driver_id: Optional[str] = None
    delivered_at: Optional[datetime] = None
    proof_of_delivery: Optional[str] = None
    return_reason: Optional[str] = None
    manager_approved_cancellation: bool = False
    cancellation_reason: Optional[str] = None
    line_items: list[OrderLineResponse] = Field(default_factory=list)
    status_history: list[StatusHistoryResponse] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class OrderCreateResponse(BaseModel):
    """Response schema for order placement."""

    order: OrderResponse
    backorder_pending: bool


class CutoffInfoResponse(BaseModel):
    """Order cutoff status for an area."""

    model_config = ConfigDict(from_attributes=True)

    area_tag: Optional[DeliveryArea] = None
    cutoff_time: time
    is_after_cutoff: bool
    earliest_delivery_date: date
    timezone: str
