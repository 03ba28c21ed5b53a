"""
Inventory Pydantic schemas.

Requests for product registration and manual adjustments, and responses for
products, their ledger entries and their inventory batches.
"""

from datetime import date, datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from fulfillment_engine.database.models.inventory import (
    AdjustmentReason,
    TransactionType,
)


class ProductCreateRequest(BaseModel):
    """Request schema for registering a product."""

    model_config = ConfigDict(str_strip_whitespace=True)

    sku: str = Field(..., min_length=1, max_length=64)
    name: str = Field(..., min_length=1, max_length=255)
    unit_of_measure: str = Field(default="each", min_length=1, max_length=32)
    unit_price: int = Field(default=0, ge=0, description="Unit price in cents")
    low_stock_threshold: int = Field(default=0, ge=0)
    opening_stock: int = Field(default=0, ge=0)
    cost_per_unit: Optional[int] = Field(
        None, ge=0, description="Cost of the opening stock in cents"
    )
    expiry_date: Optional[date] = None

    @field_validator("sku")
    @classmethod
    def normalize_sku(cls, v: str) -> str:
        """SKUs are stored upper-case."""
        return v.upper()


class StockAdjustmentRequest(BaseModel):
    """Request schema for a manual stock adjustment."""

    delta: int = Field(..., description="Signed change in units")
    reason: AdjustmentReason
    notes: Optional[str] = Field(None, max_length=1000)
    cost_per_unit: Optional[int] = Field(
        None, ge=0, description="Cost of received units in cents"
    )
    expiry_date: Optional[date] = None

    @field_validator("delta")
    @classmethod
    def validate_delta(cls, v: int) -> int:
        if v == 0:
            raise ValueError("delta must not be zero")
        return v

    @model_validator(mode="after")
    def validate_batch_details(self) -> "StockAdjustmentRequest":
        """Cost and expiry describe received stock only."""
        if self.delta < 0 and (
            self.cost_per_unit is not None or self.expiry_date is not None
        ):
            raise ValueError("cost_per_unit and expiry_date require a positive delta")
        return self


class ProductResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    sku: str
    name: str
    unit_of_measure: str
    unit_price: int
    current_stock: int
    low_stock_threshold: int


class InventoryTransactionResponse(BaseModel):
    """One ledger entry."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    product_id: UUID
    type: TransactionType
    adjustment_reason: Optional[AdjustmentReason] = None
    quantity: int
    previous_stock: int
    new_stock: int
    reference_order_id: Optional[UUID] = None
    actor_id: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime


class ProductHistoryResponse(BaseModel):
    """Product with its ledger and reconciliation."""

    product: ProductResponse
    ledger_total: int
    batch_total: int
    is_consistent: bool
    transactions: list[InventoryTransactionResponse]


class InventoryBatchResponse(BaseModel):
    """One received lot of stock."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    product_id: UUID
    received_at: datetime
    initial_quantity: int
    quantity_remaining: int
    cost_per_unit: int
    total_value: int
    expiry_date: Optional[date] = None
    is_consumed: bool
    consumed_at: Optional[datetime] = None
    notes: Optional[str] = None


class ProductBatchesResponse(BaseModel):
    """Product with its batches in consumption order."""

    product: ProductResponse
    stock_value: int
    batches: list[InventoryBatchResponse]
