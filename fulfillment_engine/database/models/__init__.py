"""
Database models package initialization.

This module exports all database models for SQLAlchemy and Alembic auto-generation.
Models are imported here to ensure they are registered with the Base metadata
for proper migration generation and relationship resolution.
"""

from fulfillment_engine.database.base import (
    AuditedModel,
    AuditMixin,
    Base,
    BaseModel,
    TimestampMixin,
    UUIDMixin,
)
from fulfillment_engine.database.models.batch import BatchConsumption, InventoryBatch
from fulfillment_engine.database.models.customer import Customer
from fulfillment_engine.database.models.inventory import (
    AdjustmentReason,
    InventoryTransaction,
    TransactionType,
)
from fulfillment_engine.database.models.order import (
    Order,
    OrderLineItem,
    OrderStatusHistory,
)
from fulfillment_engine.database.models.product import Product
from fulfillment_engine.database.models.route import DeliveryArea, RouteOptimization

__all__ = [
    "Base",
    "BaseModel",
    "AuditedModel",
    "TimestampMixin",
    "UUIDMixin",
    "AuditMixin",
    "Customer",
    "Product",
    "InventoryTransaction",
    "TransactionType",
    "AdjustmentReason",
    "InventoryBatch",
    "BatchConsumption",
    "Order",
    "OrderLineItem",
    "OrderStatusHistory",
    "RouteOptimization",
    "DeliveryArea",
]
