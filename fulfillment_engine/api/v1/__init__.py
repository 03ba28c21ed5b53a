"""
API v1 package initialization.

This module initializes the v1 API package for the fulfillment engine.
"""

from fulfillment_engine.api.v1.inventory import router as inventory_router
from fulfillment_engine.api.v1.orders import router as orders_router
from fulfillment_engine.api.v1.routes import router as routes_router

__all__ = ["inventory_router", "orders_router", "routes_router"]
