"""
Route sequencing API endpoints.

Recompute a delivery date's routes and read its packing and delivery views.
"""

from datetime import date
from typing import Optional

from fastapi import APIRouter, status

from fulfillment_engine.api.deps import CurrentActor, Fulfillment
from fulfillment_engine.core.logging import get_logger
from fulfillment_engine.schemas.routes import (
    RecomputeRequest,
    RouteRecomputeResponse,
    RouteViewResponse,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/routes", tags=["routes"])


@router.post(
    "/{delivery_date}/recompute",
    response_model=RouteRecomputeResponse,
    status_code=status.HTTP_200_OK,
    summary="Recompute routes",
    description="Optimize each area and assign delivery and packing sequences",
)
async def recompute_routes(
    delivery_date: date,
    actor: CurrentActor,
    service: Fulfillment,
    request: Optional[RecomputeRequest] = None,
) -> RouteRecomputeResponse:
    """
    Recompute routes for a delivery date.

    Area failures are reported in the response rather than failing the
    request; sequences for successful areas are kept.
    """
    force = request.force if request else False
    result = await service.recompute_routes(delivery_date, actor, force=force)
    if result.partial_failure:
        logger.warning(
            "Route recompute partially failed",
            delivery_date=delivery_date.isoformat(),
            failed_areas=[failure.area for failure in result.failed_areas],
        )
    return RouteRecomputeResponse.from_result(result)


@router.get(
    "/{delivery_date}/packing",
    response_model=RouteViewResponse,
    status_code=status.HTTP_200_OK,
    summary="Packing view",
)
async def get_packing_view(
    delivery_date: date,
    actor: CurrentActor,
    service: Fulfillment,
) -> RouteViewResponse:
    """Orders for a date in van-loading order."""
    view = await service.get_packing_view(delivery_date, actor)
    return RouteViewResponse.from_view(view)


@router.get(
    "/{delivery_date}/delivery",
    response_model=RouteViewResponse,
    status_code=status.HTTP_200_OK,
    summary="Delivery view",
)
async def get_delivery_view(
    delivery_date: date,
    actor: CurrentActor,
    service: Fulfillment,
) -> RouteViewResponse:
    """Orders for a date in delivery order."""
    view = await service.get_delivery_view(delivery_date, actor)
    return RouteViewResponse.from_view(view)
