"""
Order API endpoints.

This module implements the FastAPI router for the order lifecycle: placing
orders, status transitions, backorder decisions, packing progress, driver
assignment and cancellation approval. Engine errors propagate to the
application's FulfillmentError handler, which maps them to HTTP statuses.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Query, status

from fulfillment_engine.api.deps import CurrentActor, Fulfillment
from fulfillment_engine.core.logging import get_logger
from fulfillment_engine.database.models.route import DeliveryArea
from fulfillment_engine.schemas.orders import (
    BackorderDecisionRequest,
    CutoffInfoResponse,
    DriverAssignmentRequest,
    OrderCreateRequest,
    OrderCreateResponse,
    OrderLineRequest,
    OrderResponse,
    OrderTransitionRequest,
    PackedItemRequest,
    VersionedRequest,
)
from fulfillment_engine.services.orders import service as fulfillment
from fulfillment_engine.services.orders.validation import cutoff_info

logger = get_logger(__name__)

router = APIRouter(prefix="/orders", tags=["orders"])


def _to_line(line: OrderLineRequest) -> fulfillment.OrderLineRequest:
    return fulfillment.OrderLineRequest(
        product_id=line.product_id,
        quantity=line.quantity,
        unit_price=line.unit_price,
    )


@router.post(
    "",
    response_model=OrderCreateResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Place order",
    description="Create an order in pending; short stock parks it for backorder approval",
)
async def create_order(
    request: OrderCreateRequest,
    actor: CurrentActor,
    service: Fulfillment,
) -> OrderCreateResponse:
    """
    Place a new order.

    Args:
        request: Order lines, delivery address and date
        actor: Calling actor
        service: Fulfillment service

    Returns:
        OrderCreateResponse: Created order and backorder flag
    """
    logger.info(
        "Creating order",
        customer_id=str(request.customer_id),
        line_count=len(request.lines),
    )

    result = await service.create_order(
        actor=actor,
        customer_id=request.customer_id,
        lines=[_to_line(line) for line in request.lines],
        delivery_address=request.delivery_address.model_dump(exclude_none=True),
        delivery_date=request.delivery_date,
        notes=request.notes,
    )
    return OrderCreateResponse(
        order=OrderResponse.model_validate(result.order),
        backorder_pending=result.backorder_pending,
    )


@router.get(
    "/cutoff-info",
    response_model=CutoffInfoResponse,
    status_code=status.HTTP_200_OK,
    summary="Order cutoff",
    description="Earliest delivery date a new order can request, for an area or the default cutoff",
)
async def get_cutoff_info(
    actor: CurrentActor,
    service: Fulfillment,
    area_tag: Optional[DeliveryArea] = Query(None),
) -> CutoffInfoResponse:
    """Report today's cutoff and the earliest available delivery date."""
    area = area_tag.value if area_tag else None
    info = cutoff_info(service.settings, area)
    return CutoffInfoResponse(
        area_tag=area_tag,
        cutoff_time=info.cutoff_time,
        is_after_cutoff=info.is_after_cutoff,
        earliest_delivery_date=info.earliest_delivery_date,
        timezone=info.timezone,
    )


@router.get(
    "/{order_id}",
    response_model=OrderResponse,
    status_code=status.HTTP_200_OK,
    summary="Get order",
)
async def get_order(
    order_id: UUID,
    actor: CurrentActor,
    service: Fulfillment,
) -> OrderResponse:
    """Get an order with line items and status history."""
    order = await service.get_order(order_id)
    return OrderResponse.model_validate(order)


@router.post(
    "/{order_id}/transitions",
    response_model=OrderResponse,
    status_code=status.HTTP_200_OK,
    summary="Transition order status",
    description="Move an order along its lifecycle using optimistic concurrency",
)
async def transition_order(
    order_id: UUID,
    request: OrderTransitionRequest,
    actor: CurrentActor,
    service: Fulfillment,
) -> OrderResponse:
    """
    Transition an order to a new status.

    Args:
        order_id: Order identifier
        request: Target status, version and edge-specific fields
        actor: Calling actor
        service: Fulfillment service

    Returns:
        OrderResponse: Order at its new version
    """
    logger.info(
        "Transitioning order",
        order_id=str(order_id),
        target_status=request.target_status.value,
        version=request.version,
    )

    order = await service.transition(
        order_id,
        request.target_status,
        actor,
        request.version,
        extras=request.extras(),
        note=request.note,
    )
    return OrderResponse.model_validate(order)


@router.post(
    "/{order_id}/backorder",
    response_model=OrderResponse,
    status_code=status.HTTP_200_OK,
    summary="Resolve backorder",
)
async def resolve_backorder(
    order_id: UUID,
    request: BackorderDecisionRequest,
    actor: CurrentActor,
    service: Fulfillment,
) -> OrderResponse:
    """Approve, reject or partially approve a backordered order."""
    order = await service.resolve_backorder(
        order_id,
        request.decision,
        actor,
        request.version,
        approved_quantities=request.approved_quantities,
        reason=request.reason,
    )
    return OrderResponse.model_validate(order)


@router.post(
    "/{order_id}/packed-items",
    response_model=OrderResponse,
    status_code=status.HTTP_200_OK,
    summary="Mark item packed",
)
async def mark_item_packed(
    order_id: UUID,
    request: PackedItemRequest,
    actor: CurrentActor,
    service: Fulfillment,
) -> OrderResponse:
    """Record a packed line item in the current packing session."""
    order = await service.mark_item_packed(
        order_id, request.product_id, actor, request.version
    )
    return OrderResponse.model_validate(order)


@router.post(
    "/{order_id}/driver",
    response_model=OrderResponse,
    status_code=status.HTTP_200_OK,
    summary="Assign driver",
)
async def assign_driver(
    order_id: UUID,
    request: DriverAssignmentRequest,
    actor: CurrentActor,
    service: Fulfillment,
) -> OrderResponse:
    order = await service.assign_driver(
        order_id, request.driver_id, actor, request.version
    )
    return OrderResponse.model_validate(order)


@router.post(
    "/{order_id}/cancellation-approval",
    response_model=OrderResponse,
    status_code=status.HTTP_200_OK,
    summary="Approve cancellation",
)
async def approve_cancellation(
    order_id: UUID,
    request: VersionedRequest,
    actor: CurrentActor,
    service: Fulfillment,
) -> OrderResponse:
    order = await service.approve_cancellation(order_id, actor, request.version)
    return OrderResponse.model_validate(order)
