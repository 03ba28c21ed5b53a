"""
Inventory API endpoints.

Product registration, manual stock adjustments, ledger history and the
inventory batches behind each product's stock.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Query, status

from fulfillment_engine.api.deps import CurrentActor, Fulfillment
from fulfillment_engine.core.logging import get_logger
from fulfillment_engine.schemas.inventory import (
    InventoryBatchResponse,
    InventoryTransactionResponse,
    ProductBatchesResponse,
    ProductCreateRequest,
    ProductHistoryResponse,
    ProductResponse,
    StockAdjustmentRequest,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/inventory", tags=["inventory"])


@router.post(
    "/products",
    response_model=ProductResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register product",
)
async def register_product(
    request: ProductCreateRequest,
    actor: CurrentActor,
    service: Fulfillment,
) -> ProductResponse:
    """Register a product; opening stock is recorded as a ledger entry."""
    product = await service.register_product(actor, **request.model_dump())
    return ProductResponse.model_validate(product)


@router.post(
    "/products/{product_id}/adjustments",
    response_model=InventoryTransactionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Adjust stock",
)
async def adjust_stock(
    product_id: UUID,
    request: StockAdjustmentRequest,
    actor: CurrentActor,
    service: Fulfillment,
) -> InventoryTransactionResponse:
    """
    Record a manual stock adjustment.

    Args:
        product_id: Product to adjust
        request: Signed delta, reason, notes and, for received stock, batch
            cost and expiry
        actor: Calling actor (admin or manager)
        service: Fulfillment service

    Returns:
        InventoryTransactionResponse: The appended ledger entry
    """
    logger.info(
        "Adjusting stock",
        product_id=str(product_id),
        delta=request.delta,
        reason=request.reason.value,
    )
    transaction = await service.adjust_stock(
        product_id,
        request.delta,
        request.reason,
        actor,
        request.notes,
        cost_per_unit=request.cost_per_unit,
        expiry_date=request.expiry_date,
    )
    return InventoryTransactionResponse.model_validate(transaction)


@router.get(
    "/products/{product_id}/transactions",
    response_model=ProductHistoryResponse,
    status_code=status.HTTP_200_OK,
    summary="Product ledger history",
)
async def get_product_transactions(
    product_id: UUID,
    actor: CurrentActor,
    service: Fulfillment,
    limit: Optional[int] = Query(None, ge=1, le=1000),
) -> ProductHistoryResponse:
    """List a product's ledger entries with the reconciliation result."""
    product, history, balance = await service.get_product_history(product_id, limit=limit)
    return ProductHistoryResponse(
        product=ProductResponse.model_validate(product),
        ledger_total=balance.ledger_total,
        batch_total=balance.batch_total,
        is_consistent=balance.is_consistent,
        transactions=[
            InventoryTransactionResponse.model_validate(entry) for entry in history
        ],
    )


@router.get(
    "/products/{product_id}/batches",
    response_model=ProductBatchesResponse,
    status_code=status.HTTP_200_OK,
    summary="Product batches",
)
async def get_product_batches(
    product_id: UUID,
    actor: CurrentActor,
    service: Fulfillment,
    include_consumed: bool = Query(False),
) -> ProductBatchesResponse:
    """List a product's batches, oldest first, with the value of stock on hand."""
    product, batches = await service.get_product_batches(
        product_id, include_consumed=include_consumed
    )
    return ProductBatchesResponse(
        product=ProductResponse.model_validate(product),
        stock_value=sum(batch.total_value for batch in batches),
        batches=[InventoryBatchResponse.model_validate(batch) for batch in batches],
    )


@router.get(
    "/batches/expiring",
    response_model=list[InventoryBatchResponse],
    status_code=status.HTTP_200_OK,
    summary="Expiring batches",
    description="Batches with stock left that expire within the horizon, soonest first",
)
async def get_expiring_batches(
    actor: CurrentActor,
    service: Fulfillment,
    within_days: Optional[int] = Query(None, ge=0, le=365),
) -> list[InventoryBatchResponse]:
    """List batches nearing expiry; the horizon defaults to the warning window."""
    batches = await service.get_expiring_batches(actor, within_days)
    return [InventoryBatchResponse.model_validate(batch) for batch in batches]
