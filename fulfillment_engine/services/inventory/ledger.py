"""
Inventory ledger: the only writer of product stock.

Every stock movement reads the counter, validates it, swaps it with a
compare-and-swap UPDATE and appends exactly one InventoryTransaction. The
same SAVEPOINT moves the units between inventory batches: deductions draw
from the oldest batches first, returns go back to the batches the order
drew from, and receipts open a new batch. Counter, ledger row and batches
are committed or rolled back together. On PostgreSQL the read also takes a
row lock, which serializes movements on the same product while leaving
other products free to proceed in parallel.
"""

import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from fulfillment_engine.core.config import Settings, get_settings
from fulfillment_engine.core.exceptions import (
    FulfillmentError,
    InsufficientStock,
    LedgerWriteError,
    OrderValidationError,
    ProductNotFound,
)
from fulfillment_engine.core.logging import get_logger
from fulfillment_engine.database.base import utc_now
from fulfillment_engine.database.models.batch import BatchConsumption, InventoryBatch
from fulfillment_engine.database.models.inventory import (
    AdjustmentReason,
    InventoryTransaction,
    TransactionType,
)
from fulfillment_engine.database.models.order import Order
from fulfillment_engine.database.models.product import Product
from fulfillment_engine.services.notifications.sinks import (
    EventBuffer,
    make_idempotency_key,
)
from fulfillment_engine.services.orders.validation import business_today

logger = get_logger(__name__)


@dataclass(frozen=True)
class LedgerBalance:
    """Result of reconciling a product's counter against its ledger."""

    product_id: uuid.UUID
    current_stock: int
    ledger_total: int
    transaction_count: int
    batch_total: int

    @property
    def is_consistent(self) -> bool:
        return self.current_stock == self.ledger_total == self.batch_total


class InventoryLedger:
    """
    Append-only stock ledger with a derived per-product counter.

    Args:
        session: Database session; the caller owns commit and rollback
        events: Buffer receiving low-stock alerts for publication after commit
        settings: Application settings
    """

    def __init__(
        self,
        session: AsyncSession,
        events: Optional[EventBuffer] = None,
        settings: Optional[Settings] = None,
    ):
        self.session = session
        self.events = events if events is not None else EventBuffer()
        self.settings = settings or get_settings()

    # ========================================================================
    # Single-product movements
    # ========================================================================

    async def deduct(
        self,
        product_id: uuid.UUID,
        quantity: int,
        reason: Optional[str] = None,
        reference_order_id: Optional[uuid.UUID] = None,
        actor_id: Optional[str] = None,
    ) -> InventoryTransaction:
        """
        Remove stock for a sale.

        Args:
            product_id: Product to deduct from
            quantity: Units to remove, positive
            reason: Free-form reason recorded on the transaction
            reference_order_id: Order the stock leaves for
            actor_id: Actor responsible

        Returns:
            The appended ``sale`` transaction

        Raises:
            InsufficientStock: If quantity exceeds current stock
            ProductNotFound: If the product does not exist
        """
        self._require_positive(quantity)
        return await self._apply(
            product_id,
            -quantity,
            TransactionType.SALE,
            reason=reason,
            reference_order_id=reference_order_id,
            actor_id=actor_id,
        )

    async def restore(
        self,
        product_id: uuid.UUID,
        quantity: int,
        reason: Optional[str] = None,
        reference_order_id: Optional[uuid.UUID] = None,
        actor_id: Optional[str] = None,
    ) -> InventoryTransaction:
        """
        Return stock, e.g. when an order is cancelled.

        Args:
            product_id: Product to restore to
            quantity: Units to return, positive
            reason: Free-form reason recorded on the transaction
            reference_order_id: Order the stock comes back from
            actor_id: Actor responsible

        Returns:
            The appended ``return`` transaction
        """
        self._require_positive(quantity)
        return await self._apply(
            product_id,
            quantity,
            TransactionType.RETURN,
            reason=reason,
            reference_order_id=reference_order_id,
            actor_id=actor_id,
        )

    async def adjust(
        self,
        product_id: uuid.UUID,
        delta: int,
        adjustment_reason: AdjustmentReason,
        actor_id: Optional[str] = None,
        notes: Optional[str] = None,
        cost_per_unit: Optional[int] = None,
        expiry_date: Optional[date] = None,
    ) -> InventoryTransaction:
        """
        Record a manual stock correction.

        A positive delta opens a new batch; a negative one draws from the
        oldest batches first.

        Args:
            product_id: Product to adjust
            delta: Signed change, non-zero
            adjustment_reason: Why the stock changed
            actor_id: Actor responsible
            notes: Free-form detail
            cost_per_unit: Cost of received units in cents, defaults to the
                latest batch's cost
            expiry_date: Use-by date of received units

        Returns:
            The appended ``adjustment`` transaction

        Raises:
            InsufficientStock: If a negative delta would drive stock below zero
            OrderValidationError: If batch details accompany a negative delta
        """
        if delta == 0:
            raise OrderValidationError("Adjustment delta must be non-zero", delta=delta)
        if delta < 0 and (cost_per_unit is not None or expiry_date is not None):
            raise OrderValidationError(
                "Batch cost and expiry only apply to received stock", delta=delta
            )
        if cost_per_unit is not None and cost_per_unit < 0:
            raise OrderValidationError(
                "Cost per unit cannot be negative", cost_per_unit=cost_per_unit
            )
        return await self._apply(
            product_id,
            delta,
            TransactionType.ADJUSTMENT,
            adjustment_reason=adjustment_reason,
            reason=notes,
            actor_id=actor_id,
            cost_per_unit=cost_per_unit,
            expiry_date=expiry_date,
        )

    # ========================================================================
    # Order-level movements
    # ========================================================================

    async def deduct_lines(
        self,
        order: Order,
        actor_id: Optional[str] = None,
        quantities: Optional[dict[uuid.UUID, int]] = None,
    ) -> list[InventoryTransaction]:
        """
        Deduct every not-yet-deducted line of an order.

        Lines are deducted one product at a time. If any line fails, the
        lines already deducted by this call are restored with compensating
        ``return`` transactions before the error is raised.

        Args:
            order: Order with loaded line items
            actor_id: Actor responsible
            quantities: Optional per-product quantities overriding the lines

        Returns:
            The appended ``sale`` transactions

        Raises:
            InsufficientStock: If any line cannot be covered
        """
        deducted: list[tuple[Any, InventoryTransaction]] = []
        try:
            for item in order.line_items:
                if item.stock_deducted:
                    continue
                quantity = (quantities or {}).get(item.product_id, item.quantity)
                txn = await self.deduct(
                    item.product_id,
                    quantity,
                    reason=f"Order {order.order_number}",
                    reference_order_id=order.id,
                    actor_id=actor_id,
                )
                item.stock_deducted = True
                deducted.append((item, txn))
        except FulfillmentError:
            logger.warning(
                "Order deduction failed, compensating",
                order_id=str(order.id),
                compensated_lines=len(deducted),
            )
            for item, txn in reversed(deducted):
                await self.restore(
                    item.product_id,
                    -txn.quantity,
                    reason=f"Compensation for order {order.order_number}",
                    reference_order_id=order.id,
                    actor_id=actor_id,
                )
                item.stock_deducted = False
            raise

        return [txn for _, txn in deducted]

    async def restore_lines(
        self,
        order: Order,
        actor_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> list[InventoryTransaction]:
        """
        Restore every deducted line of an order.

        Args:
            order: Order with loaded line items
            actor_id: Actor responsible
            reason: Why the stock comes back

        Returns:
            The appended ``return`` transactions
        """
        restored = []
        for item in order.line_items:
            if not item.stock_deducted:
                continue
            restored.append(
                await self.restore(
                    item.product_id,
                    item.quantity,
                    reason=reason or f"Order {order.order_number} cancelled",
                    reference_order_id=order.id,
                    actor_id=actor_id,
                )
            )
            item.stock_deducted = False
        return restored

    # ========================================================================
    # Products and reads
    # ========================================================================

    async def register_product(
        self,
        sku: str,
        name: str,
        unit_of_measure: str = "each",
        unit_price: int = 0,
        low_stock_threshold: int = 0,
        opening_stock: int = 0,
        actor_id: Optional[str] = None,
        cost_per_unit: Optional[int] = None,
        expiry_date: Optional[date] = None,
    ) -> Product:
        """
        Create a product, recording any opening stock as a ledger entry.

        Args:
            sku: Unique stock-keeping code
            name: Product name
            unit_of_measure: Selling unit
            unit_price: Default unit price in cents
            low_stock_threshold: Alert threshold
            opening_stock: Units on hand at registration
            actor_id: Actor responsible
            cost_per_unit: Cost of the opening stock in cents
            expiry_date: Use-by date of the opening stock

        Returns:
            The new product
        """
        if opening_stock < 0:
            raise OrderValidationError(
                "Opening stock cannot be negative", opening_stock=opening_stock
            )
        product = Product(
            sku=sku,
            name=name,
            unit_of_measure=unit_of_measure,
            unit_price=unit_price,
            low_stock_threshold=low_stock_threshold,
            current_stock=0,
        )
        self.session.add(product)
        await self.session.flush()

        if opening_stock:
            await self.adjust(
                product.id,
                opening_stock,
                AdjustmentReason.STOCK_RECEIVED,
                actor_id=actor_id,
                notes="Opening stock",
                cost_per_unit=cost_per_unit,
                expiry_date=expiry_date,
            )
            await self.session.refresh(product)

        logger.info(
            "Product registered",
            product_id=str(product.id),
            sku=sku,
            opening_stock=opening_stock,
        )
        return product

    async def get_stock(self, product_id: uuid.UUID) -> int:
        """Read a product's current stock."""
        result = await self.session.execute(
            select(Product.current_stock).where(Product.id == product_id)
        )
        stock = result.scalar_one_or_none()
        if stock is None:
            raise ProductNotFound(product_id)
        return stock

    async def history(
        self, product_id: uuid.UUID, limit: Optional[int] = None
    ) -> list[InventoryTransaction]:
        """
        List a product's ledger entries, oldest first.

        Args:
            product_id: Product to list
            limit: Optional cap on returned rows

        Returns:
            Transactions ordered by creation time
        """
        stmt = (
            select(InventoryTransaction)
            .where(InventoryTransaction.product_id == product_id)
            .order_by(InventoryTransaction.created_at)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def batches(
        self, product_id: uuid.UUID, include_consumed: bool = False
    ) -> list[InventoryBatch]:
        """List a product's batches in consumption order."""
        stmt = (
            select(InventoryBatch)
            .where(InventoryBatch.product_id == product_id)
            .order_by(InventoryBatch.received_at, InventoryBatch.id)
            .execution_options(populate_existing=True)
        )
        if not include_consumed:
            stmt = stmt.where(InventoryBatch.quantity_remaining > 0)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def expiring_batches(
        self, within_days: Optional[int] = None
    ) -> list[InventoryBatch]:
        """
        List batches with stock left that expire soon, soonest first.

        Args:
            within_days: Horizon from today in the business timezone,
                defaults to ``batch_expiry_warning_days``

        Returns:
            Unconsumed batches expiring on or before the horizon, including
            batches already past their date
        """
        if within_days is None:
            within_days = self.settings.batch_expiry_warning_days
        horizon = business_today(self.settings) + timedelta(days=within_days)
        result = await self.session.execute(
            select(InventoryBatch)
            .where(
                InventoryBatch.quantity_remaining > 0,
                InventoryBatch.expiry_date.is_not(None),
                InventoryBatch.expiry_date <= horizon,
            )
            .order_by(InventoryBatch.expiry_date, InventoryBatch.received_at)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def verify(self, product_id: uuid.UUID) -> LedgerBalance:
        """
        Reconcile a product's counter against the sum of its ledger deltas.

        Args:
            product_id: Product to reconcile

        Returns:
            LedgerBalance describing both sides
        """
        current_stock = await self.get_stock(product_id)
        result = await self.session.execute(
            select(
                func.coalesce(func.sum(InventoryTransaction.quantity), 0),
                func.count(InventoryTransaction.id),
            ).where(InventoryTransaction.product_id == product_id)
        )
        ledger_total, count = result.one()
        batch_total = await self.session.scalar(
            select(func.coalesce(func.sum(InventoryBatch.quantity_remaining), 0)).where(
                InventoryBatch.product_id == product_id
            )
        )
        balance = LedgerBalance(
            product_id=product_id,
            current_stock=current_stock,
            ledger_total=int(ledger_total),
            transaction_count=int(count),
            batch_total=int(batch_total),
        )
        if not balance.is_consistent:
            logger.error(
                "Ledger out of balance",
                product_id=str(product_id),
                current_stock=current_stock,
                ledger_total=balance.ledger_total,
                batch_total=balance.batch_total,
            )
        return balance

    # ========================================================================
    # Internals
    # ========================================================================

    @staticmethod
    def _require_positive(quantity: int) -> None:
        if quantity <= 0:
            raise OrderValidationError(
                "Quantity must be positive", quantity=quantity
            )

    async def _apply(
        self,
        product_id: uuid.UUID,
        delta: int,
        txn_type: TransactionType,
        adjustment_reason: Optional[AdjustmentReason] = None,
        reason: Optional[str] = None,
        reference_order_id: Optional[uuid.UUID] = None,
        actor_id: Optional[str] = None,
        cost_per_unit: Optional[int] = None,
        expiry_date: Optional[date] = None,
    ) -> InventoryTransaction:
        attempts = self.settings.ledger_write_retries
        for attempt in range(1, attempts + 1):
            try:
                async with self.session.begin_nested():
                    return await self._swap_and_record(
                        product_id,
                        delta,
                        txn_type,
                        adjustment_reason=adjustment_reason,
                        reason=reason,
                        reference_order_id=reference_order_id,
                        actor_id=actor_id,
                        cost_per_unit=cost_per_unit,
                        expiry_date=expiry_date,
                    )
            except (OperationalError, DBAPIError) as e:
                logger.warning(
                    "Ledger write failed, retrying",
                    product_id=str(product_id),
                    attempt=attempt,
                    max_attempts=attempts,
                    error=str(e),
                )
                if attempt == attempts:
                    raise LedgerWriteError(
                        f"Ledger write for product {product_id} failed after "
                        f"{attempts} attempts",
                        product_id=product_id,
                    ) from e

        raise LedgerWriteError(
            f"Ledger write for product {product_id} was not attempted",
            product_id=product_id,
        )

    async def _swap_and_record(
        self,
        product_id: uuid.UUID,
        delta: int,
        txn_type: TransactionType,
        adjustment_reason: Optional[AdjustmentReason],
        reason: Optional[str],
        reference_order_id: Optional[uuid.UUID],
        actor_id: Optional[str],
        cost_per_unit: Optional[int],
        expiry_date: Optional[date],
    ) -> InventoryTransaction:
        for _ in range(self.settings.ledger_max_cas_retries):
            result = await self.session.execute(
                select(
                    Product.current_stock,
                    Product.low_stock_threshold,
                    Product.sku,
                )
                .where(Product.id == product_id)
                .with_for_update()
            )
            row = result.one_or_none()
            if row is None:
                raise ProductNotFound(product_id)

            previous_stock, threshold, sku = row
            new_stock = previous_stock + delta
            if new_stock < 0:
                raise InsufficientStock(
                    product_id,
                    requested=-delta,
                    available=previous_stock,
                    sku=sku,
                )

            swapped = await self.session.execute(
                update(Product)
                .where(
                    Product.id == product_id,
                    Product.current_stock == previous_stock,
                )
                .values(current_stock=new_stock, updated_at=utc_now())
                .execution_options(synchronize_session=False)
            )
            if swapped.rowcount != 1:
                logger.debug(
                    "Stock compare-and-swap lost, re-reading",
                    product_id=str(product_id),
                    expected_stock=previous_stock,
                )
                continue

            txn = InventoryTransaction(
                product_id=product_id,
                type=txn_type,
                adjustment_reason=adjustment_reason,
                quantity=delta,
                previous_stock=previous_stock,
                new_stock=new_stock,
                reference_order_id=reference_order_id,
                actor_id=actor_id,
                notes=reason,
            )
            self.session.add(txn)
            await self.session.flush()

            if delta < 0:
                await self._consume_batches(txn, sku)
            else:
                await self._receive_into_batches(txn, cost_per_unit, expiry_date)

            logger.info(
                "Stock movement recorded",
                product_id=str(product_id),
                sku=sku,
                type=txn_type.value,
                quantity=delta,
                previous_stock=previous_stock,
                new_stock=new_stock,
                reference_order_id=str(reference_order_id) if reference_order_id else None,
            )

            if delta < 0 and new_stock <= threshold < previous_stock:
                self.events.add_notification(
                    "product.low_stock",
                    {
                        "product_id": str(product_id),
                        "sku": sku,
                        "current_stock": new_stock,
                        "low_stock_threshold": threshold,
                    },
                    idempotency_key=make_idempotency_key(
                        "product.low_stock", product_id, txn.id
                    ),
                )
            return txn

        raise LedgerWriteError(
            f"Stock for product {product_id} kept changing; gave up after "
            f"{self.settings.ledger_max_cas_retries} attempts",
            product_id=product_id,
        )

    # ========================================================================
    # Batches
    # ========================================================================

    async def _consume_batches(self, txn: InventoryTransaction, sku: str) -> None:
        """Draw a deduction from the oldest batches with stock left."""
        needed = -txn.quantity
        result = await self.session.execute(
            select(InventoryBatch)
            .where(
                InventoryBatch.product_id == txn.product_id,
                InventoryBatch.quantity_remaining > 0,
            )
            .order_by(InventoryBatch.received_at, InventoryBatch.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        today = business_today(self.settings)
        now = utc_now()

        for batch in result.scalars().all():
            if needed == 0:
                break
            take = min(needed, batch.quantity_remaining)
            remaining = batch.quantity_remaining - take
            await self._swap_batch(batch, remaining, now if remaining == 0 else None)
            self.session.add(
                BatchConsumption(
                    batch_id=batch.id,
                    transaction_id=txn.id,
                    quantity=take,
                    cost_per_unit=batch.cost_per_unit,
                    total_cost=take * batch.cost_per_unit,
                    reference_order_id=txn.reference_order_id,
                )
            )
            needed -= take

            days_left = batch.days_until_expiry(today)
            if days_left is not None and days_left <= self.settings.batch_expiry_warning_days:
                self.events.add_notification(
                    "inventory.batch_expiring",
                    {
                        "product_id": str(txn.product_id),
                        "sku": sku,
                        "batch_id": str(batch.id),
                        "expiry_date": batch.expiry_date.isoformat(),
                        "days_until_expiry": days_left,
                        "quantity_consumed": take,
                        "reference_order_id": (
                            str(txn.reference_order_id) if txn.reference_order_id else None
                        ),
                    },
                    idempotency_key=make_idempotency_key(
                        "inventory.batch_expiring", batch.id, txn.id
                    ),
                )

        if needed:
            raise LedgerWriteError(
                f"Batches for product {txn.product_id} are short of the stock "
                f"counter by {needed} units",
                product_id=txn.product_id,
                shortfall=needed,
            )
        await self.session.flush()

    async def _receive_into_batches(
        self,
        txn: InventoryTransaction,
        cost_per_unit: Optional[int],
        expiry_date: Optional[date],
    ) -> None:
        """
        Put incoming units into batches.

        Returns for an order refill the batches that order drew from, newest
        draw first. Whatever is left opens a new batch, costed at the latest
        batch's cost unless a cost is given.
        """
        incoming = txn.quantity
        if txn.type == TransactionType.RETURN and txn.reference_order_id is not None:
            incoming = await self._return_to_batches(txn, incoming)
        if incoming == 0:
            return

        if cost_per_unit is None:
            cost_per_unit = await self._latest_cost(txn.product_id)
        batch = InventoryBatch(
            product_id=txn.product_id,
            received_at=utc_now(),
            initial_quantity=incoming,
            quantity_remaining=incoming,
            cost_per_unit=cost_per_unit,
            expiry_date=expiry_date,
            source_transaction_id=txn.id,
            notes=txn.notes,
        )
        self.session.add(batch)
        await self.session.flush()
        logger.debug(
            "Batch received",
            product_id=str(txn.product_id),
            batch_id=str(batch.id),
            quantity=incoming,
            cost_per_unit=cost_per_unit,
            expiry_date=expiry_date.isoformat() if expiry_date else None,
        )

    async def _return_to_batches(self, txn: InventoryTransaction, incoming: int) -> int:
        result = await self.session.execute(
            select(BatchConsumption, InventoryBatch)
            .join(InventoryBatch, InventoryBatch.id == BatchConsumption.batch_id)
            .where(
                BatchConsumption.reference_order_id == txn.reference_order_id,
                BatchConsumption.quantity_returned < BatchConsumption.quantity,
                InventoryBatch.product_id == txn.product_id,
            )
            .order_by(BatchConsumption.created_at.desc(), BatchConsumption.id.desc())
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        for consumption, batch in result.all():
            if incoming == 0:
                break
            give = min(incoming, consumption.outstanding)
            await self._swap_batch(batch, batch.quantity_remaining + give, None)
            consumption.quantity_returned += give
            incoming -= give

        await self.session.flush()
        return incoming

    async def _swap_batch(
        self,
        batch: InventoryBatch,
        new_remaining: int,
        consumed_at: Optional[datetime],
    ) -> None:
        swapped = await self.session.execute(
            update(InventoryBatch)
            .where(
                InventoryBatch.id == batch.id,
                InventoryBatch.quantity_remaining == batch.quantity_remaining,
            )
            .values(
                quantity_remaining=new_remaining,
                is_consumed=new_remaining == 0,
                consumed_at=consumed_at,
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        if swapped.rowcount != 1:
            raise LedgerWriteError(
                f"Batch {batch.id} changed during a stock movement",
                batch_id=batch.id,
                expected_remaining=batch.quantity_remaining,
            )
        # Keep the loaded row in step so a later swap in this movement sees it
        set_committed_value(batch, "quantity_remaining", new_remaining)
        set_committed_value(batch, "is_consumed", new_remaining == 0)
        set_committed_value(batch, "consumed_at", consumed_at)

    async def _latest_cost(self, product_id: uuid.UUID) -> int:
        cost = await self.session.scalar(
            select(InventoryBatch.cost_per_unit)
            .where(InventoryBatch.product_id == product_id)
            .order_by(InventoryBatch.received_at.desc())
            .limit(1)
        )
        return cost or 0
