"""
Fulfillment service orchestrating orders, stock, backorders and routes.

This module implements the FulfillmentService facade used by the API layer.
Each public method is one unit of work: it runs the state machine, ledger,
backorder resolver or route service against the injected session, commits,
and only then hands buffered events to the publisher. On any error the
session is rolled back and the buffered events are dropped.
"""

import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date
from typing import Any, AsyncIterator, Iterable, Mapping, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment_engine.core.actor import Actor, ActorRole
from fulfillment_engine.core.config import Settings, get_settings
from fulfillment_engine.core.exceptions import (
    ProductNotFound,
    TransitionNotPermitted,
)
from fulfillment_engine.core.logging import get_logger
from fulfillment_engine.database.models.batch import InventoryBatch
from fulfillment_engine.database.models.inventory import (
    AdjustmentReason,
    InventoryTransaction,
)
from fulfillment_engine.database.models.order import (
    Order,
    OrderLineItem,
    OrderStatusHistory,
)
from fulfillment_engine.database.models.product import Product
from fulfillment_engine.services.backorders.resolver import BackorderResolver
from fulfillment_engine.services.inventory.ledger import InventoryLedger, LedgerBalance
from fulfillment_engine.services.notifications.sinks import (
    EventBuffer,
    EventPublisher,
    make_idempotency_key,
)
from fulfillment_engine.services.orders.enums import (
    MANAGEMENT_ROLES,
    BackorderDecision,
    OrderStatus,
)
from fulfillment_engine.services.orders.pricing import apply_totals
from fulfillment_engine.services.orders.repository import OrderRepository
from fulfillment_engine.services.orders.state_machine import (
    OrderStateMachine,
    get_order_state_machine,
)
from fulfillment_engine.services.orders.validation import (
    business_today,
    validate_delivery_address,
    validate_delivery_date,
    validate_minimum_order,
    validate_order_lines,
)
from fulfillment_engine.services.routing.provider import RouteOptimizationProvider
from fulfillment_engine.services.routing.service import (
    RouteRecomputeResult,
    RouteSequencingService,
    RouteView,
)

logger = get_logger(__name__)

ORDERING_ROLES = frozenset(
    {ActorRole.ADMIN, ActorRole.MANAGER, ActorRole.SALES, ActorRole.CUSTOMER}
)


@dataclass(frozen=True)
class OrderLineRequest:
    """Requested order line; the product's price applies when none is given."""

    product_id: uuid.UUID
    quantity: int
    unit_price: Optional[int] = None


@dataclass
class OrderResult:
    order: Order
    backorder_pending: bool


class FulfillmentService:
    """
    Facade over the fulfillment engine.

    Attributes:
        session: Async database session owned by the caller
        publisher: Event publisher for post-commit notifications
        route_provider: Route optimization provider override
        settings: Application settings
    """

    def __init__(
        self,
        session: AsyncSession,
        publisher: Optional[EventPublisher] = None,
        route_provider: Optional[RouteOptimizationProvider] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize fulfillment service.

        Args:
            session: Async database session
            publisher: Event publisher, configured sink by default
            route_provider: Route provider, configured provider by default
            settings: Application settings
        """
        self.session = session
        self.settings = settings or get_settings()
        self.publisher = publisher or EventPublisher(
            timeout_seconds=self.settings.event_sink_timeout_seconds
        )
        self.route_provider = route_provider
        self.repository = OrderRepository(session)

    @asynccontextmanager
    async def _unit_of_work(self) -> AsyncIterator[EventBuffer]:
        events = EventBuffer()
        try:
            yield events
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            events.clear()
            raise
        events.flush(self.publisher)

    def _state_machine(self, events: EventBuffer) -> OrderStateMachine:
        return get_order_state_machine(self.session, events, self.settings)

    def _routes(self) -> RouteSequencingService:
        return RouteSequencingService(
            self.session, provider=self.route_provider, settings=self.settings
        )

    # ========================================================================
    # Orders
    # ========================================================================

    async def create_order(
        self,
        actor: Actor,
        customer_id: uuid.UUID,
        lines: Sequence[OrderLineRequest],
        delivery_address: Mapping[str, Any],
        delivery_date: date,
        notes: Optional[str] = None,
    ) -> OrderResult:
        """
        Create an order in ``pending``.

        Nothing is deducted at creation. When any product is short the order
        is parked for backorder approval with its shortfall map.

        Args:
            actor: Caller identity; customers may only order for themselves
            customer_id: Ordering customer
            lines: Requested lines
            delivery_address: Street address with area tag and coordinates
            delivery_date: Target delivery date
            notes: Optional order notes

        Returns:
            OrderResult with the new order and its backorder flag

        Raises:
            TransitionNotPermitted: Role may not place orders
            OrderValidationError: Invalid lines or address
            InvalidDeliveryDate: Date in the past, on a non-delivery day or
                before the earliest date the order cutoff allows
            BelowMinimumOrder: Order total under the configured minimum
            CustomerNotFound: Unknown or inactive customer
            ProductNotFound: Unknown product
        """
        if actor.role not in ORDERING_ROLES or (
            actor.role == ActorRole.CUSTOMER and actor.customer_id != customer_id
        ):
            raise TransitionNotPermitted(actor.role.value, "place orders")
        validate_order_lines(lines)
        address = validate_delivery_address(dict(delivery_address))
        validate_delivery_date(delivery_date, self.settings, address.get("area_tag"))

        async with self._unit_of_work() as events:
            await self.repository.get_customer_or_raise(customer_id)
            products = await self._load_products(line.product_id for line in lines)
            resolver = BackorderResolver(self._state_machine(events))

            order = Order(
                order_number=self.repository.next_order_number(
                    business_today(self.settings)
                ),
                customer_id=customer_id,
                status=OrderStatus.PENDING,
                version=1,
                delivery_address=address,
                area_tag=address.get("area_tag"),
                latitude=address.get("latitude"),
                longitude=address.get("longitude"),
                delivery_date=delivery_date,
                notes=notes,
                packed_skus=[],
                created_by=actor.actor_id,
                updated_by=actor.actor_id,
                line_items=[
                    OrderLineItem(
                        line_number=number,
                        product_id=line.product_id,
                        sku=products[line.product_id].sku,
                        quantity=line.quantity,
                        unit_price=(
                            line.unit_price
                            if line.unit_price is not None
                            else products[line.product_id].unit_price
                        ),
                        subtotal=0,
                        stock_deducted=False,
                    )
                    for number, line in enumerate(lines, start=1)
                ],
                status_history=[
                    OrderStatusHistory(
                        from_status=None,
                        to_status=OrderStatus.PENDING,
                        actor_id=actor.actor_id,
                        actor_role=actor.role.value,
                        note="Order created",
                    )
                ],
            )
            apply_totals(order, self.settings.tax_rate_basis_points)
            validate_minimum_order(order.total_amount, self.settings)

            shortfalls = await resolver.evaluate(lines)
            if shortfalls:
                resolver.mark_pending(order, shortfalls)

            await self.repository.add(order)

            payload = {
                "order_id": str(order.id),
                "order_number": order.order_number,
                "customer_id": str(customer_id),
                "total_amount": order.total_amount,
                "delivery_date": delivery_date.isoformat(),
            }
            events.add_notification(
                "order.created",
                payload,
                idempotency_key=make_idempotency_key("order.created", order.id),
            )
            if shortfalls:
                events.add_notification(
                    "order.backorder_pending",
                    {**payload, "stock_shortfall": order.stock_shortfall},
                    idempotency_key=make_idempotency_key(
                        "order.backorder_pending", order.id
                    ),
                )

        logger.info(
            "Order created",
            order_id=str(order.id),
            order_number=order.order_number,
            customer_id=str(customer_id),
            total_amount=order.total_amount,
            backorder_pending=bool(shortfalls),
        )
        return OrderResult(order=order, backorder_pending=bool(shortfalls))

    async def get_order(self, order_id: uuid.UUID) -> Order:
        """
        Get an order with line items and status history.

        Raises:
            OrderNotFound: If no order has this id
        """
        async with self._unit_of_work():
            return await self.repository.get_order_or_raise(order_id)

    async def transition(
        self,
        order_id: uuid.UUID,
        target_status: OrderStatus,
        actor: Actor,
        version: int,
        extras: Optional[Mapping[str, Any]] = None,
        note: Optional[str] = None,
    ) -> Order:
        """
        Move an order to a new status.

        Args:
            order_id: Order identifier
            target_status: Target status
            actor: Caller identity
            version: Version the caller last read
            extras: Edge-specific inputs such as driver or proof of delivery
            note: Optional status history note

        Returns:
            The transitioned order at its new version
        """
        async with self._unit_of_work() as events:
            order = await self.repository.get_order_or_raise(order_id)
            await self._state_machine(events).transition(
                order, target_status, actor, version, extras=dict(extras or {}), note=note
            )
        return order

    async def resolve_backorder(
        self,
        order_id: uuid.UUID,
        decision: BackorderDecision,
        actor: Actor,
        version: int,
        approved_quantities: Optional[Mapping[Any, int]] = None,
        reason: Optional[str] = None,
    ) -> Order:
        """
        Approve, reject or partially approve a backordered order.

        Returns:
            The confirmed or cancelled order
        """
        async with self._unit_of_work() as events:
            order = await self.repository.get_order_or_raise(order_id)
            resolver = BackorderResolver(self._state_machine(events))
            await resolver.resolve(
                order,
                decision,
                actor,
                version,
                approved_quantities=approved_quantities,
                reason=reason,
            )
        return order

    async def mark_item_packed(
        self, order_id: uuid.UUID, product_id: uuid.UUID, actor: Actor, version: int
    ) -> Order:
        """Record a packed line item and refresh packing activity."""
        async with self._unit_of_work() as events:
            order = await self.repository.get_order_or_raise(order_id)
            await self._state_machine(events).mark_item_packed(
                order, product_id, actor, version
            )
        return order

    async def assign_driver(
        self, order_id: uuid.UUID, driver_id: str, actor: Actor, version: int
    ) -> Order:
        """Assign a driver to an order awaiting delivery."""
        async with self._unit_of_work() as events:
            order = await self.repository.get_order_or_raise(order_id)
            await self._state_machine(events).assign_driver(
                order, driver_id, actor, version
            )
        return order

    async def approve_cancellation(
        self, order_id: uuid.UUID, actor: Actor, version: int
    ) -> Order:
        """Grant manager approval to cancel a packed or dispatched order."""
        async with self._unit_of_work() as events:
            order = await self.repository.get_order_or_raise(order_id)
            await self._state_machine(events).approve_cancellation(order, actor, version)
        return order

    # ========================================================================
    # Routes
    # ========================================================================

    async def recompute_routes(
        self, delivery_date: date, actor: Actor, force: bool = False
    ) -> RouteRecomputeResult:
        """
        Recompute delivery and packing sequences for a date.

        Raises:
            TransitionNotPermitted: Only staff may recompute routes
        """
        if actor.role == ActorRole.CUSTOMER:
            raise TransitionNotPermitted(actor.role.value, "recompute routes")
        async with self._unit_of_work():
            return await self._routes().recompute(delivery_date, actor, force=force)

    async def get_packing_view(self, delivery_date: date, actor: Actor) -> RouteView:
        """Orders for a date sorted by packing sequence."""
        async with self._unit_of_work():
            return await self._routes().packing_view(delivery_date, actor)

    async def get_delivery_view(self, delivery_date: date, actor: Actor) -> RouteView:
        """Orders for a date sorted by delivery sequence."""
        async with self._unit_of_work():
            return await self._routes().delivery_view(delivery_date, actor)

    # ========================================================================
    # Inventory
    # ========================================================================

    async def register_product(
        self,
        actor: Actor,
        sku: str,
        name: str,
        unit_of_measure: str = "each",
        unit_price: int = 0,
        low_stock_threshold: int = 0,
        opening_stock: int = 0,
        cost_per_unit: Optional[int] = None,
        expiry_date: Optional[date] = None,
    ) -> Product:
        """Create a product with optional opening stock in a first batch."""
        self._require_management(actor, "register products")
        async with self._unit_of_work() as events:
            return await InventoryLedger(
                self.session, events=events, settings=self.settings
            ).register_product(
                sku=sku,
                name=name,
                unit_of_measure=unit_of_measure,
                unit_price=unit_price,
                low_stock_threshold=low_stock_threshold,
                opening_stock=opening_stock,
                actor_id=actor.actor_id,
                cost_per_unit=cost_per_unit,
                expiry_date=expiry_date,
            )

    async def adjust_stock(
        self,
        product_id: uuid.UUID,
        delta: int,
        adjustment_reason: AdjustmentReason,
        actor: Actor,
        notes: Optional[str] = None,
        cost_per_unit: Optional[int] = None,
        expiry_date: Optional[date] = None,
    ) -> InventoryTransaction:
        """Record a manual stock adjustment."""
        self._require_management(actor, "adjust stock")
        async with self._unit_of_work() as events:
            return await InventoryLedger(
                self.session, events=events, settings=self.settings
            ).adjust(
                product_id,
                delta,
                adjustment_reason,
                actor.actor_id,
                notes,
                cost_per_unit=cost_per_unit,
                expiry_date=expiry_date,
            )

    async def get_product_history(
        self, product_id: uuid.UUID, limit: Optional[int] = None
    ) -> tuple[Product, list[InventoryTransaction], LedgerBalance]:
        """
        Get a product with its ledger entries and reconciliation.

        Raises:
            ProductNotFound: If the product does not exist
        """
        async with self._unit_of_work():
            product = await self.session.get(Product, product_id)
            if product is None:
                raise ProductNotFound(product_id)
            ledger = InventoryLedger(self.session, settings=self.settings)
            history = await ledger.history(product_id, limit=limit)
            balance = await ledger.verify(product_id)
            return product, history, balance

    async def get_product_batches(
        self, product_id: uuid.UUID, include_consumed: bool = False
    ) -> tuple[Product, list[InventoryBatch]]:
        """
        Get a product with its batches in consumption order.

        Raises:
            ProductNotFound: If the product does not exist
        """
        async with self._unit_of_work():
            product = await self.session.get(Product, product_id)
            if product is None:
                raise ProductNotFound(product_id)
            batches = await InventoryLedger(self.session, settings=self.settings).batches(
                product_id, include_consumed=include_consumed
            )
            return product, batches

    async def get_expiring_batches(
        self, actor: Actor, within_days: Optional[int] = None
    ) -> list[InventoryBatch]:
        """Batches with stock left that expire within the horizon."""
        self._require_management(actor, "review expiring stock")
        async with self._unit_of_work():
            return await InventoryLedger(
                self.session, settings=self.settings
            ).expiring_batches(within_days)

    # ========================================================================
    # Helpers
    # ========================================================================

    @staticmethod
    def _require_management(actor: Actor, action: str) -> None:
        if actor.role not in MANAGEMENT_ROLES:
            raise TransitionNotPermitted(actor.role.value, action)

    async def _load_products(
        self, product_ids: Iterable[uuid.UUID]
    ) -> dict[uuid.UUID, Product]:
        ids = set(product_ids)
        result = await self.session.execute(select(Product).where(Product.id.in_(ids)))
        products = {product.id: product for product in result.scalars().all()}
        for product_id in ids:
            if product_id not in products:
                raise ProductNotFound(product_id)
        return products
