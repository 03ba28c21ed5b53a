"""
Order data access repository.

This module implements the OrderRepository class providing async methods for
loading orders with their line items and history, claiming an order's
version with a compare-and-swap update, computing a customer's outstanding
credit, and the date- and status-scoped queries used by route sequencing and
the packing-session reaper.
"""

import uuid
from datetime import date, datetime
from typing import Iterable, Optional, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from fulfillment_engine.core.exceptions import (
    CustomerNotFound,
    OrderNotFound,
    VersionConflict,
)
from fulfillment_engine.core.logging import get_logger
from fulfillment_engine.database.base import utc_now
from fulfillment_engine.database.models.customer import Customer
from fulfillment_engine.database.models.order import Order
from fulfillment_engine.database.models.route import RouteOptimization
from fulfillment_engine.services.orders.enums import (
    ROUTABLE_STATUSES,
    BackorderStatus,
    OrderStatus,
)

logger = get_logger(__name__)

CREDIT_COMMITTED_STATUSES = (
    OrderStatus.CONFIRMED,
    OrderStatus.PACKING,
    OrderStatus.READY_FOR_DELIVERY,
    OrderStatus.OUT_FOR_DELIVERY,
)


class OrderRepository:
    """
    Repository for order data access operations.

    Every read goes through ``populate_existing`` so an order loaded twice in
    the same session reflects the stored row, not a stale identity-map copy.
    """

    def __init__(self, session: AsyncSession):
        """
        Initialize order repository.

        Args:
            session: Async database session
        """
        self.session = session

    async def add(self, order: Order) -> Order:
        """Stage a new order and flush it to obtain its identity."""
        self.session.add(order)
        await self.session.flush()
        logger.debug(
            "Order staged",
            order_id=str(order.id),
            order_number=order.order_number,
        )
        return order

    async def get_order(self, order_id: uuid.UUID) -> Optional[Order]:
        """
        Load an order with line items and status history.

        Args:
            order_id: Order identifier

        Returns:
            Order or None if not found
        """
        result = await self.session.execute(
            select(Order)
            .where(Order.id == order_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_order_or_raise(self, order_id: uuid.UUID) -> Order:
        """
        Load an order or raise.

        Raises:
            OrderNotFound: If no order has this id
        """
        order = await self.get_order(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        return order

    async def get_customer_or_raise(self, customer_id: uuid.UUID) -> Customer:
        """
        Load an active customer.

        Raises:
            CustomerNotFound: If the customer is missing or inactive
        """
        customer = await self.session.get(Customer, customer_id)
        if customer is None or not customer.is_active:
            raise CustomerNotFound(customer_id)
        return customer

    async def claim_version(self, order: Order, expected_version: int) -> int:
        """
        Advance an order's version with a compare-and-swap update.

        The UPDATE only matches when the stored version still equals the
        caller's; the in-memory instance is then moved to the new version
        without marking it dirty.

        Args:
            order: Order being mutated
            expected_version: Version the caller read

        Returns:
            The new version

        Raises:
            VersionConflict: If the stored version no longer matches
        """
        new_version = expected_version + 1
        result = await self.session.execute(
            update(Order)
            .where(Order.id == order.id, Order.version == expected_version)
            .values(version=new_version, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.info(
                "Order version claim lost",
                order_id=str(order.id),
                expected_version=expected_version,
            )
            raise VersionConflict(order.id, expected_version)

        set_committed_value(order, "version", new_version)
        return new_version

    async def outstanding_credit(
        self, customer_id: uuid.UUID, exclude_order_id: Optional[uuid.UUID] = None
    ) -> int:
        """
        Sum the totals of a customer's committed, unfinished orders.

        Orders awaiting backorder approval are not a committed obligation and
        never count.

        Args:
            customer_id: Customer to sum for
            exclude_order_id: Order to leave out (the one being confirmed)

        Returns:
            Outstanding amount in cents
        """
        stmt = select(func.coalesce(func.sum(Order.total_amount), 0)).where(
            Order.customer_id == customer_id,
            Order.status.in_(CREDIT_COMMITTED_STATUSES),
            Order.backorder_status != BackorderStatus.PENDING_APPROVAL,
        )
        if exclude_order_id is not None:
            stmt = stmt.where(Order.id != exclude_order_id)
        result = await self.session.execute(stmt)
        return int(result.scalar_one())

    async def list_orders_for_date(
        self,
        delivery_date: date,
        statuses: Iterable[OrderStatus] = ROUTABLE_STATUSES,
    ) -> Sequence[Order]:
        """
        List a delivery date's orders in the given statuses.

        Args:
            delivery_date: Delivery date
            statuses: Statuses to include (routable statuses by default)

        Returns:
            Orders ordered by order number
        """
        result = await self.session.execute(
            select(Order)
            .where(
                Order.delivery_date == delivery_date,
                Order.status.in_(list(statuses)),
            )
            .order_by(Order.order_number)
            .execution_options(populate_existing=True)
        )
        return result.scalars().all()

    async def count_routable_orders(self, delivery_date: date) -> int:
        result = await self.session.execute(
            select(func.count(Order.id)).where(
                Order.delivery_date == delivery_date,
                Order.status.in_(list(ROUTABLE_STATUSES)),
                Order.area_tag.is_not(None),
                Order.latitude.is_not(None),
                Order.longitude.is_not(None),
            )
        )
        return int(result.scalar_one())

    async def find_stale_packing_orders(self, cutoff: datetime) -> Sequence[Order]:
        """
        Find packing orders with no activity since the cutoff.

        Activity is the last item-packed event, falling back to the last
        status change for sessions that never recorded one.

        Args:
            cutoff: Orders idle at or before this instant are stale

        Returns:
            Stale packing orders, oldest first
        """
        last_activity = func.coalesce(Order.last_packing_activity_at, Order.updated_at)
        result = await self.session.execute(
            select(Order)
            .where(Order.status == OrderStatus.PACKING, last_activity <= cutoff)
            .order_by(last_activity)
            .execution_options(populate_existing=True)
        )
        return result.scalars().all()

    async def get_routes(self, delivery_date: date) -> Sequence[RouteOptimization]:
        """List the stored routes for a date."""
        result = await self.session.execute(
            select(RouteOptimization)
            .where(RouteOptimization.delivery_date == delivery_date)
            .order_by(RouteOptimization.area_tag)
            .execution_options(populate_existing=True)
        )
        return result.scalars().all()

    async def flag_routes_for_reoptimization(
        self, delivery_date: date, area_tags: Iterable[Optional[str]]
    ) -> int:
        """
        Mark a date's routes for the given areas as needing re-optimization.

        Args:
            delivery_date: Delivery date
            area_tags: Areas whose order set changed

        Returns:
            Number of routes flagged
        """
        areas = sorted({tag for tag in area_tags if tag})
        if not areas:
            return 0
        result = await self.session.execute(
            update(RouteOptimization)
            .where(
                RouteOptimization.delivery_date == delivery_date,
                RouteOptimization.area_tag.in_(areas),
            )
            .values(needs_reoptimization=True)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            logger.info(
                "Routes flagged for re-optimization",
                delivery_date=delivery_date.isoformat(),
                areas=areas,
                flagged=result.rowcount,
            )
        return result.rowcount

    @staticmethod
    def next_order_number(today: date) -> str:
        """
        Generate an order number for the given business day.

        Format: ``ORD-YYYYMMDD-XXXXXX`` with a random hex suffix.
        """
        return f"ORD-{today.strftime('%Y%m%d')}-{uuid.uuid4().hex[:6].upper()}"
