"""
Backorder resolution.

At creation an order whose lines exceed current stock is parked in
``pending_approval`` with a per-product shortfall and nothing deducted. A
manager then approves it in full, rejects it, or approves reduced
quantities; each decision is final and ends in a regular state machine
transition, so the version contract, status history and stock movements are
the same as for any other transition.
"""

import uuid
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Optional

from sqlalchemy import select

from fulfillment_engine.core.actor import Actor
from fulfillment_engine.core.exceptions import (
    AlreadyResolved,
    InvalidApprovedQuantity,
    ProductNotFound,
    TransitionNotPermitted,
)
from fulfillment_engine.core.logging import get_logger
from fulfillment_engine.database.models.order import Order
from fulfillment_engine.database.models.product import Product
from fulfillment_engine.services.orders.enums import (
    MANAGEMENT_ROLES,
    BackorderDecision,
    BackorderStatus,
    OrderStatus,
)
from fulfillment_engine.services.orders.pricing import apply_totals
from fulfillment_engine.services.orders.state_machine import OrderStateMachine

logger = get_logger(__name__)


@dataclass(frozen=True)
class Shortfall:
    """Stock shortfall for one product."""

    product_id: uuid.UUID
    requested: int
    available: int

    @property
    def shortfall(self) -> int:
        return self.requested - self.available

    def to_dict(self) -> dict[str, int]:
        return {
            "requested": self.requested,
            "available": self.available,
            "shortfall": self.shortfall,
        }


class BackorderResolver:
    """
    Computes shortfalls and applies backorder decisions.

    Args:
        state_machine: State machine sharing the caller's session and ledger
    """

    def __init__(self, state_machine: OrderStateMachine):
        self.state_machine = state_machine
        self.session = state_machine.session
        self.ledger = state_machine.ledger

    async def evaluate(self, lines: Iterable[Any]) -> dict[uuid.UUID, Shortfall]:
        """
        Compare requested quantities against current stock.

        Quantities for the same product on several lines are summed.

        Args:
            lines: Objects exposing ``product_id`` and ``quantity``

        Returns:
            Shortfall per short product, empty when everything is covered

        Raises:
            ProductNotFound: If a line references an unknown product
        """
        requested: "OrderedDict[uuid.UUID, int]" = OrderedDict()
        for line in lines:
            requested[line.product_id] = requested.get(line.product_id, 0) + line.quantity

        result = await self.session.execute(
            select(Product.id, Product.current_stock).where(
                Product.id.in_(list(requested))
            )
        )
        stock = dict(result.all())

        shortfalls: dict[uuid.UUID, Shortfall] = {}
        for product_id, quantity in requested.items():
            if product_id not in stock:
                raise ProductNotFound(product_id)
            if quantity > stock[product_id]:
                shortfalls[product_id] = Shortfall(
                    product_id=product_id,
                    requested=quantity,
                    available=stock[product_id],
                )
        return shortfalls

    @staticmethod
    def mark_pending(order: Order, shortfalls: Mapping[uuid.UUID, Shortfall]) -> None:
        """Park a new order for approval with its shortfall map."""
        order.backorder_status = BackorderStatus.PENDING_APPROVAL
        order.stock_shortfall = {
            str(product_id): shortfall.to_dict()
            for product_id, shortfall in shortfalls.items()
        }

    async def resolve(
        self,
        order: Order,
        decision: BackorderDecision,
        actor: Actor,
        expected_version: int,
        approved_quantities: Optional[Mapping[Any, int]] = None,
        reason: Optional[str] = None,
    ) -> Order:
        """
        Apply a backorder decision.

        Args:
            order: Order awaiting approval, loaded in this session
            decision: Approve, reject or partially approve
            actor: Admin or manager
            expected_version: Version the caller last read
            approved_quantities: Per-product quantities for a partial approval
            reason: Optional note, recorded as the rejection reason

        Returns:
            The confirmed or cancelled order

        Raises:
            TransitionNotPermitted: Actor may not resolve backorders
            AlreadyResolved: Order is not awaiting approval
            VersionConflict: Stale version
            InvalidApprovedQuantity: Partial quantities out of bounds
            InsufficientStock: Stock dropped below the approved quantities
        """
        if actor.role not in MANAGEMENT_ROLES:
            raise TransitionNotPermitted(
                actor.role.value, "resolve backorders", order_id=order.id
            )
        if order.backorder_status != BackorderStatus.PENDING_APPROVAL:
            raise AlreadyResolved(order.id, order.backorder_status.value)
        self.state_machine.check_version(order, expected_version)

        logger.info(
            "Resolving backorder",
            order_id=str(order.id),
            decision=decision.value,
            actor_id=actor.actor_id,
        )

        if decision == BackorderDecision.APPROVE:
            return await self.approve(order, actor, expected_version)
        if decision == BackorderDecision.REJECT:
            return await self.reject(order, actor, expected_version, reason)
        return await self.partial_approve(
            order, approved_quantities or {}, actor, expected_version
        )

    async def approve(self, order: Order, actor: Actor, expected_version: int) -> Order:
        """Approve the full requested quantities and confirm the order."""
        order.backorder_status = BackorderStatus.APPROVED
        return await self.state_machine.transition(
            order,
            OrderStatus.CONFIRMED,
            actor,
            expected_version,
            note="Backorder approved",
        )

    async def reject(
        self,
        order: Order,
        actor: Actor,
        expected_version: int,
        reason: Optional[str] = None,
    ) -> Order:
        """Reject the backorder and cancel the order; no stock moves."""
        order.backorder_status = BackorderStatus.REJECTED
        return await self.state_machine.transition(
            order,
            OrderStatus.CANCELLED,
            actor,
            expected_version,
            extras={"cancellation_reason": reason or "Backorder rejected"},
            note="Backorder rejected",
        )

    async def partial_approve(
        self,
        order: Order,
        approved_quantities: Mapping[Any, int],
        actor: Actor,
        expected_version: int,
    ) -> Order:
        """
        Approve reduced quantities for the short products and confirm.

        Lines for products that were not short keep their quantity. Lines
        for a short product are reduced in line order until the approved
        quantity is used up; lines left with nothing are removed.
        """
        approved = await self._validate_partial_quantities(order, approved_quantities)

        for product_id, quantity in approved.items():
            remaining = quantity
            for item in [i for i in order.line_items if i.product_id == product_id]:
                if remaining <= 0:
                    order.line_items.remove(item)
                    continue
                item.quantity = min(item.quantity, remaining)
                remaining -= item.quantity

        totals = apply_totals(order, self.state_machine.settings.tax_rate_basis_points)
        order.approved_quantities = {
            str(product_id): quantity for product_id, quantity in approved.items()
        }
        order.backorder_status = BackorderStatus.PARTIAL_APPROVED

        logger.info(
            "Backorder partially approved",
            order_id=str(order.id),
            approved_quantities=order.approved_quantities,
            total_amount=totals.total_amount,
        )
        return await self.state_machine.transition(
            order,
            OrderStatus.CONFIRMED,
            actor,
            expected_version,
            note="Backorder partially approved",
        )

    async def _validate_partial_quantities(
        self, order: Order, approved_quantities: Mapping[Any, int]
    ) -> dict[uuid.UUID, int]:
        shortfall_map = order.stock_shortfall or {}
        approved = {
            _as_uuid(product_id): quantity
            for product_id, quantity in approved_quantities.items()
        }

        for product_id in approved:
            if str(product_id) not in shortfall_map:
                raise InvalidApprovedQuantity(
                    product_id, approved[product_id], "product was not short"
                )

        for key, shortfall in shortfall_map.items():
            product_id = uuid.UUID(key)
            if product_id not in approved:
                raise InvalidApprovedQuantity(
                    product_id, None, "missing approved quantity for short product"
                )
            quantity = approved[product_id]
            if not isinstance(quantity, int) or quantity < 1:
                raise InvalidApprovedQuantity(product_id, quantity, "must be at least 1")
            if quantity > shortfall["requested"]:
                raise InvalidApprovedQuantity(
                    product_id,
                    quantity,
                    f"exceeds requested quantity {shortfall['requested']}",
                )
            available = await self.ledger.get_stock(product_id)
            if quantity > available:
                raise InvalidApprovedQuantity(
                    product_id, quantity, f"exceeds available stock {available}"
                )

        return approved


def _as_uuid(value: Any) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError as e:
        raise InvalidApprovedQuantity(value, None, "product id is not a UUID") from e
