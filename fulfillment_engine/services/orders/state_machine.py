"""Order state machine implementation with transition validation.

This module implements the OrderStateMachine class for managing the order
lifecycle: edge and role validation, per-edge guards, the optimistic
version claim, and per-status side effects (ledger movements, packing and
delivery bookkeeping, route invalidation and buffered events).

The state machine never commits. It runs inside the caller's unit of work so
that the status change, the status history row, the version bump and any
stock movements are committed or rolled back together.
"""

import uuid
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment_engine.core.actor import Actor, ActorRole
from fulfillment_engine.core.config import Settings, get_settings
from fulfillment_engine.core.exceptions import (
    BackorderPending,
    CreditLimitExceeded,
    IncompletePacking,
    InvalidTransition,
    ManagerApprovalRequired,
    MissingDriver,
    MissingProof,
    MissingReturnReason,
    OrderValidationError,
    TransitionNotPermitted,
    VersionConflict,
)
from fulfillment_engine.core.logging import get_logger
from fulfillment_engine.database.base import utc_now
from fulfillment_engine.database.models.order import Order, OrderStatusHistory
from fulfillment_engine.services.inventory.ledger import InventoryLedger
from fulfillment_engine.services.notifications.sinks import (
    EventBuffer,
    make_idempotency_key,
)
from fulfillment_engine.services.orders.enums import (
    APPROVAL_REQUIRED_FOR_CANCELLATION,
    MANAGEMENT_ROLES,
    ROUTABLE_STATUSES,
    BackorderStatus,
    OrderStatus,
    get_allowed_order_transitions,
    role_may_transition,
    validate_order_status_transition,
)
from fulfillment_engine.services.orders.repository import OrderRepository
from fulfillment_engine.services.orders.validation import validate_delivery_date

logger = get_logger(__name__)

Guard = Callable[[Order, Actor, Dict[str, Any]], Awaitable[None]]
Effect = Callable[[Order, OrderStatus, Actor, Dict[str, Any]], Awaitable[None]]

ACCOUNTING_SYNC_STATUSES = frozenset(
    {OrderStatus.CONFIRMED, OrderStatus.DELIVERED, OrderStatus.CANCELLED}
)

PACKING_ROLES = frozenset({ActorRole.ADMIN, ActorRole.MANAGER, ActorRole.PACKER})


class OrderStateMachine:
    """State machine for managing order lifecycle transitions.

    Recognized ``extras`` keys:

    - ``driver_id``: driver to assign when leaving for delivery
    - ``proof_of_delivery``: proof-of-delivery reference
    - ``actual_arrival``: arrival time recorded on delivery
    - ``return_reason``: why a delivery came back to the depot
    - ``manager_approved``: inline cancellation approval (admin/manager only)
    - ``cancellation_reason``: free-form cancellation reason
    - ``packing_notes``: notes recorded when packing completes
    """

    def __init__(
        self,
        session: AsyncSession,
        ledger: InventoryLedger,
        events: EventBuffer,
        settings: Optional[Settings] = None,
    ):
        """Initialize state machine.

        Args:
            session: Async database session shared with the ledger
            ledger: Inventory ledger used for stock side effects
            events: Buffer collecting events to publish after commit
            settings: Application settings
        """
        self.session = session
        self.repository = OrderRepository(session)
        self.ledger = ledger
        self.events = events
        self.settings = settings or get_settings()
        self._transition_guards: Dict[Tuple[OrderStatus, OrderStatus], Guard] = (
            self._initialize_guards()
        )
        self._side_effects: Dict[OrderStatus, Effect] = self._initialize_side_effects()

    def _initialize_guards(self) -> Dict[Tuple[OrderStatus, OrderStatus], Guard]:
        """Initialize transition guard functions.

        Returns:
            Dictionary mapping state transitions to guard coroutines
        """
        guards: Dict[Tuple[OrderStatus, OrderStatus], Guard] = {
            (OrderStatus.PENDING, OrderStatus.CONFIRMED): self._guard_confirm,
            (OrderStatus.PACKING, OrderStatus.READY_FOR_DELIVERY): (
                self._guard_packing_complete
            ),
            (OrderStatus.READY_FOR_DELIVERY, OrderStatus.OUT_FOR_DELIVERY): (
                self._guard_driver_assigned
            ),
            (OrderStatus.OUT_FOR_DELIVERY, OrderStatus.DELIVERED): (
                self._guard_proof_attached
            ),
            (OrderStatus.OUT_FOR_DELIVERY, OrderStatus.READY_FOR_DELIVERY): (
                self._guard_return_reason
            ),
        }
        for status in APPROVAL_REQUIRED_FOR_CANCELLATION:
            guards[(status, OrderStatus.CANCELLED)] = self._guard_cancellation_approved
        return guards

    def _initialize_side_effects(self) -> Dict[OrderStatus, Effect]:
        """Initialize side effect handlers keyed by target status."""
        return {
            OrderStatus.CONFIRMED: self._effect_confirmed,
            OrderStatus.PACKING: self._effect_packing,
            OrderStatus.READY_FOR_DELIVERY: self._effect_ready_for_delivery,
            OrderStatus.OUT_FOR_DELIVERY: self._effect_out_for_delivery,
            OrderStatus.DELIVERED: self._effect_delivered,
            OrderStatus.CANCELLED: self._effect_cancelled,
        }

    # ========================================================================
    # Validation
    # ========================================================================

    def validate_transition(
        self, order: Order, target_status: OrderStatus, actor: Actor
    ) -> None:
        """Validate the edge and the actor's permission to take it.

        Args:
            order: Order to transition
            target_status: Desired target status
            actor: Caller identity

        Raises:
            InvalidTransition: If the edge is not in the transition graph
            TransitionNotPermitted: If the actor's role may not take the edge
        """
        current_status = order.status

        if not validate_order_status_transition(current_status, target_status):
            allowed = get_allowed_order_transitions(current_status)
            raise InvalidTransition(
                current_status.value,
                target_status.value,
                order_id=order.id,
                allowed_transitions=sorted(s.value for s in allowed),
            )

        action = f"move orders from {current_status.value} to {target_status.value}"
        if not role_may_transition(current_status, target_status, actor.role):
            raise TransitionNotPermitted(actor.role.value, action, order_id=order.id)

        if actor.role == ActorRole.CUSTOMER and actor.customer_id != order.customer_id:
            raise TransitionNotPermitted(
                actor.role.value, f"{action} for another customer", order_id=order.id
            )

    @staticmethod
    def check_version(order: Order, expected_version: int) -> None:
        """Reject a stale version before anything else runs.

        Raises:
            VersionConflict: If the order has moved past the caller's version
        """
        if order.version != expected_version:
            raise VersionConflict(
                order.id, expected_version, current_version=order.version
            )

    def get_allowed_transitions(self, order: Order, actor: Actor) -> Set[OrderStatus]:
        """Get the statuses this actor may move the order to."""
        return {
            status
            for status in get_allowed_order_transitions(order.status)
            if role_may_transition(order.status, status, actor.role)
        }

    # ========================================================================
    # Transitions
    # ========================================================================

    async def transition(
        self,
        order: Order,
        target_status: OrderStatus,
        actor: Actor,
        expected_version: int,
        extras: Optional[Dict[str, Any]] = None,
        note: Optional[str] = None,
    ) -> Order:
        """Apply a status transition with guards and side effects.

        Args:
            order: Order loaded in this session
            target_status: Target status
            actor: Caller identity
            expected_version: Version the caller last read
            extras: Edge-specific inputs (see class docstring)
            note: Optional note for the status history

        Returns:
            The transitioned order

        Raises:
            VersionConflict: Stale version
            InvalidTransition: Edge not in the graph
            TransitionNotPermitted: Role may not take the edge
            FulfillmentError: A guard or side effect failed
        """
        extras = dict(extras or {})
        previous_status = order.status

        # A stale caller re-reads first; the edge it asked for may no longer exist
        self.check_version(order, expected_version)
        self.validate_transition(order, target_status, actor)

        guard = self._transition_guards.get((previous_status, target_status))
        if guard is not None:
            await guard(order, actor, extras)

        new_version = await self.repository.claim_version(order, expected_version)

        effect = self._side_effects.get(target_status)
        if effect is not None:
            await effect(order, previous_status, actor, extras)

        order.status = target_status
        order.updated_by = actor.actor_id
        order.status_history.append(
            OrderStatusHistory(
                order_id=order.id,
                from_status=previous_status,
                to_status=target_status,
                actor_id=actor.actor_id,
                actor_role=actor.role.value,
                note=note,
            )
        )

        if (previous_status in ROUTABLE_STATUSES) != (target_status in ROUTABLE_STATUSES):
            await self.repository.flag_routes_for_reoptimization(
                order.delivery_date, [order.area_tag]
            )

        await self.session.flush()
        self._buffer_transition_events(order, previous_status, actor, new_version)

        logger.info(
            "Order transitioned",
            order_id=str(order.id),
            transition=f"{previous_status.value}->{target_status.value}",
            version=new_version,
            actor_id=actor.actor_id,
            actor_role=actor.role.value,
        )
        return order

    # ========================================================================
    # Non-status mutations under the version contract
    # ========================================================================

    async def mark_item_packed(
        self,
        order: Order,
        product_id: uuid.UUID,
        actor: Actor,
        expected_version: int,
    ) -> Order:
        """Record a line item as packed in the current packing session.

        Args:
            order: Order in ``packing``
            product_id: Product whose line was packed
            actor: Packer or manager
            expected_version: Version the caller last read

        Raises:
            TransitionNotPermitted: Role may not pack
            OrderValidationError: Order not in packing or product not on it
            VersionConflict: Stale version
        """
        if actor.role not in PACKING_ROLES:
            raise TransitionNotPermitted(actor.role.value, "pack items", order_id=order.id)
        if order.status != OrderStatus.PACKING:
            raise OrderValidationError(
                "Items can only be packed while the order is being packed",
                order_id=order.id,
                status=order.status.value,
            )
        line = next(
            (item for item in order.line_items if item.product_id == product_id), None
        )
        if line is None:
            raise OrderValidationError(
                "Product is not on this order",
                order_id=order.id,
                product_id=product_id,
            )
        self.check_version(order, expected_version)

        await self.repository.claim_version(order, expected_version)
        if line.sku not in order.packed_sku_set:
            order.packed_skus = [*order.packed_skus, line.sku]
        order.last_packing_activity_at = utc_now()
        order.updated_by = actor.actor_id
        await self.session.flush()

        logger.info(
            "Item packed",
            order_id=str(order.id),
            sku=line.sku,
            remaining=len(order.unpacked_skus),
        )
        return order

    async def assign_driver(
        self,
        order: Order,
        driver_id: str,
        actor: Actor,
        expected_version: int,
    ) -> Order:
        """Assign a driver ahead of departure.

        Raises:
            TransitionNotPermitted: Role may not assign drivers
            OrderValidationError: Order is not awaiting delivery
            VersionConflict: Stale version
        """
        if actor.role not in MANAGEMENT_ROLES:
            raise TransitionNotPermitted(
                actor.role.value, "assign drivers", order_id=order.id
            )
        if order.status not in ROUTABLE_STATUSES:
            raise OrderValidationError(
                "Drivers can only be assigned before the order leaves the depot",
                order_id=order.id,
                status=order.status.value,
            )
        if not driver_id:
            raise MissingDriver(order.id)
        self.check_version(order, expected_version)

        await self.repository.claim_version(order, expected_version)
        order.driver_id = driver_id
        order.driver_assigned_at = utc_now()
        order.updated_by = actor.actor_id
        await self.session.flush()

        logger.info("Driver assigned", order_id=str(order.id), driver_id=driver_id)
        return order

    async def approve_cancellation(
        self, order: Order, actor: Actor, expected_version: int
    ) -> Order:
        """Set the manager approval flag needed to cancel a packed order.

        Raises:
            TransitionNotPermitted: Actor is not a manager or admin
            InvalidTransition: Order is already terminal
            VersionConflict: Stale version
        """
        if actor.role not in MANAGEMENT_ROLES:
            raise TransitionNotPermitted(
                actor.role.value, "approve cancellations", order_id=order.id
            )
        if order.status.is_terminal():
            raise InvalidTransition(
                order.status.value, OrderStatus.CANCELLED.value, order_id=order.id
            )
        self.check_version(order, expected_version)

        await self.repository.claim_version(order, expected_version)
        order.manager_approved_cancellation = True
        order.updated_by = actor.actor_id
        await self.session.flush()

        logger.info(
            "Cancellation approved",
            order_id=str(order.id),
            approved_by=actor.actor_id,
        )
        return order

    # ========================================================================
    # Transition Guards
    # ========================================================================

    async def _guard_confirm(
        self, order: Order, actor: Actor, extras: Dict[str, Any]
    ) -> None:
        """Guard for confirmation: backorder, credit and delivery date."""
        if order.backorder_status == BackorderStatus.PENDING_APPROVAL:
            raise BackorderPending(order.id)

        customer = await self.repository.get_customer_or_raise(order.customer_id)
        credit_limit = customer.credit_limit
        if credit_limit is not None:
            outstanding = await self.repository.outstanding_credit(
                order.customer_id, exclude_order_id=order.id
            )
            logger.debug(
                "Credit check",
                order_id=str(order.id),
                credit_limit=credit_limit,
                outstanding=outstanding,
                order_total=order.total_amount,
            )
            if outstanding + order.total_amount > credit_limit:
                raise CreditLimitExceeded(
                    order.customer_id, credit_limit, outstanding, order.total_amount
                )

        validate_delivery_date(order.delivery_date, self.settings, order.area_tag)

    async def _guard_packing_complete(
        self, order: Order, actor: Actor, extras: Dict[str, Any]
    ) -> None:
        unpacked = order.unpacked_skus
        if unpacked:
            raise IncompletePacking(order.id, unpacked)

    async def _guard_driver_assigned(
        self, order: Order, actor: Actor, extras: Dict[str, Any]
    ) -> None:
        if not (extras.get("driver_id") or order.driver_id):
            raise MissingDriver(order.id)

    async def _guard_proof_attached(
        self, order: Order, actor: Actor, extras: Dict[str, Any]
    ) -> None:
        if not (extras.get("proof_of_delivery") or order.proof_of_delivery):
            raise MissingProof(order.id)

    async def _guard_return_reason(
        self, order: Order, actor: Actor, extras: Dict[str, Any]
    ) -> None:
        if not extras.get("return_reason"):
            raise MissingReturnReason(order.id)

    async def _guard_cancellation_approved(
        self, order: Order, actor: Actor, extras: Dict[str, Any]
    ) -> None:
        """Guard for cancelling packed or dispatched orders."""
        if extras.get("manager_approved"):
            if actor.role not in MANAGEMENT_ROLES:
                raise TransitionNotPermitted(
                    actor.role.value, "approve cancellations", order_id=order.id
                )
            return
        if not order.manager_approved_cancellation:
            raise ManagerApprovalRequired(order.id, order.status.value)

    # ========================================================================
    # Side Effects
    # ========================================================================

    async def _effect_confirmed(
        self,
        order: Order,
        previous_status: OrderStatus,
        actor: Actor,
        extras: Dict[str, Any],
    ) -> None:
        if previous_status == OrderStatus.PENDING:
            await self.ledger.deduct_lines(order, actor_id=actor.actor_id)
        elif previous_status == OrderStatus.PACKING:
            # Abandoned or reverted session: the next session starts over
            order.packed_skus = []
            order.packing_started_at = None
            order.last_packing_activity_at = None

    async def _effect_packing(
        self,
        order: Order,
        previous_status: OrderStatus,
        actor: Actor,
        extras: Dict[str, Any],
    ) -> None:
        now = utc_now()
        order.packing_started_at = now
        order.last_packing_activity_at = now
        if previous_status == OrderStatus.READY_FOR_DELIVERY:
            order.packed_at = None
            order.packed_by = None

    async def _effect_ready_for_delivery(
        self,
        order: Order,
        previous_status: OrderStatus,
        actor: Actor,
        extras: Dict[str, Any],
    ) -> None:
        if previous_status == OrderStatus.PACKING:
            order.packed_at = utc_now()
            order.packed_by = actor.actor_id
            if extras.get("packing_notes"):
                order.packing_notes = extras["packing_notes"]
        elif previous_status == OrderStatus.OUT_FOR_DELIVERY:
            order.return_reason = extras["return_reason"]

    async def _effect_out_for_delivery(
        self,
        order: Order,
        previous_status: OrderStatus,
        actor: Actor,
        extras: Dict[str, Any],
    ) -> None:
        driver_id = extras.get("driver_id")
        if driver_id and driver_id != order.driver_id:
            order.driver_id = driver_id
            order.driver_assigned_at = utc_now()
        elif order.driver_assigned_at is None:
            order.driver_assigned_at = utc_now()

    async def _effect_delivered(
        self,
        order: Order,
        previous_status: OrderStatus,
        actor: Actor,
        extras: Dict[str, Any],
    ) -> None:
        now = utc_now()
        order.delivered_at = now
        order.actual_arrival = extras.get("actual_arrival") or now
        if extras.get("proof_of_delivery"):
            order.proof_of_delivery = extras["proof_of_delivery"]

    async def _effect_cancelled(
        self,
        order: Order,
        previous_status: OrderStatus,
        actor: Actor,
        extras: Dict[str, Any],
    ) -> None:
        restored = await self.ledger.restore_lines(
            order,
            actor_id=actor.actor_id,
            reason=f"Order {order.order_number} cancelled",
        )
        if extras.get("manager_approved"):
            order.manager_approved_cancellation = True
        order.cancellation_reason = extras.get("cancellation_reason")
        order.delivery_sequence = None
        order.packing_sequence = None
        order.route_id = None
        order.estimated_arrival = None

        logger.info(
            "Order stock restored on cancellation",
            order_id=str(order.id),
            previous_status=previous_status.value,
            restored_lines=len(restored),
        )

    # ========================================================================
    # Events
    # ========================================================================

    def _buffer_transition_events(
        self,
        order: Order,
        previous_status: OrderStatus,
        actor: Actor,
        new_version: int,
    ) -> None:
        status = order.status.value
        self.events.add_notification(
            f"order.{status}",
            {
                "order_id": str(order.id),
                "order_number": order.order_number,
                "customer_id": str(order.customer_id),
                "from_status": previous_status.value,
                "to_status": status,
                "version": new_version,
                "actor_id": actor.actor_id,
                "actor_role": actor.role.value,
            },
            idempotency_key=make_idempotency_key(f"order.{status}", order.id, new_version),
        )
        if order.status in ACCOUNTING_SYNC_STATUSES and not (
            order.status == OrderStatus.CONFIRMED
            and previous_status != OrderStatus.PENDING
        ):
            self.events.add_accounting_sync(
                order.id,
                idempotency_key=make_idempotency_key("accounting", order.id, status),
            )


def get_order_state_machine(
    session: AsyncSession,
    events: Optional[EventBuffer] = None,
    settings: Optional[Settings] = None,
) -> OrderStateMachine:
    """Factory function to create an OrderStateMachine with its ledger.

    Args:
        session: Async database session
        events: Event buffer shared by the ledger and the state machine
        settings: Application settings

    Returns:
        OrderStateMachine instance
    """
    events = events if events is not None else EventBuffer()
    ledger = InventoryLedger(session, events=events, settings=settings)
    return OrderStateMachine(session, ledger, events, settings=settings)
