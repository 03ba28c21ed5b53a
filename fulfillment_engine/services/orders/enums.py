"""Order status and backorder enums, transition graph and role permissions.

This module defines the order lifecycle graph and the role permissions for
each edge. The graph is the single source of truth for which transitions the
state machine accepts; the role table decides who may perform them.
"""

from enum import Enum
from typing import Dict, FrozenSet, Set, Tuple

from fulfillment_engine.core.actor import ActorRole


class OrderStatus(str, Enum):
    """Order lifecycle status.

    Valid transitions:
    - PENDING -> CONFIRMED, CANCELLED
    - CONFIRMED -> PACKING, CANCELLED
    - PACKING -> READY_FOR_DELIVERY, CONFIRMED (revert), CANCELLED
    - READY_FOR_DELIVERY -> OUT_FOR_DELIVERY, PACKING (re-open), CANCELLED
    - OUT_FOR_DELIVERY -> DELIVERED, READY_FOR_DELIVERY (returned), CANCELLED
    - DELIVERED -> (terminal state)
    - CANCELLED -> (terminal state)
    """

    PENDING = "pending"
    CONFIRMED = "confirmed"
    PACKING = "packing"
    READY_FOR_DELIVERY = "ready_for_delivery"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"

    @classmethod
    def from_string(cls, value: str) -> "OrderStatus":
        """Convert string to OrderStatus enum.

        Args:
            value: String representation of status

        Returns:
            OrderStatus enum value

        Raises:
            ValueError: If value is not a valid status
        """
        try:
            return cls(value.lower())
        except ValueError:
            valid_values = ", ".join([s.value for s in cls])
            raise ValueError(
                f"Invalid order status: {value}. "
                f"Valid values are: {valid_values}"
            )

    def is_terminal(self) -> bool:
        """Check if status is a terminal state (DELIVERED, CANCELLED)."""
        return self in {OrderStatus.DELIVERED, OrderStatus.CANCELLED}

    def is_routable(self) -> bool:
        """Check if orders in this status take part in route sequencing."""
        return self in ROUTABLE_STATUSES

    def counts_against_credit(self) -> bool:
        """Check if an order in this status is a committed fulfillment obligation."""
        return self in {
            OrderStatus.CONFIRMED,
            OrderStatus.PACKING,
            OrderStatus.READY_FOR_DELIVERY,
            OrderStatus.OUT_FOR_DELIVERY,
        }

    @property
    def display_name(self) -> str:
        """Get human-readable display name for status."""
        return self.value.replace("_", " ").title()


class BackorderStatus(str, Enum):
    """Backorder resolution status.

    PENDING_APPROVAL is the only status a decision can be applied from; the
    three decided statuses are final.
    """

    NONE = "none"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    PARTIAL_APPROVED = "partial_approved"

    def is_resolved(self) -> bool:
        return self in {
            BackorderStatus.APPROVED,
            BackorderStatus.REJECTED,
            BackorderStatus.PARTIAL_APPROVED,
        }


class BackorderDecision(str, Enum):
    """Decision an administrator applies to a pending backorder."""

    APPROVE = "approve"
    REJECT = "reject"
    PARTIAL_APPROVE = "partial_approve"


ROUTABLE_STATUSES: FrozenSet[OrderStatus] = frozenset(
    {
        OrderStatus.CONFIRMED,
        OrderStatus.PACKING,
        OrderStatus.READY_FOR_DELIVERY,
    }
)

# State machine transition rules
ORDER_STATUS_TRANSITIONS: Dict[OrderStatus, Set[OrderStatus]] = {
    OrderStatus.PENDING: {
        OrderStatus.CONFIRMED,
        OrderStatus.CANCELLED,
    },
    OrderStatus.CONFIRMED: {
        OrderStatus.PACKING,
        OrderStatus.CANCELLED,
    },
    OrderStatus.PACKING: {
        OrderStatus.READY_FOR_DELIVERY,
        OrderStatus.CONFIRMED,  # Revert / session timeout
        OrderStatus.CANCELLED,
    },
    OrderStatus.READY_FOR_DELIVERY: {
        OrderStatus.OUT_FOR_DELIVERY,
        OrderStatus.PACKING,  # Re-open
        OrderStatus.CANCELLED,
    },
    OrderStatus.OUT_FOR_DELIVERY: {
        OrderStatus.DELIVERED,
        OrderStatus.READY_FOR_DELIVERY,  # Returned to depot
        OrderStatus.CANCELLED,
    },
    OrderStatus.DELIVERED: set(),  # Terminal
    OrderStatus.CANCELLED: set(),  # Terminal
}

_MANAGEMENT = frozenset({ActorRole.ADMIN, ActorRole.MANAGER})

TRANSITION_ROLES: Dict[Tuple[OrderStatus, OrderStatus], FrozenSet[ActorRole]] = {
    (OrderStatus.PENDING, OrderStatus.CONFIRMED): _MANAGEMENT | {ActorRole.SALES},
    (OrderStatus.PENDING, OrderStatus.CANCELLED): _MANAGEMENT
    | {ActorRole.SALES, ActorRole.CUSTOMER},
    (OrderStatus.CONFIRMED, OrderStatus.PACKING): _MANAGEMENT | {ActorRole.PACKER},
    (OrderStatus.CONFIRMED, OrderStatus.CANCELLED): _MANAGEMENT | {ActorRole.SALES},
    (OrderStatus.PACKING, OrderStatus.READY_FOR_DELIVERY): _MANAGEMENT
    | {ActorRole.PACKER},
    (OrderStatus.PACKING, OrderStatus.CONFIRMED): _MANAGEMENT | {ActorRole.SYSTEM},
    (OrderStatus.PACKING, OrderStatus.CANCELLED): _MANAGEMENT | {ActorRole.SALES},
    (OrderStatus.READY_FOR_DELIVERY, OrderStatus.OUT_FOR_DELIVERY): _MANAGEMENT
    | {ActorRole.DRIVER},
    (OrderStatus.READY_FOR_DELIVERY, OrderStatus.PACKING): _MANAGEMENT
    | {ActorRole.PACKER},
    (OrderStatus.READY_FOR_DELIVERY, OrderStatus.CANCELLED): _MANAGEMENT
    | {ActorRole.SALES},
    (OrderStatus.OUT_FOR_DELIVERY, OrderStatus.DELIVERED): _MANAGEMENT
    | {ActorRole.DRIVER},
    (OrderStatus.OUT_FOR_DELIVERY, OrderStatus.READY_FOR_DELIVERY): _MANAGEMENT
    | {ActorRole.DRIVER},
    (OrderStatus.OUT_FOR_DELIVERY, OrderStatus.CANCELLED): _MANAGEMENT,
}

# Roles allowed to decide backorders, approve cancellations and adjust stock
MANAGEMENT_ROLES: FrozenSet[ActorRole] = _MANAGEMENT

# Cancelling from these statuses needs the manager approval flag
APPROVAL_REQUIRED_FOR_CANCELLATION: FrozenSet[OrderStatus] = frozenset(
    {
        OrderStatus.PACKING,
        OrderStatus.READY_FOR_DELIVERY,
        OrderStatus.OUT_FOR_DELIVERY,
    }
)


def validate_order_status_transition(current: OrderStatus, new: OrderStatus) -> bool:
    """Validate if order status transition is allowed.

    Args:
        current: Current order status
        new: Desired new status

    Returns:
        True if transition is valid
    """
    return new in ORDER_STATUS_TRANSITIONS.get(current, set())


def get_allowed_order_transitions(current: OrderStatus) -> Set[OrderStatus]:
    """Get all allowed transitions from current order status."""
    return ORDER_STATUS_TRANSITIONS.get(current, set()).copy()


def role_may_transition(
    current: OrderStatus, new: OrderStatus, role: ActorRole
) -> bool:
    """Check whether a role may perform the given transition."""
    return role in TRANSITION_ROLES.get((current, new), frozenset())
