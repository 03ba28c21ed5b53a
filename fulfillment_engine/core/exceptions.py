"""
Fulfillment error taxonomy.

Every failure the engine surfaces carries a stable ``code`` (the error kind
callers branch on), a human-readable message, and structured context for
logging and API responses.
"""

from typing import Any, Optional


class FulfillmentError(Exception):
    """Base exception for fulfillment engine operations."""

    code = "FULFILLMENT_ERROR"
    retryable = False

    def __init__(self, message: str, code: Optional[str] = None, **context: Any):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        """Serialize the error for API responses and event payloads."""
        return {
            "error": self.code,
            "reason": self.message,
            "context": {k: _jsonable(v) for k, v in self.context.items()},
        }


def _jsonable(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_jsonable(v) for v in value]
    return str(value)


# ============================================================================
# Order State Machine
# ============================================================================


class InvalidTransition(FulfillmentError):
    """Raised when the requested edge is not in the order transition graph."""

    code = "INVALID_TRANSITION"

    def __init__(self, current_status: str, target_status: str, **context: Any):
        super().__init__(
            f"Invalid transition from {current_status} to {target_status}",
            current_status=current_status,
            target_status=target_status,
            **context,
        )


class TransitionNotPermitted(FulfillmentError):
    """Raised when the actor's role may not perform the requested action."""

    code = "TRANSITION_NOT_PERMITTED"

    def __init__(self, role: str, action: str, **context: Any):
        super().__init__(
            f"Role '{role}' is not authorized to {action}",
            role=role,
            action=action,
            **context,
        )


class VersionConflict(FulfillmentError):
    """Raised when an order was modified since the caller last read it."""

    code = "VERSION_CONFLICT"
    retryable = True

    def __init__(self, order_id: Any, expected_version: int, **context: Any):
        super().__init__(
            f"Order {order_id} was modified concurrently "
            f"(expected version {expected_version}); re-read and retry",
            order_id=order_id,
            expected_version=expected_version,
            **context,
        )


class MissingDriver(FulfillmentError):
    """Raised when an order leaves for delivery without an assigned driver."""

    code = "MISSING_DRIVER"

    def __init__(self, order_id: Any):
        super().__init__(
            f"Order {order_id} has no driver assigned",
            order_id=order_id,
        )


class MissingProof(FulfillmentError):
    """Raised when an order is delivered without proof of delivery."""

    code = "MISSING_PROOF"

    def __init__(self, order_id: Any):
        super().__init__(
            f"Order {order_id} requires proof of delivery",
            order_id=order_id,
        )


class MissingReturnReason(FulfillmentError):
    """Raised when a delivery is returned to the depot without a reason."""

    code = "MISSING_RETURN_REASON"

    def __init__(self, order_id: Any):
        super().__init__(
            f"Order {order_id} requires a return reason",
            order_id=order_id,
        )


class IncompletePacking(FulfillmentError):
    """Raised when an order is marked ready with unpacked line items."""

    code = "INCOMPLETE_PACKING"

    def __init__(self, order_id: Any, unpacked: list[str]):
        super().__init__(
            f"Order {order_id} has {len(unpacked)} unpacked item(s)",
            order_id=order_id,
            unpacked=unpacked,
        )


class ManagerApprovalRequired(FulfillmentError):
    """Raised when a packed or dispatched order is cancelled without approval."""

    code = "MANAGER_APPROVAL_REQUIRED"

    def __init__(self, order_id: Any, status: str):
        super().__init__(
            f"Cancelling order {order_id} in status {status} requires manager approval",
            order_id=order_id,
            status=status,
        )


class CreditLimitExceeded(FulfillmentError):
    """Raised when confirming an order would exceed the customer's credit limit."""

    code = "CREDIT_LIMIT_EXCEEDED"

    def __init__(
        self, customer_id: Any, credit_limit: int, outstanding: int, order_total: int
    ):
        super().__init__(
            f"Order total {order_total} exceeds available credit "
            f"{credit_limit - outstanding} for customer {customer_id}",
            customer_id=customer_id,
            credit_limit=credit_limit,
            outstanding=outstanding,
            order_total=order_total,
        )


class InvalidDeliveryDate(FulfillmentError):
    """Raised when the requested delivery date cannot be serviced."""

    code = "INVALID_DELIVERY_DATE"

    def __init__(self, delivery_date: Any, reason: str, **context: Any):
        super().__init__(
            f"Delivery date {delivery_date} is not valid: {reason}",
            delivery_date=delivery_date,
            **context,
        )


class OrderValidationError(FulfillmentError):
    """Raised when order input fails validation."""

    code = "ORDER_VALIDATION_ERROR"


class BelowMinimumOrder(FulfillmentError):
    """Raised when an order total is under the configured minimum."""

    code = "BELOW_MINIMUM_ORDER"

    def __init__(self, order_total: int, minimum_order_amount: int):
        super().__init__(
            f"Order total {order_total} is below the minimum order amount "
            f"{minimum_order_amount}",
            order_total=order_total,
            minimum_order_amount=minimum_order_amount,
        )


class OrderNotFound(FulfillmentError):
    """Raised when an order cannot be found."""

    code = "ORDER_NOT_FOUND"

    def __init__(self, order_id: Any):
        super().__init__(f"Order {order_id} not found", order_id=order_id)


class CustomerNotFound(FulfillmentError):
    """Raised when a customer cannot be found or is inactive."""

    code = "CUSTOMER_NOT_FOUND"

    def __init__(self, customer_id: Any):
        super().__init__(f"Customer {customer_id} not found", customer_id=customer_id)


# ============================================================================
# Backorders
# ============================================================================


class BackorderPending(FulfillmentError):
    """Raised when an order awaiting backorder approval is confirmed directly."""

    code = "BACKORDER_PENDING"

    def __init__(self, order_id: Any):
        super().__init__(
            f"Order {order_id} is awaiting backorder approval",
            order_id=order_id,
        )


class AlreadyResolved(FulfillmentError):
    """Raised when a backorder decision is applied twice."""

    code = "ALREADY_RESOLVED"

    def __init__(self, order_id: Any, backorder_status: str):
        super().__init__(
            f"Backorder for order {order_id} is not pending approval "
            f"(status: {backorder_status})",
            order_id=order_id,
            backorder_status=backorder_status,
        )


class InvalidApprovedQuantity(FulfillmentError):
    """Raised when a partial approval quantity is out of bounds."""

    code = "INVALID_APPROVED_QUANTITY"

    def __init__(self, product_id: Any, approved: Any, reason: str):
        super().__init__(
            f"Approved quantity {approved} for product {product_id} is invalid: {reason}",
            product_id=product_id,
            approved=approved,
        )


# ============================================================================
# Inventory Ledger
# ============================================================================


class InsufficientStock(FulfillmentError):
    """Raised when a deduction exceeds the product's current stock."""

    code = "INSUFFICIENT_STOCK"

    def __init__(self, product_id: Any, requested: int, available: int, **context: Any):
        super().__init__(
            f"Insufficient stock for product {product_id}: "
            f"requested {requested}, available {available}",
            product_id=product_id,
            requested=requested,
            available=available,
            **context,
        )


class ProductNotFound(FulfillmentError):
    """Raised when a product cannot be found."""

    code = "PRODUCT_NOT_FOUND"

    def __init__(self, product_id: Any):
        super().__init__(f"Product {product_id} not found", product_id=product_id)


class LedgerWriteError(FulfillmentError):
    """Raised when a ledger write keeps failing at the storage layer."""

    code = "LEDGER_WRITE_ERROR"
    retryable = True


# ============================================================================
# Route Sequencing
# ============================================================================


class RouteProviderUnavailable(FulfillmentError):
    """Raised by a route provider when an area cannot be optimized."""

    code = "ROUTE_PROVIDER_UNAVAILABLE"
    retryable = True

    def __init__(self, area: str, reason: str, **context: Any):
        super().__init__(
            f"Route provider unavailable for area {area}: {reason}",
            area=area,
            **context,
        )
        self.area = area
        self.reason = reason
