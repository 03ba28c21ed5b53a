"""
Order pricing in integer cents.

Line subtotals are exact integer products; tax is computed on the order
subtotal with half-up rounding to the cent. Everything here is pure so the
totals invariant can be checked against any order at any status.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Protocol

from fulfillment_engine.core.exceptions import OrderValidationError

BASIS_POINTS = Decimal(10000)


class PricedLine(Protocol):
    quantity: int
    unit_price: int


@dataclass(frozen=True)
class OrderTotals:
    """Computed order totals in cents."""

    subtotal: int
    tax_amount: int
    total_amount: int


def calculate_line_subtotal(quantity: int, unit_price: int) -> int:
    """
    Calculate a line subtotal.

    Args:
        quantity: Units ordered
        unit_price: Unit price in cents

    Returns:
        quantity * unit_price

    Raises:
        OrderValidationError: If quantity is not positive or price is negative
    """
    if quantity <= 0:
        raise OrderValidationError(
            "Line quantity must be positive",
            quantity=quantity,
        )
    if unit_price < 0:
        raise OrderValidationError(
            "Unit price cannot be negative",
            unit_price=unit_price,
        )
    return quantity * unit_price


def calculate_tax(subtotal: int, tax_rate_basis_points: int) -> int:
    """
    Calculate tax on a subtotal, rounded half-up to the cent.

    Args:
        subtotal: Subtotal in cents
        tax_rate_basis_points: Tax rate (1000 = 10%)

    Returns:
        Tax amount in cents
    """
    tax = Decimal(subtotal) * Decimal(tax_rate_basis_points) / BASIS_POINTS
    return int(tax.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def calculate_order_totals(
    lines: Iterable[PricedLine], tax_rate_basis_points: int
) -> OrderTotals:
    """
    Calculate subtotal, tax and total for a set of lines.

    Args:
        lines: Objects exposing quantity and unit_price
        tax_rate_basis_points: Tax rate (1000 = 10%)

    Returns:
        OrderTotals with total = subtotal + tax
    """
    subtotal = sum(
        calculate_line_subtotal(line.quantity, line.unit_price) for line in lines
    )
    tax_amount = calculate_tax(subtotal, tax_rate_basis_points)
    return OrderTotals(
        subtotal=subtotal,
        tax_amount=tax_amount,
        total_amount=subtotal + tax_amount,
    )


def apply_totals(order, tax_rate_basis_points: int) -> OrderTotals:
    """
    Recompute line subtotals and order totals in place.

    Args:
        order: Order with loaded line_items
        tax_rate_basis_points: Tax rate (1000 = 10%)

    Returns:
        The totals written onto the order
    """
    for item in order.line_items:
        item.subtotal = calculate_line_subtotal(item.quantity, item.unit_price)
    totals = calculate_order_totals(order.line_items, tax_rate_basis_points)
    order.subtotal = totals.subtotal
    order.tax_amount = totals.tax_amount
    order.total_amount = totals.total_amount
    return totals
