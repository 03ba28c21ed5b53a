"""
Tests for integer-cent order pricing.
"""

from dataclasses import dataclass

import pytest

from fulfillment_engine.core.exceptions import OrderValidationError
from fulfillment_engine.services.orders.pricing import (
    apply_totals,
    calculate_line_subtotal,
    calculate_order_totals,
    calculate_tax,
)


@dataclass
class Line:
    quantity: int
    unit_price: int
    subtotal: int = 0


@dataclass
class PricedOrder:
    line_items: list
    subtotal: int = 0
    tax_amount: int = 0
    total_amount: int = 0


# ============================================================================
# Line Subtotals
# ============================================================================


class TestLineSubtotal:
    def test_multiplies_quantity_and_price(self):
        assert calculate_line_subtotal(3, 250) == 750

    def test_zero_price_is_allowed(self):
        assert calculate_line_subtotal(4, 0) == 0

    @pytest.mark.parametrize("quantity", [0, -1])
    def test_rejects_non_positive_quantity(self, quantity):
        with pytest.raises(OrderValidationError):
            calculate_line_subtotal(quantity, 100)

    def test_rejects_negative_price(self):
        with pytest.raises(OrderValidationError):
            calculate_line_subtotal(1, -5)


# ============================================================================
# Tax
# ============================================================================


class TestTax:
    @pytest.mark.parametrize(
        "subtotal,expected",
        [
            (2143, 214),
            (2145, 215),
            (2144, 214),
            (5, 1),
            (4, 0),
            (0, 0),
        ],
    )
    def test_ten_percent_rounds_half_up(self, subtotal, expected):
        assert calculate_tax(subtotal, 1000) == expected

    def test_zero_rate(self):
        assert calculate_tax(9999, 0) == 0


# ============================================================================
# Order Totals
# ============================================================================


class TestOrderTotals:
    def test_two_line_order(self):
        totals = calculate_order_totals([Line(3, 250), Line(7, 199)], 1000)

        assert totals.subtotal == 2143
        assert totals.tax_amount == 214
        assert totals.total_amount == 2357

    def test_total_is_subtotal_plus_tax(self):
        totals = calculate_order_totals([Line(11, 333), Line(1, 1)], 1000)

        assert totals.total_amount == totals.subtotal + totals.tax_amount

    def test_apply_totals_writes_lines_and_order(self):
        order = PricedOrder(line_items=[Line(3, 250), Line(7, 199)])

        totals = apply_totals(order, 1000)

        assert [line.subtotal for line in order.line_items] == [750, 1393]
        assert order.subtotal == 2143
        assert order.tax_amount == 214
        assert order.total_amount == 2357
        assert totals.total_amount == order.total_amount

    def test_apply_totals_after_quantity_change(self):
        order = PricedOrder(line_items=[Line(20, 100)])
        apply_totals(order, 1000)

        order.line_items[0].quantity = 12
        apply_totals(order, 1000)

        assert order.subtotal == 1200
        assert order.tax_amount == 120
        assert order.total_amount == 1320
