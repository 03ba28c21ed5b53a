"""
Tests for the delivery calendar, the order cutoff and the minimum order amount.
"""

from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest
from pydantic import ValidationError
from sqlalchemy import update

from fulfillment_engine.core.config import Settings
from fulfillment_engine.core.exceptions import BelowMinimumOrder, InvalidDeliveryDate
from fulfillment_engine.database.models import Order
from fulfillment_engine.services.orders.enums import OrderStatus
from fulfillment_engine.services.orders.validation import (
    business_today,
    minimum_delivery_date,
    validate_delivery_date,
    validate_minimum_order,
)

SYDNEY = ZoneInfo("Australia/Sydney")

# Tuesday 3 March 2026; the following Sunday is 8 March
TUESDAY = date(2026, 3, 3)
WEDNESDAY = date(2026, 3, 4)
THURSDAY = date(2026, 3, 5)
MONDAY = date(2026, 3, 9)


def at(day: date, hour: int, minute: int = 0) -> datetime:
    return datetime.combine(day, time(hour, minute), tzinfo=SYDNEY)


# ============================================================================
# Minimum Delivery Date
# ============================================================================


class TestMinimumDeliveryDate:
    def test_before_cutoff_is_tomorrow(self, settings):
        assert minimum_delivery_date(settings, now=at(TUESDAY, 10)) == WEDNESDAY

    def test_at_cutoff_is_still_tomorrow(self, settings):
        assert minimum_delivery_date(settings, now=at(TUESDAY, 14)) == WEDNESDAY

    def test_after_cutoff_is_day_after_tomorrow(self, settings):
        assert minimum_delivery_date(settings, now=at(TUESDAY, 14, 1)) == THURSDAY

    def test_rolls_past_sunday(self, settings):
        friday_evening = at(date(2026, 3, 6), 15)
        saturday_morning = at(date(2026, 3, 7), 9)

        assert minimum_delivery_date(settings, now=friday_evening) == MONDAY
        assert minimum_delivery_date(settings, now=saturday_morning) == MONDAY

    def test_area_cutoff_override(self, settings):
        settings = settings.model_copy(update={"cutoff_by_area": {"north": time(16, 0)}})
        afternoon = at(TUESDAY, 15)

        assert minimum_delivery_date(settings, "north", now=afternoon) == WEDNESDAY
        assert minimum_delivery_date(settings, "east", now=afternoon) == THURSDAY

    def test_reference_time_is_read_in_business_timezone(self, settings):
        # 03:30 UTC is 14:30 in Sydney during daylight saving
        utc_afternoon = datetime(2026, 3, 3, 3, 30, tzinfo=timezone.utc)

        assert minimum_delivery_date(settings, now=utc_afternoon) == THURSDAY

    def test_naive_reference_time_is_business_time(self, settings):
        assert minimum_delivery_date(settings, now=datetime(2026, 3, 3, 15)) == THURSDAY


# ============================================================================
# Delivery Date Validation
# ============================================================================


class TestValidateDeliveryDate:
    def test_same_day_is_rejected(self, settings):
        with pytest.raises(InvalidDeliveryDate):
            validate_delivery_date(TUESDAY, settings, now=at(TUESDAY, 8))

    def test_next_day_before_cutoff_is_accepted(self, settings):
        validate_delivery_date(WEDNESDAY, settings, now=at(TUESDAY, 13, 59))

    def test_next_day_after_cutoff_is_rejected(self, settings):
        with pytest.raises(InvalidDeliveryDate) as exc_info:
            validate_delivery_date(WEDNESDAY, settings, "north", now=at(TUESDAY, 16))

        context = exc_info.value.context
        assert context["earliest_delivery_date"] == THURSDAY
        assert context["cutoff_time"] == "14:00"
        assert context["area_tag"] == "north"

    def test_day_after_tomorrow_after_cutoff_is_accepted(self, settings):
        validate_delivery_date(THURSDAY, settings, now=at(TUESDAY, 16))

    def test_past_date_is_rejected(self, settings):
        with pytest.raises(InvalidDeliveryDate, match="in the past"):
            validate_delivery_date(date(2026, 3, 2), settings, now=at(TUESDAY, 8))

    def test_sunday_is_rejected(self, settings):
        with pytest.raises(InvalidDeliveryDate, match="Sunday"):
            validate_delivery_date(date(2026, 3, 15), settings, now=at(TUESDAY, 8))

    def test_configured_non_delivery_days(self, settings):
        settings = settings.model_copy(update={"non_delivery_weekdays": [5, 6]})

        with pytest.raises(InvalidDeliveryDate, match="Saturday"):
            validate_delivery_date(date(2026, 3, 14), settings, now=at(TUESDAY, 8))
        assert minimum_delivery_date(settings, now=at(date(2026, 3, 6), 15)) == MONDAY


# ============================================================================
# Minimum Order Amount
# ============================================================================


class TestMinimumOrder:
    def test_disabled_by_default(self, settings):
        validate_minimum_order(1, settings)

    def test_total_below_minimum(self, settings):
        settings = settings.model_copy(update={"minimum_order_amount": 5000})

        with pytest.raises(BelowMinimumOrder) as exc_info:
            validate_minimum_order(4999, settings)

        assert exc_info.value.context == {
            "order_total": 4999,
            "minimum_order_amount": 5000,
        }

    def test_total_at_minimum(self, settings):
        settings = settings.model_copy(update={"minimum_order_amount": 5000})

        validate_minimum_order(5000, settings)


# ============================================================================
# Settings
# ============================================================================


class TestCutoffSettings:
    def test_area_names_are_normalized(self):
        settings = Settings(cutoff_by_area={"North ": "15:30"})

        assert settings.cutoff_by_area == {"north": time(15, 30)}
        assert settings.cutoff_for_area("NORTH") == time(15, 30)
        assert settings.cutoff_for_area("west") == time(14, 0)
        assert settings.cutoff_for_area(None) == time(14, 0)

    def test_unknown_area_is_rejected(self):
        with pytest.raises(ValidationError):
            Settings(cutoff_by_area={"central": "15:00"})


# ============================================================================
# Order Creation and Confirmation
# ============================================================================


class TestOrderCalendar:
    @pytest.mark.asyncio
    async def test_same_day_order_is_rejected(self, harness, customer):
        beans = await harness.add_product("BEANS", stock=10)

        with pytest.raises(InvalidDeliveryDate):
            await harness.create_order(
                customer, [(beans, 1)], delivery_date=business_today(harness.settings)
            )

    @pytest.mark.asyncio
    async def test_next_day_order_after_cutoff_is_rejected(self, harness, customer):
        beans = await harness.add_product("BEANS", stock=10)
        harness.settings = harness.settings.model_copy(
            update={"order_cutoff_time": time(0, 0)}
        )
        tomorrow = business_today(harness.settings) + timedelta(days=1)

        with pytest.raises(InvalidDeliveryDate):
            await harness.create_order(customer, [(beans, 1)], delivery_date=tomorrow)

    @pytest.mark.asyncio
    async def test_confirmation_rechecks_the_date(self, harness, customer):
        beans = await harness.add_product("BEANS", stock=10)
        order = (await harness.create_order(customer, [(beans, 1)])).order
        async with harness.session_factory() as session:
            await session.execute(
                update(Order)
                .where(Order.id == order.id)
                .values(delivery_date=business_today(harness.settings))
            )
            await session.commit()

        with pytest.raises(InvalidDeliveryDate):
            await harness.transition(order, OrderStatus.CONFIRMED)

        current = await harness.reload(order.id)
        assert current.status == OrderStatus.PENDING
        assert current.version == order.version
        assert await harness.stock(beans.id) == 10

    @pytest.mark.asyncio
    async def test_order_below_minimum_is_rejected(self, harness, customer, sink):
        beans = await harness.add_product("BEANS", stock=10, unit_price=500)
        harness.settings = harness.settings.model_copy(
            update={"minimum_order_amount": 10000}
        )

        with pytest.raises(BelowMinimumOrder):
            await harness.create_order(customer, [(beans, 2)])

        assert "order.created" not in sink.event_types()

    @pytest.mark.asyncio
    async def test_order_at_minimum_is_accepted(self, harness, customer):
        beans = await harness.add_product("BEANS", stock=100, unit_price=500)
        harness.settings = harness.settings.model_copy(
            update={"minimum_order_amount": 5500}
        )

        # 10 x 500 plus 10% tax
        result = await harness.create_order(customer, [(beans, 10)])

        assert result.order.total_amount == 5500
