"""
Order input validation: delivery calendar and line items.
"""

import uuid
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Any, Iterable, Optional
from zoneinfo import ZoneInfo

from fulfillment_engine.core.config import Settings, get_settings
from fulfillment_engine.core.exceptions import (
    BelowMinimumOrder,
    InvalidDeliveryDate,
    OrderValidationError,
)
from fulfillment_engine.database.models.route import DeliveryArea


def business_now(settings: Optional[Settings] = None) -> datetime:
    """Current wall-clock time in the business timezone."""
    settings = settings or get_settings()
    return datetime.now(ZoneInfo(settings.timezone))


def business_today(settings: Optional[Settings] = None) -> date:
    """Today's date in the business timezone."""
    return business_now(settings).date()


@dataclass(frozen=True)
class CutoffInfo:
    """Where the current time stands against an area's order cutoff."""

    cutoff_time: time
    is_after_cutoff: bool
    earliest_delivery_date: date
    timezone: str


def cutoff_info(
    settings: Optional[Settings] = None,
    area_tag: Optional[str] = None,
    now: Optional[datetime] = None,
) -> CutoffInfo:
    """
    Work out the earliest date a new order can be delivered.

    Tomorrow, or the day after tomorrow once today's cutoff for the area has
    passed, moved forward past any non-delivery weekday.

    Args:
        settings: Application settings
        area_tag: Delivery area, for per-area cutoff overrides
        now: Reference time, defaults to now in the business timezone
    """
    settings = settings or get_settings()
    now = _as_business_time(now or business_now(settings), settings)
    cutoff = settings.cutoff_for_area(area_tag)

    is_after_cutoff = now.time() > cutoff
    candidate = now.date() + timedelta(days=2 if is_after_cutoff else 1)
    while candidate.weekday() in settings.non_delivery_weekdays:
        candidate += timedelta(days=1)
    return CutoffInfo(
        cutoff_time=cutoff,
        is_after_cutoff=is_after_cutoff,
        earliest_delivery_date=candidate,
        timezone=settings.timezone,
    )


def minimum_delivery_date(
    settings: Optional[Settings] = None,
    area_tag: Optional[str] = None,
    now: Optional[datetime] = None,
) -> date:
    """Earliest date a new order can be delivered."""
    return cutoff_info(settings, area_tag, now).earliest_delivery_date


def validate_delivery_date(
    delivery_date: date,
    settings: Optional[Settings] = None,
    area_tag: Optional[str] = None,
    now: Optional[datetime] = None,
) -> None:
    """
    Check that a delivery date can be serviced.

    Args:
        delivery_date: Requested delivery date
        settings: Application settings
        area_tag: Delivery area, for per-area cutoff overrides
        now: Reference time, defaults to now in the business timezone

    Raises:
        InvalidDeliveryDate: If the date is on a non-delivery day, in the past,
            or earlier than the cutoff allows
    """
    settings = settings or get_settings()
    now = _as_business_time(now or business_now(settings), settings)

    if delivery_date.weekday() in settings.non_delivery_weekdays:
        raise InvalidDeliveryDate(
            delivery_date, f"no deliveries on {delivery_date.strftime('%A')}"
        )
    if delivery_date < now.date():
        raise InvalidDeliveryDate(delivery_date, "date is in the past")

    earliest = minimum_delivery_date(settings, area_tag, now)
    if delivery_date < earliest:
        cutoff = settings.cutoff_for_area(area_tag)
        raise InvalidDeliveryDate(
            delivery_date,
            f"earliest available delivery date is {earliest.isoformat()}",
            earliest_delivery_date=earliest,
            cutoff_time=cutoff.strftime("%H:%M"),
            area_tag=area_tag,
        )


def validate_minimum_order(total_amount: int, settings: Optional[Settings] = None) -> None:
    """
    Raises:
        BelowMinimumOrder: If a minimum is configured and the total is under it
    """
    settings = settings or get_settings()
    minimum = settings.minimum_order_amount
    if minimum and total_amount < minimum:
        raise BelowMinimumOrder(total_amount, minimum)


def _as_business_time(moment: datetime, settings: Settings) -> datetime:
    tz = ZoneInfo(settings.timezone)
    if moment.tzinfo is None:
        return moment.replace(tzinfo=tz)
    return moment.astimezone(tz)


def validate_order_lines(lines: Iterable[Any]) -> None:
    """
    Validate requested order lines.

    Each line exposes ``product_id`` and ``quantity``.

    Raises:
        OrderValidationError: If there are no lines or a quantity is not positive
    """
    lines = list(lines)
    if not lines:
        raise OrderValidationError("Order must have at least one line item")
    for index, line in enumerate(lines, start=1):
        if not isinstance(line.product_id, uuid.UUID):
            raise OrderValidationError(
                "Line product id must be a UUID", line_number=index
            )
        if line.quantity <= 0:
            raise OrderValidationError(
                "Line quantity must be positive",
                line_number=index,
                quantity=line.quantity,
            )


def validate_delivery_address(address: dict[str, Any]) -> dict[str, Any]:
    """
    Normalize a delivery address and its routing fields.

    ``area_tag``, ``latitude`` and ``longitude`` are optional, but when an
    area tag is present it must name one of the fixed delivery areas.

    Returns:
        Address with a lower-cased area tag and float coordinates

    Raises:
        OrderValidationError: If the area tag or coordinates are invalid
    """
    if not address.get("street"):
        raise OrderValidationError("Delivery address requires a street")

    normalized = dict(address)
    area_tag = normalized.get("area_tag")
    if area_tag is not None:
        try:
            normalized["area_tag"] = DeliveryArea.from_string(str(area_tag)).value
        except ValueError as e:
            raise OrderValidationError(str(e), area_tag=area_tag) from e

    for field, bound in (("latitude", 90), ("longitude", 180)):
        value = normalized.get(field)
        if value is None:
            continue
        try:
            value = float(value)
        except (TypeError, ValueError) as e:
            raise OrderValidationError(
                f"Delivery {field} must be a number", **{field: value}
            ) from e
        if not -bound <= value <= bound:
            raise OrderValidationError(
                f"Delivery {field} out of range", **{field: value}
            )
        normalized[field] = value

    return normalized
