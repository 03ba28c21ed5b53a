"""
Delivery and packing sequence arithmetic.

Pure functions over finalized orderings. Area results are numbered in one
pass, North then East, South and West, so delivery sequences are unique for
the whole date; packing sequences are the exact reverse so the van is
loaded last-delivered-first.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Iterable, Mapping, Sequence

from fulfillment_engine.database.models.route import DeliveryArea


@dataclass(frozen=True)
class SequenceAssignment:
    order_id: Any
    area: DeliveryArea
    delivery_sequence: int
    packing_sequence: int


def packing_sequence_for(delivery_sequence: int, total: int) -> int:
    """
    Reverse a delivery position into a van-loading position.

    Args:
        delivery_sequence: 1-based delivery position
        total: Number of sequenced orders for the date

    Returns:
        ``total + 1 - delivery_sequence``
    """
    if not 1 <= delivery_sequence <= total:
        raise ValueError(
            f"Delivery sequence {delivery_sequence} outside 1..{total}"
        )
    return total + 1 - delivery_sequence


def assign_sequences(
    ordered_by_area: Mapping[DeliveryArea, Sequence[Any]],
) -> list[SequenceAssignment]:
    """
    Number every order across areas and derive packing positions.

    Args:
        ordered_by_area: Order ids per area, each in visiting order.
            Areas without an entry (failed or empty) are skipped.

    Returns:
        Assignments in delivery order
    """
    ordering: list[tuple[Any, DeliveryArea]] = []
    for area in DeliveryArea.processing_order():
        for order_id in ordered_by_area.get(area, ()):
            ordering.append((order_id, area))

    total = len(ordering)
    return [
        SequenceAssignment(
            order_id=order_id,
            area=area,
            delivery_sequence=position,
            packing_sequence=packing_sequence_for(position, total),
        )
        for position, (order_id, area) in enumerate(ordering, start=1)
    ]


def estimate_arrivals(
    start: datetime, leg_durations: Iterable[float], stop_service_seconds: int
) -> list[datetime]:
    """
    Estimate arrival at each stop.

    Travel time accumulates leg by leg, with a fixed service time spent at
    every stop before driving on.

    Args:
        start: When the van leaves the depot
        leg_durations: Driving seconds for each leg, in visiting order
        stop_service_seconds: Time spent at each stop

    Returns:
        One arrival time per leg
    """
    arrivals = []
    current = start
    for duration in leg_durations:
        current = current + timedelta(seconds=duration)
        arrivals.append(current)
        current = current + timedelta(seconds=stop_service_seconds)
    return arrivals
