"""
Tests for sequence arithmetic and the offline nearest-neighbour provider.
"""

from datetime import datetime, timedelta, timezone

import pytest

from fulfillment_engine.database.models.route import DeliveryArea
from fulfillment_engine.services.routing.provider import (
    Coordinate,
    NearestNeighbourProvider,
    RouteStop,
    haversine_meters,
)
from fulfillment_engine.services.routing.sequencing import (
    assign_sequences,
    estimate_arrivals,
    packing_sequence_for,
)


# ============================================================================
# Packing Sequence
# ============================================================================


class TestPackingSequence:
    @pytest.mark.parametrize(
        "delivery,total,expected",
        [(1, 8, 8), (8, 8, 1), (5, 8, 4), (1, 1, 1)],
    )
    def test_reverses_delivery_order(self, delivery, total, expected):
        assert packing_sequence_for(delivery, total) == expected

    @pytest.mark.parametrize("delivery,total", [(0, 5), (6, 5), (1, 0)])
    def test_rejects_out_of_range(self, delivery, total):
        with pytest.raises(ValueError):
            packing_sequence_for(delivery, total)


# ============================================================================
# Cross-area Numbering
# ============================================================================


class TestAssignSequences:
    def test_areas_numbered_north_east_south_west(self):
        assignments = assign_sequences(
            {
                DeliveryArea.WEST: ["w1"],
                DeliveryArea.EAST: ["e1", "e2", "e3"],
                DeliveryArea.NORTH: ["n1", "n2", "n3", "n4", "n5"],
            }
        )

        assert [a.order_id for a in assignments] == [
            "n1", "n2", "n3", "n4", "n5", "e1", "e2", "e3", "w1",
        ]
        assert [a.delivery_sequence for a in assignments] == list(range(1, 10))
        assert [a.packing_sequence for a in assignments] == list(range(9, 0, -1))

    def test_sequences_are_a_permutation(self):
        assignments = assign_sequences(
            {DeliveryArea.NORTH: ["a", "b"], DeliveryArea.SOUTH: ["c"]}
        )

        total = len(assignments)
        assert sorted(a.delivery_sequence for a in assignments) == [1, 2, 3]
        for a in assignments:
            assert a.packing_sequence == total + 1 - a.delivery_sequence

    def test_missing_areas_are_skipped(self):
        assignments = assign_sequences({DeliveryArea.SOUTH: ["s1"]})

        assert len(assignments) == 1
        assert assignments[0].area == DeliveryArea.SOUTH
        assert assignments[0].delivery_sequence == 1
        assert assignments[0].packing_sequence == 1

    def test_empty(self):
        assert assign_sequences({}) == []


# ============================================================================
# Arrival Estimates
# ============================================================================


class TestEstimateArrivals:
    def test_accumulates_travel_and_service_time(self):
        start = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

        arrivals = estimate_arrivals(start, [600, 300, 120], 300)

        assert arrivals == [
            start + timedelta(seconds=600),
            start + timedelta(seconds=600 + 300 + 300),
            start + timedelta(seconds=600 + 300 + 300 + 300 + 120),
        ]

    def test_no_legs(self):
        assert estimate_arrivals(datetime.now(timezone.utc), [], 300) == []


# ============================================================================
# Nearest Neighbour Provider
# ============================================================================


class TestNearestNeighbourProvider:
    @pytest.mark.asyncio
    async def test_visits_closest_stop_first(self):
        depot = Coordinate(0.0, 0.0)
        stops = [
            RouteStop(order_id="far", latitude=0.03, longitude=0.0),
            RouteStop(order_id="near", latitude=0.01, longitude=0.0),
            RouteStop(order_id="middle", latitude=0.02, longitude=0.0),
        ]

        route = await NearestNeighbourProvider().optimize("north", depot, stops)

        assert [s.order_id for s in route.stops] == ["near", "middle", "far"]
        assert len(route.legs) == 3
        assert route.total_distance == pytest.approx(
            haversine_meters(depot, Coordinate(0.03, 0.0))
        )
        assert route.geometry["coordinates"][0] == [0.0, 0.0]

    @pytest.mark.asyncio
    async def test_duration_follows_average_speed(self):
        depot = Coordinate(0.0, 0.0)
        stops = [RouteStop(order_id="only", latitude=0.1, longitude=0.0)]

        route = await NearestNeighbourProvider(average_speed_kmh=36.0).optimize(
            "east", depot, stops
        )

        assert route.total_duration == pytest.approx(route.total_distance / 10.0)

    def test_haversine_one_degree_of_latitude(self):
        distance = haversine_meters(Coordinate(0.0, 0.0), Coordinate(1.0, 0.0))

        assert distance == pytest.approx(111_195, rel=1e-3)
