"""
Route sequencing service.

Recomputes a delivery date's routes: partitions routable orders by area,
optimizes the areas concurrently under a timeout, numbers the results in one
sequential pass and persists the routes and per-order sequences. Also
serves the packing and delivery views, recomputing first when the stored
routes are out of date. An area the provider could not optimize is stored
as a failure marker until its orders change or a forced recompute retries it.

A recompute is its own unit of work. The read phase commits before any
provider is called so no database transaction stays open across network
calls, and the write phase only touches orders that are still routable.
"""

import asyncio
import uuid
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import AsyncIterator, Optional, Sequence
from zoneinfo import ZoneInfo

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment_engine.core.actor import Actor
from fulfillment_engine.core.config import Settings, get_settings
from fulfillment_engine.core.exceptions import RouteProviderUnavailable
from fulfillment_engine.core.logging import get_logger, log_performance
from fulfillment_engine.database.base import utc_now
from fulfillment_engine.database.models.order import Order
from fulfillment_engine.database.models.route import DeliveryArea, RouteOptimization
from fulfillment_engine.services.orders.enums import ROUTABLE_STATUSES
from fulfillment_engine.services.orders.repository import OrderRepository
from fulfillment_engine.services.routing.provider import (
    Coordinate,
    OptimizedRoute,
    RouteOptimizationProvider,
    RouteStop,
    get_route_provider,
)
from fulfillment_engine.services.routing.sequencing import (
    SequenceAssignment,
    assign_sequences,
    estimate_arrivals,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class AreaFailure:
    area: str
    reason: str


def stored_failures(routes: Sequence[RouteOptimization]) -> list[AreaFailure]:
    """Area failures recorded by the last run, from its marker rows."""
    return [
        AreaFailure(area=route.area_tag, reason=route.failure_reason)
        for route in routes
        if route.failed
    ]


@dataclass
class RouteRecomputeResult:
    """
    Outcome of a recompute.

    Attributes:
        delivery_date: Date recomputed
        routes: Stored routes after the run
        assignments: Sequences written, in delivery order
        succeeded_areas: Areas that received a route
        failed_areas: Areas whose provider call failed, with reasons
        skipped_orders: Routable orders without coordinates or area tag
        recomputed: False when nothing was stale and the run was skipped
    """

    delivery_date: date
    routes: list[RouteOptimization] = field(default_factory=list)
    assignments: list[SequenceAssignment] = field(default_factory=list)
    succeeded_areas: list[str] = field(default_factory=list)
    failed_areas: list[AreaFailure] = field(default_factory=list)
    skipped_orders: list[uuid.UUID] = field(default_factory=list)
    recomputed: bool = True

    @property
    def partial_failure(self) -> bool:
        return bool(self.failed_areas)


@dataclass
class RouteView:
    """Orders for a date in packing or delivery order."""

    delivery_date: date
    orders: list[Order]
    loading: bool = False
    result: Optional[RouteRecomputeResult] = None
    failed_areas: list[AreaFailure] = field(default_factory=list)


class RecomputeRegistry:
    """In-process registry of recomputes in flight, one lock per date."""

    def __init__(self) -> None:
        self._locks: dict[date, asyncio.Lock] = defaultdict(asyncio.Lock)

    def in_flight(self, delivery_date: date) -> bool:
        return self._locks[delivery_date].locked()

    @asynccontextmanager
    async def track(self, delivery_date: date) -> AsyncIterator[None]:
        async with self._locks[delivery_date]:
            yield


recompute_registry = RecomputeRegistry()


class RouteSequencingService:
    """
    Computes and serves delivery and packing sequences for a date.

    Args:
        session: Async database session
        provider: Route optimization provider, configured one by default
        settings: Application settings
        registry: In-flight recompute registry
    """

    def __init__(
        self,
        session: AsyncSession,
        provider: Optional[RouteOptimizationProvider] = None,
        settings: Optional[Settings] = None,
        registry: Optional[RecomputeRegistry] = None,
    ):
        self.session = session
        self.settings = settings or get_settings()
        self.provider = provider or get_route_provider(self.settings)
        self.registry = registry or recompute_registry
        self.repository = OrderRepository(session)

    @property
    def depot(self) -> Coordinate:
        return Coordinate(self.settings.depot_latitude, self.settings.depot_longitude)

    # ========================================================================
    # Recompute
    # ========================================================================

    async def needs_recompute(self, delivery_date: date) -> bool:
        """
        Check whether the stored routes for a date are out of date.

        Stale when any route is flagged, or when the number of routable
        orders differs from the number the last run attempted. An area whose
        provider call failed keeps a marker row counting its orders, so it is
        not retried on read until its order set changes or a forced
        recompute runs.
        """
        routes = await self.repository.get_routes(delivery_date)
        if any(route.needs_reoptimization for route in routes):
            return True
        routable = await self.repository.count_routable_orders(delivery_date)
        routed = sum(route.order_count for route in routes)
        return routable != routed

    async def recompute(
        self, delivery_date: date, actor: Actor, force: bool = False
    ) -> RouteRecomputeResult:
        """
        Recompute routes and sequences for a date.

        Args:
            delivery_date: Date to recompute
            actor: Caller identity, recorded on the routes
            force: Recompute even when nothing is stale

        Returns:
            RouteRecomputeResult; area failures are reported, not raised
        """
        async with self.registry.track(delivery_date):
            if not force and not await self.needs_recompute(delivery_date):
                stored = list(await self.repository.get_routes(delivery_date))
                await self.session.commit()
                routes = [route for route in stored if not route.failed]
                return RouteRecomputeResult(
                    delivery_date=delivery_date,
                    routes=routes,
                    succeeded_areas=[route.area_tag for route in routes],
                    failed_areas=stored_failures(stored),
                    recomputed=False,
                )

            with log_performance(
                logger,
                "route_recompute",
                delivery_date=delivery_date.isoformat(),
                force=force,
            ):
                return await self._recompute(delivery_date, actor)

    async def _recompute(self, delivery_date: date, actor: Actor) -> RouteRecomputeResult:
        orders = await self.repository.list_orders_for_date(delivery_date)
        stops_by_area: dict[DeliveryArea, list[RouteStop]] = defaultdict(list)
        order_lookup: dict[uuid.UUID, Order] = {}
        result = RouteRecomputeResult(delivery_date=delivery_date)

        for order in orders:
            if not order.has_coordinates:
                result.skipped_orders.append(order.id)
                continue
            area = DeliveryArea.from_string(order.area_tag)
            stops_by_area[area].append(
                RouteStop(order_id=order.id, latitude=order.latitude, longitude=order.longitude)
            )
            order_lookup[order.id] = order

        # No transaction stays open across provider calls
        await self.session.commit()

        areas = [area for area in DeliveryArea.processing_order() if stops_by_area.get(area)]
        outcomes = await asyncio.gather(
            *(self._optimize_area(area, stops_by_area[area]) for area in areas)
        )

        optimized: dict[DeliveryArea, OptimizedRoute] = {}
        for area, outcome in zip(areas, outcomes):
            if isinstance(outcome, AreaFailure):
                result.failed_areas.append(outcome)
            else:
                optimized[area] = outcome
                result.succeeded_areas.append(area.value)

        result.assignments = assign_sequences(
            {area: [stop.order_id for stop in route.stops] for area, route in optimized.items()}
        )
        failed_stops = {
            failure.area: len(stops_by_area[DeliveryArea(failure.area)])
            for failure in result.failed_areas
        }
        result.routes = await self._persist(
            delivery_date,
            actor,
            optimized,
            result.failed_areas,
            failed_stops,
            order_lookup,
            result.assignments,
        )
        await self.session.commit()

        logger.info(
            "Routes recomputed",
            delivery_date=delivery_date.isoformat(),
            sequenced_orders=len(result.assignments),
            succeeded_areas=result.succeeded_areas,
            failed_areas=[failure.area for failure in result.failed_areas],
            skipped_orders=len(result.skipped_orders),
        )
        return result

    async def _optimize_area(
        self, area: DeliveryArea, stops: Sequence[RouteStop]
    ) -> "OptimizedRoute | AreaFailure":
        try:
            with log_performance(
                logger,
                "route_provider_call",
                provider=self.provider.name,
                area=area.value,
                stops=len(stops),
            ):
                return await asyncio.wait_for(
                    self.provider.optimize(area.value, self.depot, stops),
                    timeout=self.settings.route_provider_timeout_seconds,
                )
        except RouteProviderUnavailable as e:
            logger.warning("Route provider failed", area=area.value, reason=e.reason)
            return AreaFailure(area=area.value, reason=e.reason)
        except asyncio.TimeoutError:
            reason = (
                f"timed out after {self.settings.route_provider_timeout_seconds}s"
            )
            logger.warning("Route provider timed out", area=area.value, reason=reason)
            return AreaFailure(area=area.value, reason=reason)

    async def _persist(
        self,
        delivery_date: date,
        actor: Actor,
        optimized: dict[DeliveryArea, OptimizedRoute],
        failures: list[AreaFailure],
        failed_stops: dict[str, int],
        order_lookup: dict[uuid.UUID, Order],
        assignments: list[SequenceAssignment],
    ) -> list[RouteOptimization]:
        # Clear every routable order first; failed and skipped ones stay cleared
        await self.session.execute(
            update(Order)
            .where(
                Order.delivery_date == delivery_date,
                Order.status.in_(list(ROUTABLE_STATUSES)),
            )
            .values(
                delivery_sequence=None,
                packing_sequence=None,
                route_id=None,
                estimated_arrival=None,
            )
            .execution_options(synchronize_session=False)
        )

        existing = {
            route.area_tag: route for route in await self.repository.get_routes(delivery_date)
        }
        sequence_of = {a.order_id: a for a in assignments}
        start = datetime.combine(
            delivery_date,
            self.settings.route_start_time,
            tzinfo=ZoneInfo(self.settings.timezone),
        ).astimezone(timezone.utc)
        now = utc_now()
        failure_of = {failure.area: failure for failure in failures}
        routes = []

        for area in DeliveryArea.processing_order():
            route = existing.get(area.value)
            plan = optimized.get(area)
            failure = failure_of.get(area.value)
            if failure is not None:
                # Marker row: the attempt is recorded so reads do not retry it
                if route is None:
                    route = RouteOptimization(delivery_date=delivery_date, area_tag=area.value)
                    self.session.add(route)
                route.waypoints = []
                route.order_count = failed_stops[area.value]
                route.total_distance = 0.0
                route.total_duration = 0.0
                route.route_geometry = None
                route.needs_reoptimization = False
                route.optimized_at = now
                route.optimized_by = actor.actor_id
                route.failure_reason = failure.reason
                continue
            if plan is None:
                if route is not None:
                    await self.session.delete(route)
                continue

            arrivals = estimate_arrivals(
                start,
                [leg.duration for leg in plan.legs],
                self.settings.route_stop_service_seconds,
            )
            waypoints = []
            for stop_index, (stop, leg, arrival) in enumerate(
                zip(plan.stops, plan.legs, arrivals), start=1
            ):
                order = order_lookup[stop.order_id]
                waypoints.append(
                    {
                        "order_id": str(stop.order_id),
                        "order_number": order.order_number,
                        "latitude": stop.latitude,
                        "longitude": stop.longitude,
                        "sequence": sequence_of[stop.order_id].delivery_sequence,
                        "area_stop": stop_index,
                        "estimated_arrival": arrival.isoformat(),
                        "distance_from_previous": leg.distance,
                        "duration_from_previous": leg.duration,
                    }
                )

            if route is None:
                route = RouteOptimization(delivery_date=delivery_date, area_tag=area.value)
                self.session.add(route)
            route.waypoints = waypoints
            route.order_count = len(waypoints)
            route.total_distance = plan.total_distance
            route.total_duration = plan.total_duration
            route.route_geometry = plan.geometry_json
            route.needs_reoptimization = False
            route.optimized_at = now
            route.optimized_by = actor.actor_id
            route.failure_reason = None
            await self.session.flush()
            routes.append(route)

            for stop, arrival in zip(plan.stops, arrivals):
                assignment = sequence_of[stop.order_id]
                await self.session.execute(
                    update(Order)
                    .where(
                        Order.id == stop.order_id,
                        Order.status.in_(list(ROUTABLE_STATUSES)),
                    )
                    .values(
                        delivery_sequence=assignment.delivery_sequence,
                        packing_sequence=assignment.packing_sequence,
                        route_id=route.id,
                        estimated_arrival=arrival,
                    )
                    .execution_options(synchronize_session=False)
                )

        await self.session.flush()
        return routes

    # ========================================================================
    # Views
    # ========================================================================

    async def packing_view(self, delivery_date: date, actor: Actor) -> RouteView:
        """Orders for a date in van-loading order, recomputing if stale."""
        return await self._view(delivery_date, actor, "packing_sequence")

    async def delivery_view(self, delivery_date: date, actor: Actor) -> RouteView:
        """Orders for a date in delivery order, recomputing if stale."""
        return await self._view(delivery_date, actor, "delivery_sequence")

    async def _view(self, delivery_date: date, actor: Actor, sequence_field: str) -> RouteView:
        result = None
        loading = self.registry.in_flight(delivery_date)
        if not loading and await self.needs_recompute(delivery_date):
            result = await self.recompute(delivery_date, actor, force=True)

        if result is not None:
            failed_areas = result.failed_areas
        else:
            failed_areas = stored_failures(await self.repository.get_routes(delivery_date))

        orders = list(await self.repository.list_orders_for_date(delivery_date))
        orders.sort(
            key=lambda o: (
                getattr(o, sequence_field) is None,
                getattr(o, sequence_field) or 0,
                o.order_number,
            )
        )
        return RouteView(
            delivery_date=delivery_date,
            orders=orders,
            loading=loading,
            result=result,
            failed_areas=failed_areas,
        )
