"""
Route optimization providers.

A provider receives the depot and one area's stops and returns the stops in
visiting order with per-leg distances and durations. Providers raise
``RouteProviderUnavailable`` for anything that prevents an ordering; the
caller turns that into an area-scoped partial failure.
"""

import json
import math
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, Sequence

import httpx

from fulfillment_engine.core.config import Settings, get_settings
from fulfillment_engine.core.exceptions import RouteProviderUnavailable
from fulfillment_engine.core.logging import get_logger

logger = get_logger(__name__)

MAPBOX_MAX_COORDINATES = 12
EARTH_RADIUS_METERS = 6_371_000.0


@dataclass(frozen=True)
class Coordinate:
    latitude: float
    longitude: float


@dataclass(frozen=True)
class RouteStop:
    """One order to visit."""

    order_id: Any
    latitude: float
    longitude: float

    @property
    def coordinate(self) -> Coordinate:
        return Coordinate(self.latitude, self.longitude)


@dataclass(frozen=True)
class RouteLeg:
    """Travel from the previous stop (or the depot) to a stop."""

    distance: float
    duration: float


@dataclass
class OptimizedRoute:
    """
    Provider result for one area.

    Attributes:
        stops: Stops in visiting order
        legs: One leg per stop, leg ``i`` ending at ``stops[i]``
        total_distance: Route length in meters
        total_duration: Driving time in seconds
        geometry: GeoJSON LineString of the path, when the provider has one
    """

    stops: list[RouteStop]
    legs: list[RouteLeg]
    total_distance: float
    total_duration: float
    geometry: Optional[dict[str, Any]] = field(default=None)

    @property
    def geometry_json(self) -> Optional[str]:
        return json.dumps(self.geometry) if self.geometry else None


class RouteOptimizationProvider(Protocol):
    """Opaque stop-ordering dependency."""

    name: str

    async def optimize(
        self, area: str, depot: Coordinate, stops: Sequence[RouteStop]
    ) -> OptimizedRoute:
        ...


def haversine_meters(a: Coordinate, b: Coordinate) -> float:
    """Great-circle distance between two coordinates in meters."""
    lat1, lat2 = math.radians(a.latitude), math.radians(b.latitude)
    dlat = lat2 - lat1
    dlon = math.radians(b.longitude - a.longitude)
    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS_METERS * math.asin(math.sqrt(h))


class NearestNeighbourProvider:
    """
    Offline greedy heuristic: always drive to the closest unvisited stop.

    Durations assume a constant average speed. Used in development and
    tests, and anywhere no routing service is configured.
    """

    name = "nearest_neighbour"

    def __init__(self, average_speed_kmh: float = 40.0):
        self.meters_per_second = average_speed_kmh * 1000 / 3600

    async def optimize(
        self, area: str, depot: Coordinate, stops: Sequence[RouteStop]
    ) -> OptimizedRoute:
        remaining = list(stops)
        ordered: list[RouteStop] = []
        legs: list[RouteLeg] = []
        position = depot

        while remaining:
            # Ties break on input order so results are deterministic
            nearest = min(
                remaining, key=lambda stop: haversine_meters(position, stop.coordinate)
            )
            distance = haversine_meters(position, nearest.coordinate)
            legs.append(RouteLeg(distance=distance, duration=distance / self.meters_per_second))
            ordered.append(nearest)
            remaining.remove(nearest)
            position = nearest.coordinate

        path = [depot] + [stop.coordinate for stop in ordered]
        return OptimizedRoute(
            stops=ordered,
            legs=legs,
            total_distance=sum(leg.distance for leg in legs),
            total_duration=sum(leg.duration for leg in legs),
            geometry={
                "type": "LineString",
                "coordinates": [[c.longitude, c.latitude] for c in path],
            },
        )


class MapboxOptimizationProvider:
    """
    Mapbox Optimization API v1 client.

    The depot is always the first coordinate and the route does not return
    to it; Mapbox only accepts that combination with the last coordinate
    fixed as the destination.
    """

    name = "mapbox"

    def __init__(
        self,
        access_token: Optional[str] = None,
        base_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        profile: str = "mapbox/driving",
    ):
        settings = get_settings()
        self.access_token = access_token or settings.mapbox_access_token
        self.base_url = (base_url or settings.mapbox_base_url).rstrip("/")
        self.profile = profile
        self._client = client

    async def optimize(
        self, area: str, depot: Coordinate, stops: Sequence[RouteStop]
    ) -> OptimizedRoute:
        """
        Order one area's stops through the Optimization API.

        Args:
            area: Area being optimized, for error reporting
            depot: Route start
            stops: Stops to order

        Returns:
            OptimizedRoute in Mapbox trip order

        Raises:
            RouteProviderUnavailable: On HTTP, transport or response errors,
                or when the area has more stops than the API accepts
        """
        coordinates = [depot] + [stop.coordinate for stop in stops]
        if len(coordinates) > MAPBOX_MAX_COORDINATES:
            raise RouteProviderUnavailable(
                area,
                f"{len(stops)} stops exceed the Mapbox limit of "
                f"{MAPBOX_MAX_COORDINATES - 1} stops per route",
            )

        path = ";".join(f"{c.longitude},{c.latitude}" for c in coordinates)
        url = f"{self.base_url}/optimized-trips/v1/{self.profile}/{path}"
        params = {
            "access_token": self.access_token,
            "source": "first",
            "destination": "last",
            "roundtrip": "false",
            "geometries": "geojson",
            "overview": "full",
        }

        try:
            if self._client is not None:
                response = await self._client.get(url, params=params)
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.get(url, params=params)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            raise RouteProviderUnavailable(
                area,
                f"Mapbox API error ({e.response.status_code})",
                status_code=e.response.status_code,
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise RouteProviderUnavailable(area, f"Mapbox request failed: {e}") from e

        return self._parse_response(area, stops, data)

    @staticmethod
    def _parse_response(
        area: str, stops: Sequence[RouteStop], data: dict[str, Any]
    ) -> OptimizedRoute:
        if data.get("code") != "Ok":
            raise RouteProviderUnavailable(
                area, f"Mapbox optimization failed: {data.get('code')}"
            )
        trips = data.get("trips") or []
        waypoints = data.get("waypoints") or []
        if not trips or len(waypoints) != len(stops) + 1:
            raise RouteProviderUnavailable(area, "Mapbox returned no usable trip")

        trip = trips[0]
        # waypoints follow input order; waypoint_index is the position in the trip
        trip_order = sorted(
            range(len(waypoints)), key=lambda i: waypoints[i]["waypoint_index"]
        )
        if trip_order[0] != 0:
            raise RouteProviderUnavailable(area, "Mapbox trip does not start at the depot")

        legs = [
            RouteLeg(distance=float(leg["distance"]), duration=float(leg["duration"]))
            for leg in trip.get("legs", [])
        ]
        if len(legs) != len(stops):
            raise RouteProviderUnavailable(area, "Mapbox trip legs do not match stops")

        return OptimizedRoute(
            stops=[stops[index - 1] for index in trip_order[1:]],
            legs=legs,
            total_distance=float(trip["distance"]),
            total_duration=float(trip["duration"]),
            geometry=trip.get("geometry"),
        )


def get_route_provider(settings: Optional[Settings] = None) -> RouteOptimizationProvider:
    """
    Build the provider selected by configuration.

    Returns:
        MapboxOptimizationProvider or NearestNeighbourProvider
    """
    settings = settings or get_settings()
    if settings.route_provider == "mapbox":
        return MapboxOptimizationProvider(
            access_token=settings.mapbox_access_token,
            base_url=settings.mapbox_base_url,
        )
    return NearestNeighbourProvider()
