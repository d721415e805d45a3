"""Assemble map-ready stops, routes, trips and live vehicles from GTFS sources.

Static sources are projected and joined once per short TTL window; vehicle
positions are fetched on every call so cached map data never freezes them.
"""

import asyncio
import logging
import math
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, Iterable

import pandas as pd

from tripfinder.csv_table import get_float, get_int, get_optional_int, get_str
from tripfinder.gtfs_cache import FeedCache, FeedTables, FetchError
from tripfinder.gtfs_realtime import RealtimeFetchError
from tripfinder.gtfs_sources import UnknownSourceError
from tripfinder.models import (
    Bounds,
    MapData,
    MappedRoute,
    MappedStop,
    MappedTrip,
    MappedVehicle,
    MapStats,
    SourceAttempt,
    VehicleSnapshot,
)

logger = logging.getLogger("tripfinder.map_data")

MAP_DATA_TTL = 5 * 60  # seconds

# Kraków city centre
DEFAULT_BOUNDS = Bounds(north=50.1, south=50.0, east=20.1, west=19.9)

REALTIME_SOURCE_ID = "realtime-krakow"

ROUTE_TYPE_NAMES = {
    0: "Tram",
    1: "Subway",
    2: "Rail",
    3: "Bus",
    4: "Ferry",
    5: "Cable Tram",
    6: "Aerial Lift",
    7: "Funicular",
    11: "Trolleybus",
    12: "Monorail",
}

VehicleFetcher = Callable[[], Awaitable[list[VehicleSnapshot]]]


def namespaced(source_id: str, raw_id: str) -> str:
    return f"{source_id}-{raw_id}"


def route_type_name(route_type: int) -> str:
    return ROUTE_TYPE_NAMES.get(route_type, f"Type {route_type}")


def parse_bounds(value: str) -> Bounds:
    """Parse "north,south,east,west"."""
    parts = [p.strip() for p in value.split(",")]
    if len(parts) != 4:
        raise ValueError(f"Expected 4 comma-separated numbers, got {value!r}")
    north, south, east, west = (float(p) for p in parts)
    return Bounds(north=north, south=south, east=east, west=west)


def calculate_bounds(stops: list[MappedStop]) -> Bounds:
    if not stops:
        return DEFAULT_BOUNDS
    lats = [s.lat for s in stops]
    lngs = [s.lng for s in stops]
    return Bounds(north=max(lats), south=min(lats), east=max(lngs), west=min(lngs))


# --- Projections ---


def map_stops(stops: pd.DataFrame, source_id: str) -> list[MappedStop]:
    mapped = []
    for row in stops.to_dict(orient="records"):
        lat = get_float(row, "stop_lat")
        lng = get_float(row, "stop_lon")
        if math.isnan(lat) or math.isnan(lng):
            continue
        mapped.append(MappedStop(
            id=namespaced(source_id, get_str(row, "stop_id")),
            name=get_str(row, "stop_name", "Unnamed Stop"),
            lat=lat,
            lng=lng,
            code=get_str(row, "stop_code") or None,
            zone=get_str(row, "zone_id") or None,
            source_id=source_id,
        ))
    return mapped


def map_routes(routes: pd.DataFrame, source_id: str) -> list[MappedRoute]:
    mapped = []
    for row in routes.to_dict(orient="records"):
        color = get_str(row, "route_color")
        text_color = get_str(row, "route_text_color")
        mapped.append(MappedRoute(
            id=namespaced(source_id, get_str(row, "route_id")),
            short_name=get_str(row, "route_short_name"),
            long_name=get_str(row, "route_long_name", "Unnamed Route"),
            type=get_int(row, "route_type", 3),
            color=f"#{color}" if color else None,
            text_color=f"#{text_color}" if text_color else None,
            agency=get_str(row, "agency_id") or None,
            source_id=source_id,
        ))
    return mapped


def map_trips(trips: pd.DataFrame, source_id: str) -> list[MappedTrip]:
    return [
        MappedTrip(
            id=namespaced(source_id, get_str(row, "trip_id")),
            route_id=namespaced(source_id, get_str(row, "route_id")),
            service_id=get_str(row, "service_id"),
            headsign=get_str(row, "trip_headsign") or None,
            direction=get_optional_int(row, "direction_id"),
            block_id=get_str(row, "block_id") or None,
            source_id=source_id,
        )
        for row in trips.to_dict(orient="records")
    ]


def map_vehicles(vehicles: Iterable[VehicleSnapshot]) -> list[MappedVehicle]:
    mapped = []
    for v in vehicles:
        if not v.latitude or not v.longitude:
            continue
        mapped.append(MappedVehicle(
            id=v.vehicle_id or f"vehicle-{int(time.time() * 1000)}",
            route_id=v.route_id,
            trip_id=v.trip_id,
            lat=v.latitude,
            lng=v.longitude,
            bearing=v.bearing,
            speed=v.speed,
            timestamp=v.timestamp,
            label=v.label,
            source_id=REALTIME_SOURCE_ID,
        ))
    return mapped


def route_stop_pairs(tables: FeedTables) -> pd.Series:
    """Group stop ids by route id: one merge over stop_times instead of a per-row lookup."""
    stop_times, trips = tables.stop_times, tables.trips
    if stop_times.empty or trips.empty:
        return pd.Series(dtype=object)
    if not {"trip_id", "stop_id"} <= set(stop_times.columns) or not {"trip_id", "route_id"} <= set(trips.columns):
        return pd.Series(dtype=object)

    trip_routes = trips[["trip_id", "route_id"]].drop_duplicates("trip_id")
    pairs = (
        stop_times[["trip_id", "stop_id"]]
        .merge(trip_routes, on="trip_id", how="inner")[["route_id", "stop_id"]]
        .drop_duplicates()
    )
    return pairs.groupby("route_id", sort=False)["stop_id"].agg(list)


def connect_routes_to_stops(
    routes: list[MappedRoute], stops: list[MappedStop], tables: FeedTables, source_id: str
) -> None:
    route_map = {r.id: r for r in routes}
    stop_map = {s.id: s for s in stops}

    for raw_route_id, raw_stop_ids in route_stop_pairs(tables).items():
        route = route_map.get(namespaced(source_id, raw_route_id))
        if route is None:
            continue
        for raw_stop_id in raw_stop_ids:
            stop = stop_map.get(namespaced(source_id, raw_stop_id))
            if stop is None:
                continue
            route.stops.append(stop.id)
            stop.routes.append(route.id)


# --- Summaries ---


def route_type_summary(routes: list[MappedRoute]) -> list[dict]:
    counts: dict[int, int] = {}
    for route in routes:
        counts[route.type] = counts.get(route.type, 0) + 1
    return [
        {"type": t, "typeName": route_type_name(t), "count": n}
        for t, n in counts.items()
    ]


def source_breakdown(data: MapData) -> list[dict]:
    source_ids: dict[str, None] = {}
    for item in [*data.stops, *data.routes, *data.vehicles]:
        source_ids.setdefault(item.source_id, None)
    return [
        {
            "sourceId": sid,
            "stops": sum(1 for s in data.stops if s.source_id == sid),
            "routes": sum(1 for r in data.routes if r.source_id == sid),
            "vehicles": sum(1 for v in data.vehicles if v.source_id == sid),
        }
        for sid in source_ids
    ]


def stops_by_route(data: MapData, route_id: str) -> list[MappedStop]:
    route = next((r for r in data.routes if r.id == route_id), None)
    if route is None:
        return []
    members = set(route.stops)
    return [s for s in data.stops if s.id in members]


def routes_by_type(data: MapData, route_type: int) -> list[MappedRoute]:
    return [r for r in data.routes if r.type == route_type]


def stops_in_bounds(stops: Iterable[MappedStop], bounds: Bounds) -> list[MappedStop]:
    return [s for s in stops if bounds.contains(s.lat, s.lng)]


def vehicles_by_route(data: MapData, route_id: str) -> list[MappedVehicle]:
    """Vehicles on a route; accepts namespaced ("krakow1-R1") or raw feed route ids."""
    raw_id = route_id
    for source_id in {r.source_id for r in data.routes}:
        prefix = f"{source_id}-"
        if route_id.startswith(prefix):
            raw_id = route_id[len(prefix):]
            break
    return [v for v in data.vehicles if v.route_id in (route_id, raw_id)]


def search_stops(stops: list[MappedStop], query: str, limit: int = 10) -> list[MappedStop]:
    """Search stops by name or code; starts-with matches rank before contains."""
    query = query.strip().lower()
    if len(query) < 2:
        return []

    starts_with: list[MappedStop] = []
    contains: list[MappedStop] = []
    for stop in stops:
        name = stop.name.lower()
        if name.startswith(query):
            starts_with.append(stop)
        elif query in name or (stop.code and query in stop.code.lower()):
            contains.append(stop)

    # Platforms of one stop share a name
    seen: set[str] = set()
    results: list[MappedStop] = []
    for stop in starts_with + contains:
        key = stop.name.lower()
        if key in seen:
            continue
        seen.add(key)
        results.append(stop)
        if len(results) >= limit:
            break
    return results


class MapDataAssembler:
    def __init__(
        self,
        feed_cache: FeedCache,
        vehicle_fetcher: VehicleFetcher,
        ttl_seconds: float = MAP_DATA_TTL,
        clock: Callable[[], float] = time.time,
    ):
        self._feed_cache = feed_cache
        self._fetch_vehicles = vehicle_fetcher
        self._ttl = ttl_seconds
        self._clock = clock
        self._cache: dict[tuple[str, ...], tuple[float, MapData]] = {}
        self._inflight: dict[tuple[str, ...], asyncio.Task] = {}

    async def get_map_data(self, source_ids: list[str]) -> MapData:
        key = tuple(source_ids)
        static, vehicles = await asyncio.gather(self._static_data(key), self._live_vehicles())
        data = static.model_copy(update={
            "vehicles": vehicles,
            "stats": static.stats.model_copy(update={"total_vehicles": len(vehicles)}),
        })
        return data

    async def _static_data(self, key: tuple[str, ...]) -> MapData:
        cached = self._cache.get(key)
        if cached is not None and self._clock() - cached[0] < self._ttl:
            return cached[1]

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.create_task(self._build(key))
            self._inflight[key] = task
            task.add_done_callback(lambda t, k=key: self._release(k, t))
        return await asyncio.shield(task)

    def _release(self, key: tuple[str, ...], task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]

    async def _live_vehicles(self) -> list[MappedVehicle]:
        try:
            snapshots = await self._fetch_vehicles()
        except RealtimeFetchError as e:
            logger.error(f"Failed to fetch vehicle positions: {e}")
            return []
        return map_vehicles(snapshots)

    async def _build(self, source_ids: tuple[str, ...]) -> MapData:
        logger.info(f"Building map data from GTFS sources: {list(source_ids)}")
        results = await asyncio.gather(
            *(self._feed_cache.get_data(sid) for sid in source_ids), return_exceptions=True
        )

        stops: list[MappedStop] = []
        routes: list[MappedRoute] = []
        trips: list[MappedTrip] = []
        attempts: list[SourceAttempt] = []
        for source_id, result in zip(source_ids, results):
            if isinstance(result, (FetchError, UnknownSourceError)):
                logger.error(f"Failed to process GTFS data for source {source_id}: {result}")
                attempts.append(SourceAttempt(source_id=source_id, ok=False, error=str(result)))
                continue
            if isinstance(result, BaseException):
                raise result

            source_stops = map_stops(result.stops, source_id)
            source_routes = map_routes(result.routes, source_id)
            connect_routes_to_stops(source_routes, source_stops, result, source_id)
            stops.extend(source_stops)
            routes.extend(source_routes)
            trips.extend(map_trips(result.trips, source_id))
            attempts.append(SourceAttempt(source_id=source_id, ok=True))

        data = MapData(
            stops=stops,
            routes=routes,
            trips=trips,
            bounds=calculate_bounds(stops),
            stats=MapStats(
                total_stops=len(stops),
                total_routes=len(routes),
                source_count=len(source_ids),
                last_updated=datetime.now(timezone.utc),
                failed_sources=[a.source_id for a in attempts if not a.ok],
            ),
        )
        self._cache[source_ids] = (self._clock(), data)
        logger.info(f"Map data built: {len(stops)} stops, {len(routes)} routes, {len(trips)} trips")
        return data

    def clear(self) -> None:
        self._cache.clear()
        logger.info("Map data cache cleared")
