"""Find single-trip connections between two stops across every GTFS source.

A connection exists when one trip calls at the origin before the destination.
Id lookups aggregate every source; name lookups stop at the first source that
yields a connection, since resolving names against each source is the
expensive part.
"""

import asyncio
import logging
import math
from typing import Optional

import pandas as pd

from tripfinder.csv_table import get_float, get_str
from tripfinder.gtfs_cache import FeedCache, FeedTables, FetchError
from tripfinder.models import Coordinate, RouteConnection, ShapePoint, SourceAttempt
from tripfinder.stop_matching import match_stop_ids

logger = logging.getLogger("tripfinder.route_resolver")

MAX_TRIPS_PER_SOURCE = 3


def _has_columns(frame: pd.DataFrame, *columns: str) -> bool:
    return not frame.empty and set(columns) <= set(frame.columns)


def sequential_trips(stop_times: pd.DataFrame, origin_ids: set[str], destination_ids: set[str]) -> pd.DataFrame:
    """Trips calling at an origin stop strictly before a destination stop.

    Returns one row per trip (trip_id, stop_id_from, stop_id_to) in stop_times order.
    """
    if not _has_columns(stop_times, "trip_id", "stop_id", "stop_sequence"):
        return pd.DataFrame(columns=["trip_id", "stop_id_from", "stop_id_to"])

    cols = ["trip_id", "stop_id", "stop_sequence"]
    first = stop_times.loc[stop_times["stop_id"].isin(origin_ids), cols]
    second = stop_times.loc[stop_times["stop_id"].isin(destination_ids), cols]
    if first.empty or second.empty:
        return pd.DataFrame(columns=["trip_id", "stop_id_from", "stop_id_to"])

    first = first.assign(seq=pd.to_numeric(first["stop_sequence"], errors="coerce").fillna(0))
    second = second.assign(seq=pd.to_numeric(second["stop_sequence"], errors="coerce").fillna(0))
    pairs = first.merge(second, on="trip_id", suffixes=("_from", "_to"))
    pairs = pairs[pairs["seq_from"] < pairs["seq_to"]]
    return pairs.drop_duplicates("trip_id")[["trip_id", "stop_id_from", "stop_id_to"]]


def shape_points(shapes: pd.DataFrame, shape_id: str) -> list[ShapePoint]:
    """Ordered points of one shape; missing, non-numeric and 0,0 sentinel points are dropped."""
    if not shape_id or not _has_columns(shapes, "shape_id", "shape_pt_lat", "shape_pt_lon"):
        return []

    rows = shapes[shapes["shape_id"] == shape_id]
    if rows.empty:
        return []

    seq = rows["shape_pt_sequence"] if "shape_pt_sequence" in rows.columns else pd.Series("0", index=rows.index)
    points = pd.DataFrame({
        "lat": pd.to_numeric(rows["shape_pt_lat"], errors="coerce"),
        "lng": pd.to_numeric(rows["shape_pt_lon"], errors="coerce"),
        "sequence": pd.to_numeric(seq, errors="coerce").fillna(0).astype(int),
    })
    points = points.dropna(subset=["lat", "lng"])
    points = points[(points["lat"] != 0) & (points["lng"] != 0)]
    points = points.sort_values("sequence", kind="stable")
    return [
        ShapePoint(lat=lat, lng=lng, sequence=sequence)
        for lat, lng, sequence in zip(points["lat"], points["lng"], points["sequence"])
    ]


def _first_row(frame: pd.DataFrame, column: str, value: str) -> Optional[pd.Series]:
    if column not in frame.columns:
        return None
    match = frame[frame[column] == value]
    if match.empty:
        return None
    return match.iloc[0]


def _stop_coordinate(stops: pd.DataFrame, stop_id: str) -> Optional[Coordinate]:
    row = _first_row(stops, "stop_id", stop_id)
    if row is None:
        return None
    lat, lng = get_float(row, "stop_lat"), get_float(row, "stop_lon")
    if math.isnan(lat) or math.isnan(lng):
        return None
    return Coordinate(lat=lat, lng=lng)


def find_connections(
    tables: FeedTables, source_id: str, origin_ids: set[str], destination_ids: set[str]
) -> list[RouteConnection]:
    """Connections within one source, at most one per route."""
    trips = sequential_trips(tables.stop_times, origin_ids, destination_ids)
    if trips.empty:
        logger.debug(f"{source_id}: no valid sequential trips")
        return []
    logger.info(f"{source_id}: found {len(trips)} valid sequential trips")

    connections: list[RouteConnection] = []
    seen_routes: set[str] = set()
    for trip_id, from_stop_id, to_stop_id in trips.head(MAX_TRIPS_PER_SOURCE).itertuples(index=False):
        trip = _first_row(tables.trips, "trip_id", trip_id)
        if trip is None:
            logger.debug(f"{source_id}: trip {trip_id} missing from trips.txt")
            continue
        route_id = get_str(trip, "route_id")
        route = _first_row(tables.routes, "route_id", route_id)
        if route is None:
            logger.debug(f"{source_id}: route info not found for route_id {route_id}")
            continue
        if route_id in seen_routes:
            continue
        seen_routes.add(route_id)

        shape_id = get_str(trip, "shape_id")
        points = shape_points(tables.shapes, shape_id)
        connections.append(RouteConnection(
            route_id=route_id,
            route_short_name=get_str(route, "route_short_name"),
            route_long_name=get_str(route, "route_long_name"),
            source=source_id,
            trip_id=trip_id,
            shape_id=shape_id,
            shape_points=points,
            headsign=get_str(trip, "trip_headsign") or get_str(route, "route_long_name"),
            from_stop_id=from_stop_id,
            to_stop_id=to_stop_id,
            from_stop=_stop_coordinate(tables.stops, from_stop_id),
            to_stop=_stop_coordinate(tables.stops, to_stop_id),
        ))
        logger.info(
            f"{source_id}: route {get_str(route, 'route_short_name')} ({route_id}) "
            f"via trip {trip_id}, {len(points)} shape points"
        )
    return connections


def _knows_stops(tables: FeedTables, *stop_ids: str) -> bool:
    if not _has_columns(tables.stops, "stop_id"):
        return False
    known = set(tables.stops["stop_id"])
    return all(stop_id in known for stop_id in stop_ids)


class RouteResolver:
    def __init__(self, feed_cache: FeedCache, source_ids: Optional[list[str]] = None):
        self._feed_cache = feed_cache
        self._source_ids = list(source_ids) if source_ids is not None else list(feed_cache.sources)

    @property
    def source_ids(self) -> list[str]:
        return list(self._source_ids)

    async def _load_all(self) -> list[tuple[str, Optional[FeedTables], SourceAttempt]]:
        results = await asyncio.gather(
            *(self._feed_cache.get_data(sid) for sid in self._source_ids), return_exceptions=True
        )
        loaded = []
        for source_id, result in zip(self._source_ids, results):
            if isinstance(result, FetchError):
                logger.warning(f"Skipping source {source_id} for route lookup: {result}")
                loaded.append((source_id, None, SourceAttempt(source_id=source_id, ok=False, error=str(result))))
            elif isinstance(result, BaseException):
                raise result
            else:
                loaded.append((source_id, result, SourceAttempt(source_id=source_id, ok=True)))
        return loaded

    @staticmethod
    def _log_attempts(operation: str, attempts: list[SourceAttempt], found: int) -> None:
        failed = [a for a in attempts if not a.ok]
        if failed:
            details = "; ".join(f"{a.source_id}: {a.error}" for a in failed)
            logger.warning(f"{operation}: {len(failed)}/{len(attempts)} sources failed ({details})")
        logger.info(f"{operation}: {found} route connections from {len(attempts) - len(failed)} sources")

    async def _resolve_ids(self, stop_id1: str, stop_id2: str) -> tuple[list[RouteConnection], bool]:
        connections: list[RouteConnection] = []
        attempts: list[SourceAttempt] = []
        known = False
        for source_id, tables, attempt in await self._load_all():
            attempts.append(attempt)
            if tables is None:
                continue
            known = known or _knows_stops(tables, stop_id1, stop_id2)
            # Same route under two sources is reported twice
            connections.extend(find_connections(tables, source_id, {stop_id1}, {stop_id2}))
        self._log_attempts(f"find_routes_by_stop_ids({stop_id1}, {stop_id2})", attempts, len(connections))
        return connections, known

    async def find_routes_by_stop_ids(self, stop_id1: str, stop_id2: str) -> list[RouteConnection]:
        """Every route, per source, with a trip from stop_id1 to stop_id2."""
        connections, _ = await self._resolve_ids(stop_id1, stop_id2)
        return connections

    async def find_routes_by_stop_names(self, name1: str, name2: str) -> list[RouteConnection]:
        """First connection found between stops matching the two names.

        Sources are tried in registry order and the search stops at the first
        source with a connection, so at most one result is returned.
        """
        operation = f"find_routes_by_stop_names({name1!r}, {name2!r})"
        attempts: list[SourceAttempt] = []
        for source_id in self._source_ids:
            try:
                tables = await self._feed_cache.get_data(source_id)
            except FetchError as e:
                logger.warning(f"Skipping source {source_id} for route lookup: {e}")
                attempts.append(SourceAttempt(source_id=source_id, ok=False, error=str(e)))
                continue
            attempts.append(SourceAttempt(source_id=source_id, ok=True))

            group1 = match_stop_ids(tables.stops, name1)
            group2 = match_stop_ids(tables.stops, name2)
            logger.debug(f"{source_id}: {len(group1)} stops match {name1!r}, {len(group2)} match {name2!r}")
            if not group1 or not group2:
                continue

            connections = find_connections(tables, source_id, group1, group2)
            if connections:
                self._log_attempts(operation, attempts, 1)
                return connections[:1]

        self._log_attempts(operation, attempts, 0)
        return []

    async def find_routes(self, origin: str, destination: str) -> list[RouteConnection]:
        """Resolve by stop id, falling back to names when the inputs are not known ids."""
        connections, known = await self._resolve_ids(origin, destination)
        if connections or known:
            return connections
        return await self.find_routes_by_stop_names(origin, destination)
