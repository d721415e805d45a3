import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query
from fastapi.responses import JSONResponse

from tripfinder.collisions import check_collisions
from tripfinder.delay_store import DelayLogError
from tripfinder.gtfs_cache import FetchError, resolve_table_name
from tripfinder.gtfs_realtime import RealtimeFetchError, vehicles_on_routes
from tripfinder.gtfs_sources import UnknownSourceError, list_sources
from tripfinder.map_data import (
    parse_bounds,
    route_type_summary,
    routes_by_type,
    search_stops,
    source_breakdown,
    stops_by_route,
    stops_in_bounds,
    vehicles_by_route,
)
from tripfinder.models import DelayReportRequest

logger = logging.getLogger("tripfinder.routes")

router = APIRouter()

DEFAULT_SOURCE = "krakow1"


def _get_state():
    from tripfinder.main import app_state
    return app_state


def _service(name: str):
    service = _get_state().get(name)
    if service is None:
        raise HTTPException(status_code=503, detail=f"{name} not initialized")
    return service


def _error(message: str, status_code: int, **extra) -> JSONResponse:
    return JSONResponse({"error": message, **extra}, status_code=status_code)


def _split_sources(value: Optional[str]) -> list[str]:
    if not value:
        return list(_service("feed_cache").sources)
    return [s.strip() for s in value.split(",") if s.strip()]


@router.get("/health")
async def health():
    return {"status": "ok", "service": "Tripfinder API"}


@router.get("/gtfsData")
async def gtfs_data(
    source: Optional[str] = Query(None, description="GTFS source id"),
    file: Optional[str] = Query(None, description="Table name, e.g. stops or stop_times"),
    action: Optional[str] = Query(None, description="sources | cache-info | clear-cache"),
):
    """Static GTFS data: a table's rows, a per-table summary, or cache management."""
    cache = _service("feed_cache")

    if action == "sources":
        return {"sources": list_sources(cache.sources)}
    if action == "cache-info":
        return cache.cache_info(source)
    if action == "clear-cache":
        cache.clear(source)
        _service("map_data").clear()
        target = f"source {source}" if source else "all sources"
        return {"success": True, "message": f"Cache cleared for {target}"}
    if action:
        return _error(f"Unknown action: {action}", 400)

    source_id = source or DEFAULT_SOURCE
    try:
        if file:
            table = resolve_table_name(file)
            if table is None:
                return _error(f"Unknown GTFS file: {file}", 400)
            tables = await cache.get_data(source_id)
            rows = tables.rows(table)
            return {"source": source_id, "file": table, "count": len(rows), "data": rows}
        return await cache.summary(source_id)
    except UnknownSourceError as e:
        return _error(str(e), 400)
    except FetchError as e:
        logger.error(f"gtfsData failed for {source_id}: {e}")
        return _error("Failed to fetch GTFS data", 502)


@router.get("/findRoute")
async def find_route(
    from_: Optional[str] = Query(None, alias="from"),
    to: Optional[str] = Query(None),
):
    """Lines connecting two stops (ids or names), each with its shape."""
    if not from_ or not to:
        return _error("Missing required parameters: from and to stop IDs", 400)

    resolver = _service("resolver")
    logger.info(f"Finding routes between stops: {from_} -> {to}")
    try:
        connections = await resolver.find_routes(from_, to)
    except Exception as e:
        logger.exception(f"findRoute failed for {from_} -> {to}")
        return _error("Internal server error", 500, details=str(e))

    return {
        "success": True,
        "data": [c.to_json() for c in connections],
        "count": len(connections),
        "from": from_,
        "to": to,
    }


@router.get("/findRoute/vehicles")
async def find_route_vehicles(
    from_: str = Query(..., alias="from"),
    to: str = Query(...),
):
    """Live vehicles currently running on the routes connecting two stops."""
    resolver = _service("resolver")
    fetch_vehicles = _service("vehicle_fetcher")

    try:
        connections = await resolver.find_routes(from_, to)
    except Exception as e:
        logger.exception(f"findRoute/vehicles failed for {from_} -> {to}")
        return _error("Internal server error", 500, details=str(e))
    if not connections:
        return {"vehicles": [], "routes": []}
    try:
        vehicles = await fetch_vehicles()
    except RealtimeFetchError as e:
        return _error("Failed to fetch GTFS data", e.status_code)

    return {
        "vehicles": [v.to_json() for v in vehicles_on_routes(vehicles, connections)],
        "routes": sorted({c.route_id for c in connections}),
    }


@router.get("/vehiclePositions")
async def vehicle_positions():
    """Decoded GTFS-RT vehicle positions, fetched live."""
    fetch_vehicles = _service("vehicle_fetcher")
    try:
        vehicles = await fetch_vehicles()
    except RealtimeFetchError as e:
        return _error("Failed to fetch GTFS data", e.status_code)
    return {"VehiclePositions": [v.to_json() for v in vehicles]}


@router.get("/mapData")
async def map_data(
    sources: str = Query(DEFAULT_SOURCE, description="Comma-separated source ids"),
    filter_: Optional[str] = Query(None, alias="filter", description="stops | routes | vehicles | summary"),
    bounds: Optional[str] = Query(None, description="north,south,east,west"),
    route_type: Optional[str] = Query(None, alias="routeType"),
    route_id: Optional[str] = Query(None, alias="routeId"),
):
    """Assembled map data, optionally narrowed to one slice."""
    assembler = _service("map_data")

    try:
        bounds_filter = parse_bounds(bounds) if bounds else None
        type_filter = int(route_type) if route_type else None
    except ValueError as e:
        return _error(f"Invalid map filter: {e}", 400)

    try:
        data = await assembler.get_map_data(_split_sources(sources))
    except Exception as e:
        logger.exception("Error processing map data")
        return _error(f"Failed to process map data: {e}", 500)

    if filter_ == "stops":
        stops = stops_by_route(data, route_id) if route_id else data.stops
        if bounds_filter is not None:
            stops = stops_in_bounds(stops, bounds_filter)
        return {
            "stops": [s.to_json() for s in stops],
            "bounds": data.bounds.model_dump(),
            "stats": {"totalStops": len(data.stops)},
        }
    if filter_ == "routes":
        routes = routes_by_type(data, type_filter) if type_filter is not None else data.routes
        return {
            "routes": [r.to_json() for r in routes],
            "bounds": data.bounds.model_dump(),
            "stats": {"totalRoutes": len(data.routes)},
        }
    if filter_ == "vehicles":
        vehicles = vehicles_by_route(data, route_id) if route_id else data.vehicles
        return {
            "vehicles": [v.to_json() for v in vehicles],
            "bounds": data.bounds.model_dump(),
            "stats": {"totalVehicles": len(data.vehicles)},
        }
    if filter_ == "summary":
        return {
            "stats": data.stats.to_json(),
            "bounds": data.bounds.model_dump(),
            "routeTypes": route_type_summary(data.routes),
            "sourceBreakdown": source_breakdown(data),
        }
    return data.to_json()


@router.get("/stops/search")
async def stops_search(
    query: str = Query(..., min_length=2),
    sources: Optional[str] = Query(None, description="Comma-separated source ids"),
    limit: int = Query(10, ge=1, le=50),
):
    """Search stops by name or code across the requested sources."""
    assembler = _service("map_data")
    data = await assembler.get_map_data(_split_sources(sources))
    return {"stops": [s.to_json() for s in search_stops(data.stops, query, limit)]}


@router.post("/delays")
async def submit_delay(payload: DelayReportRequest):
    """Append a delay report; id and timestamp are assigned here."""
    store = _service("delays")
    try:
        report = await store.append(payload.cause, payload.vehicle_number, payload.location)
    except (DelayLogError, OSError) as e:
        logger.error(f"Error writing delay report: {e}")
        return _error("Failed to save delay report", 500)
    return {"success": True, "id": report.id}


@router.get("/delays")
async def get_delays():
    store = _service("delays")
    delays = await store.list_reports()
    return {"delays": [d.to_json() for d in delays]}


@router.get("/delays/collisions")
async def delay_collisions(
    from_: str = Query(..., alias="from"),
    to: str = Query(...),
):
    """Reported delays lying on the routes that connect two stops."""
    store = _service("delays")
    resolver = _service("resolver")

    try:
        connections = await resolver.find_routes(from_, to)
    except Exception as e:
        logger.exception(f"Delay collision check failed for {from_} -> {to}")
        return _error("Internal server error", 500, details=str(e))
    delays = await store.list_reports()
    collisions = check_collisions(delays, connections)
    if collisions:
        logger.info(f"{len(collisions)} delay-route collisions for {from_} -> {to}")
    return {"collisions": [c.to_json() for c in collisions], "count": len(collisions)}
