"""Flag resolved routes that pass close to reported delays.

Distances are planar, in degrees. At Kraków's latitude the ~300 m threshold
is a rough approximation; no geodesic correction is applied.
"""

import math
from typing import Iterable, Optional

from tripfinder.models import Collision, Coordinate, DelayReport, RouteConnection

COLLISION_THRESHOLD = 0.003  # degrees, ~300m


def distance_to_segment(point: Coordinate, start: Coordinate, end: Coordinate) -> float:
    """Distance from point to the segment start-end, clamped to the endpoints."""
    a = point.lat - start.lat
    b = point.lng - start.lng
    c = end.lat - start.lat
    d = end.lng - start.lng

    length_sq = c * c + d * d
    t = (a * c + b * d) / length_sq if length_sq != 0 else -1.0

    if t < 0:
        nearest_lat, nearest_lng = start.lat, start.lng
    elif t > 1:
        nearest_lat, nearest_lng = end.lat, end.lng
    else:
        nearest_lat, nearest_lng = start.lat + t * c, start.lng + t * d

    return math.hypot(point.lat - nearest_lat, point.lng - nearest_lng)


def _route_segments(route: RouteConnection) -> list[tuple[Coordinate, Coordinate]]:
    if len(route.shape_points) > 1:
        coords = [Coordinate(lat=p.lat, lng=p.lng) for p in route.shape_points]
        return list(zip(coords, coords[1:]))
    # No usable shape: straight line between the two stops
    if route.from_stop is not None and route.to_stop is not None:
        return [(route.from_stop, route.to_stop)]
    return []


def first_hit(
    location: Coordinate, route: RouteConnection, threshold: float = COLLISION_THRESHOLD
) -> Optional[float]:
    """Distance to the first segment within threshold, or None."""
    for start, end in _route_segments(route):
        distance = distance_to_segment(location, start, end)
        if distance < threshold:
            return distance
    return None


def check_collisions(
    delays: Iterable[DelayReport],
    routes: Iterable[RouteConnection],
    threshold: float = COLLISION_THRESHOLD,
) -> list[Collision]:
    routes = list(routes)
    collisions = []
    for delay in delays:
        for route in routes:
            distance = first_hit(delay.location, route, threshold)
            if distance is not None:
                collisions.append(Collision(delay=delay, route=route, distance=distance))
    return collisions
