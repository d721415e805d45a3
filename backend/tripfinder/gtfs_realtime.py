import logging
from typing import Iterable, Optional

import httpx
from google.protobuf.message import DecodeError as ProtobufDecodeError
from google.transit import gtfs_realtime_pb2

from tripfinder.models import RouteConnection, VehicleSnapshot

logger = logging.getLogger("tripfinder.realtime")

ZTP_VEHICLES_URL = "https://gtfs.ztp.krakow.pl/VehiclePositions.pb"


class RealtimeFetchError(Exception):
    """The vehicle position feed could not be fetched or decoded."""

    def __init__(self, message: str, status_code: int = 502):
        self.status_code = status_code
        super().__init__(message)


def decode_vehicle_positions(payload: bytes) -> list[VehicleSnapshot]:
    """Decode a GTFS-RT FeedMessage into one snapshot per vehicle entity."""
    feed = gtfs_realtime_pb2.FeedMessage()
    try:
        feed.ParseFromString(payload)
    except ProtobufDecodeError as e:
        raise RealtimeFetchError(f"Invalid GTFS-RT payload: {e}") from e

    vehicles = []
    for entity in feed.entity:
        if not entity.HasField("vehicle"):
            continue
        vp = entity.vehicle
        vehicles.append(VehicleSnapshot(
            vehicle_id=str(vp.vehicle.id) if vp.vehicle.id else entity.id,
            label=vp.vehicle.label or None,
            trip_id=vp.trip.trip_id or None,
            route_id=vp.trip.route_id or None,
            latitude=vp.position.latitude,
            longitude=vp.position.longitude,
            bearing=vp.position.bearing if vp.position.HasField("bearing") else None,
            speed=vp.position.speed if vp.position.HasField("speed") else None,
            timestamp=vp.timestamp if vp.timestamp else None,
        ))
    return vehicles


async def fetch_vehicle_positions(
    http_client: httpx.AsyncClient,
    url: str = ZTP_VEHICLES_URL,
    api_key: Optional[str] = None,
) -> list[VehicleSnapshot]:
    """Fetch the live vehicle feed. Always hits the upstream; nothing is cached."""
    headers = {"x-api-key": api_key} if api_key else {}
    try:
        resp = await http_client.get(url, headers=headers)
    except httpx.HTTPError as e:
        logger.error(f"Vehicle positions request failed: {e}")
        raise RealtimeFetchError(f"Vehicle positions request failed: {e}") from e

    if not resp.is_success:
        logger.error(f"{url}: {resp.status_code} {resp.reason_phrase}")
        raise RealtimeFetchError(
            f"Vehicle positions feed returned {resp.status_code}", status_code=resp.status_code
        )

    vehicles = decode_vehicle_positions(resp.content)
    logger.info(f"Fetched {len(vehicles)} vehicle positions")
    return vehicles


def vehicles_on_routes(
    vehicles: Iterable[VehicleSnapshot], connections: Iterable[RouteConnection]
) -> list[VehicleSnapshot]:
    """Keep the vehicles currently running on any of the resolved routes."""
    route_ids = {c.route_id for c in connections}
    return [v for v in vehicles if v.route_id and v.route_id in route_ids]
