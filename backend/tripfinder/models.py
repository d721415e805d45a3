from __future__ import annotations

from datetime import datetime
from typing import Annotated, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ApiModel(BaseModel):
    """Base for records exchanged with the frontend (camelCase on the wire)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class Coordinate(BaseModel):
    lat: float
    lng: float


class Bounds(BaseModel):
    north: float
    south: float
    east: float
    west: float

    def contains(self, lat: float, lng: float) -> bool:
        return self.south <= lat <= self.north and self.west <= lng <= self.east


class ShapePoint(ApiModel):
    lat: float
    lng: float
    sequence: int


class RouteConnection(ApiModel):
    route_id: str
    route_short_name: str = ""
    route_long_name: str = ""
    source: str
    trip_id: str
    shape_id: str = ""
    shape_points: list[ShapePoint] = Field(default_factory=list)
    headsign: str = ""
    from_stop_id: str
    to_stop_id: str
    # Endpoint coordinates; used as a straight line when there is no shape
    from_stop: Optional[Coordinate] = None
    to_stop: Optional[Coordinate] = None


class SourceAttempt(ApiModel):
    source_id: str
    ok: bool
    error: Optional[str] = None


# --- Map data ---


class MappedStop(ApiModel):
    id: str
    name: str
    lat: float
    lng: float
    code: Optional[str] = None
    zone: Optional[str] = None
    routes: list[str] = Field(default_factory=list)
    source_id: str


class MappedRoute(ApiModel):
    id: str
    short_name: str = ""
    long_name: str = ""
    type: int = 3  # GTFS route_type, bus when unknown
    color: Optional[str] = None
    text_color: Optional[str] = None
    agency: Optional[str] = None
    stops: list[str] = Field(default_factory=list)
    source_id: str


class MappedTrip(ApiModel):
    id: str
    route_id: str
    service_id: str = ""
    headsign: Optional[str] = None
    direction: Optional[int] = None
    block_id: Optional[str] = None
    source_id: str


class MappedVehicle(ApiModel):
    id: str
    route_id: Optional[str] = None
    trip_id: Optional[str] = None
    lat: float
    lng: float
    bearing: Optional[float] = None
    speed: Optional[float] = None
    timestamp: Optional[int] = None
    label: Optional[str] = None
    source_id: str


class MapStats(ApiModel):
    total_stops: int = 0
    total_routes: int = 0
    total_vehicles: int = 0
    source_count: int = 0
    last_updated: datetime
    failed_sources: list[str] = Field(default_factory=list)


class MapData(ApiModel):
    stops: list[MappedStop] = Field(default_factory=list)
    routes: list[MappedRoute] = Field(default_factory=list)
    trips: list[MappedTrip] = Field(default_factory=list)
    vehicles: list[MappedVehicle] = Field(default_factory=list)
    bounds: Bounds
    stats: MapStats


# --- Real-time ---


class VehicleSnapshot(ApiModel):
    """One decoded GTFS-RT VehiclePosition entity."""

    vehicle_id: str
    label: Optional[str] = None
    trip_id: Optional[str] = None
    route_id: Optional[str] = None
    latitude: float
    longitude: float
    bearing: Optional[float] = None
    speed: Optional[float] = None
    timestamp: Optional[int] = None


# --- Delay reports ---


def _number_as_text(value):
    # Clients send vehicle numbers both as strings and as numbers
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    if value is None:
        return ""
    return value


Text = Annotated[str, BeforeValidator(_number_as_text)]


class DelayReportRequest(ApiModel):
    cause: str
    vehicle_number: Text = ""
    location: Coordinate


class DelayReport(ApiModel):
    id: Text
    cause: str
    vehicle_number: Text = ""
    location: Coordinate
    timestamp: str  # ISO-8601


class Collision(ApiModel):
    delay: DelayReport
    route: RouteConnection
    distance: float
