import asyncio
import io
import zipfile
from collections import Counter
from typing import Optional, Union

import httpx
import pytest

from tripfinder.gtfs_cache import FeedCache
from tripfinder.gtfs_sources import Source

STOPS = """stop_id,stop_code,stop_name,stop_lat,stop_lon,zone_id
A,A1,Main Square,50.0617,19.9373,1
B,B1,"Dworzec Główny",50.0680,19.9450,1
C,C1,Teatr Bagatela,50.0630,19.9330,1
X,X1,Nowhere,,,1
"""

ROUTES = """route_id,agency_id,route_short_name,route_long_name,route_type,route_color
R1,1,12,Main Square - Dworzec,3,FF0000
R2,1,52,Bagatela - Dworzec,0,
"""

TRIPS = """route_id,service_id,trip_id,trip_headsign,shape_id,direction_id
R1,S1,T1,Dworzec Główny,SH1,0
R2,S1,T2,,,0
"""

STOP_TIMES = """trip_id,arrival_time,departure_time,stop_id,stop_sequence
T1,08:00:00,08:00:00,A,1
T1,08:03:00,08:03:00,C,2
T1,08:07:00,08:07:00,B,4
T2,10:00:00,10:00:00,C,1
T2,10:04:00,10:04:00,B,2
"""

# Deliberately out of order, with a 0,0 sentinel point
SHAPES = """shape_id,shape_pt_lat,shape_pt_lon,shape_pt_sequence
SH1,50.0680,19.9450,3
SH1,50.0617,19.9373,1
SH1,0,0,2
SH1,50.0650,19.9410,2
"""

SAMPLE_FEED = {
    "stops": STOPS,
    "routes": ROUTES,
    "trips": TRIPS,
    "stop_times": STOP_TIMES,
    "shapes": SHAPES,
}


def make_archive(tables: dict[str, str], folder: str = "") -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as zf:
        for name, text in tables.items():
            zf.writestr(f"{folder}{name}.txt", text)
    return buf.getvalue()


def make_sources(*source_ids: str) -> dict[str, Source]:
    return {
        sid: Source(id=sid, name=f"Test feed {sid}", url=f"https://feeds.test/{sid}.zip")
        for sid in source_ids
    }


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ArchiveServer:
    """MockTransport handler serving one archive per source id, counting requests."""

    def __init__(self, archives: dict[str, Union[bytes, int]], delay: float = 0.0):
        self.archives = archives
        self.delay = delay
        self.calls: Counter = Counter()

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        source_id = request.url.path.strip("/").removesuffix(".zip")
        self.calls[source_id] += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        payload = self.archives.get(source_id)
        if payload is None:
            return httpx.Response(404)
        if isinstance(payload, int):
            return httpx.Response(payload)
        return httpx.Response(200, content=payload)


def make_cache(
    archives: dict[str, Union[bytes, int]],
    source_ids: Optional[list[str]] = None,
    clock: Optional[FakeClock] = None,
    delay: float = 0.0,
) -> tuple[FeedCache, ArchiveServer]:
    server = ArchiveServer(archives, delay=delay)
    client = httpx.AsyncClient(transport=httpx.MockTransport(server))
    sources = make_sources(*(source_ids or list(archives)))
    cache = FeedCache(client, sources=sources, clock=clock or FakeClock())
    return cache, server


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sample_archive():
    return make_archive(SAMPLE_FEED)
