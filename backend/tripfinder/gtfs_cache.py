"""Per-source cache of decoded static GTFS archives.

One entry per source id, replaced wholesale when it expires. Concurrent
requests for a source that is being downloaded share the same fetch.
"""

import asyncio
import io
import logging
import os
import time
import zipfile
import zlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

import httpx
import pandas as pd

from tripfinder.csv_table import frame_rows, parse_table
from tripfinder.gtfs_sources import GTFS_SOURCES, Source, get_source

logger = logging.getLogger("tripfinder.gtfs_cache")

STATIC_CACHE_TTL = 24 * 60 * 60  # seconds

# table name -> file inside the archive
GTFS_TABLES = {
    "stops": "stops.txt",
    "routes": "routes.txt",
    "trips": "trips.txt",
    "stop_times": "stop_times.txt",
    "shapes": "shapes.txt",
    "calendar": "calendar.txt",
    "agency": "agency.txt",
    "calendar_dates": "calendar_dates.txt",
}

# Names used by the web frontend
TABLE_ALIASES = {
    "stopTimes": "stop_times",
    "calendarDates": "calendar_dates",
}


def resolve_table_name(name: str) -> Optional[str]:
    name = TABLE_ALIASES.get(name, name)
    if name.endswith(".txt"):
        name = name[:-4]
    return name if name in GTFS_TABLES else None


class FetchError(Exception):
    """The archive for a source could not be downloaded or opened."""

    def __init__(self, source_id: str, message: str):
        self.source_id = source_id
        super().__init__(f"{source_id}: {message}")


class DecodeError(FetchError):
    """The downloaded archive is corrupt."""


@dataclass
class FeedTables:
    stops: pd.DataFrame = field(default_factory=pd.DataFrame)
    routes: pd.DataFrame = field(default_factory=pd.DataFrame)
    trips: pd.DataFrame = field(default_factory=pd.DataFrame)
    stop_times: pd.DataFrame = field(default_factory=pd.DataFrame)
    shapes: pd.DataFrame = field(default_factory=pd.DataFrame)
    calendar: pd.DataFrame = field(default_factory=pd.DataFrame)
    agency: pd.DataFrame = field(default_factory=pd.DataFrame)
    calendar_dates: pd.DataFrame = field(default_factory=pd.DataFrame)

    def table(self, name: str) -> pd.DataFrame:
        key = resolve_table_name(name)
        if key is None:
            raise KeyError(f"Unknown GTFS table: {name}")
        return getattr(self, key)

    def rows(self, name: str) -> list[dict[str, str]]:
        return frame_rows(self.table(name))

    def counts(self) -> dict[str, int]:
        return {key: len(getattr(self, key)) for key in GTFS_TABLES}


@dataclass
class CacheEntry:
    source: Source
    tables: FeedTables
    fetched_at: float
    expires_at: float

    def is_valid(self, now: float) -> bool:
        return now < self.expires_at


def _isoformat(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def decode_archive(content: bytes, source_id: str) -> FeedTables:
    """Unzip an archive in memory and parse every canonical table it contains."""
    tables = FeedTables()
    try:
        archive = zipfile.ZipFile(io.BytesIO(content))
    except zipfile.BadZipFile as e:
        raise DecodeError(source_id, f"corrupt archive: {e}") from e

    with archive:
        # Some agencies nest the .txt files inside a folder
        members = {os.path.basename(n): n for n in archive.namelist() if not n.endswith("/")}
        for key, fname in GTFS_TABLES.items():
            member = members.get(fname)
            if member is None:
                logger.debug(f"{source_id}: {fname} not present in archive")
                continue
            try:
                raw = archive.read(member)
            except (zipfile.BadZipFile, zlib.error) as e:
                raise DecodeError(source_id, f"cannot read {fname}: {e}") from e
            text = raw.decode("utf-8-sig", errors="replace")
            setattr(tables, key, parse_table(text, f"{source_id}/{fname}"))
            logger.info(f"Loaded {len(getattr(tables, key))} records from {fname} for {source_id}")

    return tables


class FeedCache:
    def __init__(
        self,
        http_client: httpx.AsyncClient,
        sources: dict[str, Source] = GTFS_SOURCES,
        ttl_seconds: float = STATIC_CACHE_TTL,
        clock: Callable[[], float] = time.time,
    ):
        self._client = http_client
        self._sources = sources
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._inflight: dict[str, asyncio.Task] = {}

    @property
    def sources(self) -> dict[str, Source]:
        return self._sources

    async def get_data(self, source_id: str) -> FeedTables:
        """Return the decoded tables for a source, downloading on miss or expiry."""
        source = get_source(source_id, self._sources)

        entry = self._entries.get(source_id)
        if entry is not None and entry.is_valid(self._clock()):
            return entry.tables

        task = self._inflight.get(source_id)
        if task is None:
            task = asyncio.create_task(self._refresh(source))
            self._inflight[source_id] = task
            task.add_done_callback(lambda t, sid=source_id: self._release(sid, t))
        # A caller going away must not cancel the fetch shared with the others
        return await asyncio.shield(task)

    def _release(self, source_id: str, task: asyncio.Task) -> None:
        if self._inflight.get(source_id) is task:
            del self._inflight[source_id]

    async def _refresh(self, source: Source) -> FeedTables:
        logger.info(f"Fetching fresh GTFS data for {source.name} ({source.id})...")
        started = time.monotonic()
        content = await self._download(source)
        tables = await asyncio.to_thread(decode_archive, content, source.id)

        now = self._clock()
        self._entries[source.id] = CacheEntry(
            source=source,
            tables=tables,
            fetched_at=now,
            expires_at=now + self._ttl,
        )
        logger.info(
            f"GTFS data loaded for {source.id} in {time.monotonic() - started:.1f}s: "
            f"{len(tables.stops)} stops, {len(tables.trips)} trips, "
            f"{len(tables.stop_times)} stop_times"
        )
        return tables

    async def _download(self, source: Source) -> bytes:
        try:
            resp = await self._client.get(source.url)
        except httpx.TimeoutException as e:
            logger.error(f"Timed out fetching GTFS archive for {source.id}: {e}")
            raise FetchError(source.id, "request timed out") from e
        except httpx.HTTPError as e:
            logger.error(f"Failed to fetch GTFS archive for {source.id}: {e}")
            raise FetchError(source.id, f"request failed: {e}") from e

        if not resp.is_success:
            logger.error(f"Failed to fetch GTFS archive for {source.id}: HTTP {resp.status_code}")
            raise FetchError(source.id, f"HTTP {resp.status_code} from {source.url}")
        return resp.content

    def cache_info(self, source_id: Optional[str] = None) -> dict:
        now = self._clock()
        if source_id:
            entry = self._entries.get(source_id)
            if entry is None:
                return {"cached": False, "sourceId": source_id}
            return {"cached": True, "sourceId": source_id, **self._entry_info(entry, now)}

        sources = [
            {"sourceId": sid, **self._entry_info(entry, now)}
            for sid, entry in self._entries.items()
        ]
        return {"cached": bool(sources), "sources": sources, "totalSources": len(sources)}

    @staticmethod
    def _entry_info(entry: CacheEntry, now: float) -> dict:
        return {
            "sourceName": entry.source.name,
            "lastFetched": _isoformat(entry.fetched_at),
            "expiresAt": _isoformat(entry.expires_at),
            "isExpired": not entry.is_valid(now),
        }

    def is_expired(self, source_id: str) -> bool:
        """True when there is no entry for the source or it has expired."""
        entry = self._entries.get(source_id)
        return entry is None or not entry.is_valid(self._clock())

    def clear(self, source_id: Optional[str] = None) -> None:
        if source_id:
            self._entries.pop(source_id, None)
            logger.info(f"GTFS cache cleared for source: {source_id}")
        else:
            self._entries.clear()
            logger.info("All GTFS caches cleared")

    async def summary(self, source_id: str) -> dict:
        tables = await self.get_data(source_id)
        source = self._sources[source_id]
        return {
            "source": source_id,
            "sourceName": source.name,
            "counts": tables.counts(),
            "cacheInfo": self.cache_info(source_id),
        }
