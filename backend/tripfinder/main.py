import logging
from contextlib import asynccontextmanager
from functools import partial

import httpx
from dotenv import load_dotenv

load_dotenv()  # Load .env before reading settings

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from tripfinder.config import load_settings

settings = load_settings()

logger = logging.getLogger("tripfinder")
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

# Global state populated during startup
app_state: dict = {}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the shared HTTP client, GTFS caches and delay log."""
    from tripfinder.delay_store import DelayStore
    from tripfinder.gtfs_cache import FeedCache
    from tripfinder.gtfs_realtime import fetch_vehicle_positions
    from tripfinder.map_data import MapDataAssembler
    from tripfinder.route_resolver import RouteResolver

    # Shared httpx client for connection pooling across all upstream feeds
    http_client = httpx.AsyncClient(
        timeout=settings.http_timeout_seconds,
        follow_redirects=True,
        limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
    )
    app_state["http_client"] = http_client

    vehicle_fetcher = partial(
        fetch_vehicle_positions,
        http_client,
        url=settings.vehicles_url,
        api_key=settings.realtime_api_key or None,
    )
    feed_cache = FeedCache(http_client, ttl_seconds=settings.gtfs_cache_ttl_seconds)
    app_state["feed_cache"] = feed_cache
    app_state["vehicle_fetcher"] = vehicle_fetcher
    app_state["map_data"] = MapDataAssembler(
        feed_cache, vehicle_fetcher, ttl_seconds=settings.map_data_ttl_seconds
    )
    app_state["resolver"] = RouteResolver(feed_cache)
    app_state["delays"] = DelayStore(settings.delays_file)
    logger.info(
        f"GTFS cache ready ({len(feed_cache.sources)} sources, "
        f"TTL {settings.gtfs_cache_ttl_hours:g}h); delay log at {settings.delays_file}"
    )

    yield

    logger.info("Shutting down...")
    await http_client.aclose()
    app_state.clear()
    logger.info("Shared HTTP client closed")


app = FastAPI(title="Tripfinder API", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

from tripfinder.routes import router  # noqa: E402

app.include_router(router)
