"""Runtime settings read from the environment (backend/.env is loaded in main)."""

import os
from dataclasses import dataclass, field


def _csv_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass(frozen=True)
class Settings:
    # Static GTFS archives change at most daily
    gtfs_cache_ttl_hours: float = 24.0
    map_data_ttl_seconds: float = 300.0
    http_timeout_seconds: float = 30.0

    # GTFS-RT vehicle positions (ZTP Kraków)
    vehicles_url: str = "https://gtfs.ztp.krakow.pl/VehiclePositions.pb"
    realtime_api_key: str = ""

    delays_file: str = "delays.json"
    cors_origins: list[str] = field(
        default_factory=lambda: ["http://localhost:3000", "http://127.0.0.1:3000"]
    )
    log_level: str = "INFO"

    @property
    def gtfs_cache_ttl_seconds(self) -> float:
        return self.gtfs_cache_ttl_hours * 3600


def load_settings() -> Settings:
    """Build settings from environment variables, falling back to defaults."""
    defaults = Settings()
    return Settings(
        gtfs_cache_ttl_hours=float(os.getenv("GTFS_CACHE_TTL_HOURS", defaults.gtfs_cache_ttl_hours)),
        map_data_ttl_seconds=float(os.getenv("MAP_DATA_TTL_SECONDS", defaults.map_data_ttl_seconds)),
        http_timeout_seconds=float(os.getenv("HTTP_TIMEOUT_SECONDS", defaults.http_timeout_seconds)),
        vehicles_url=os.getenv("GTFS_RT_VEHICLES_URL", defaults.vehicles_url),
        realtime_api_key=os.getenv("GTFS_RT_API_KEY", defaults.realtime_api_key),
        delays_file=os.getenv("DELAYS_FILE", defaults.delays_file),
        cors_origins=_csv_list(os.getenv("CORS_ORIGINS", ",".join(defaults.cors_origins))),
        log_level=os.getenv("LOG_LEVEL", defaults.log_level).upper(),
    )
