# config.py — bus route snapping pipeline configuration
# Edit this file to change endpoints, chunking, thresholds, concurrency, etc.

import os
from dataclasses import dataclass
from pathlib import Path

# ── Upstream transit API (TAGO, data.go.kr) ──────────────────────────
TAGO_URL = "http://apis.data.go.kr/1613000/BusRouteInfoInqireService"

# Wonju
DEFAULT_CITY_CODE = "32020"

# Rows requested per page when listing routes, and for a route's stop list
# (a single route never has more stops than this).
TAGO_PAGE_SIZE = 1000
TAGO_STOPS_PAGE_SIZE = 1024

# Seconds
TAGO_TIMEOUT = 30

# ── Routing service (OSRM) ───────────────────────────────────────────
OSRM_URL = "http://router.project-osrm.org/route/v1/driving"

# Seconds
OSRM_TIMEOUT = 15

# Max stops submitted per routing request.  Consecutive chunks share one stop
# so the stitched path stays continuous.
OSRM_CHUNK_SIZE = 25

# ── Geometry ─────────────────────────────────────────────────────────
# Max distance (meters) an interior stop may be moved onto the road corridor
# between its neighbours.  Stops further away are left where they are.
CORRIDOR_SNAP_THRESHOLD_M = 90.0

# Decimal digits kept for output coordinates (~0.1 m) and reported distance.
COORD_PRECISION = 6
DISTANCE_PRECISION = 1

# ── Concurrency ──────────────────────────────────────────────────────
# Worker threads for phase 1 (raw fetch) and phase 2 (snap + derive).
CONCURRENCY_FETCH = 20
CONCURRENCY_SNAP = 10

# ── Output files ─────────────────────────────────────────────────────
DEFAULT_OUTPUT_DIR = "./storage/processed_routes"
RAW_DIR_NAME = "raw_routes"
DERIVED_DIR_NAME = "derived_routes"
ROUTE_MAP_FILE = "routeMap.json"
LOG_FILE = "build_routes.log"

# ── Environment ──────────────────────────────────────────────────────
SERVICE_KEY_ENV = "DATA_GO_KR_SERVICE_KEY"
TAGO_URL_ENV = "TAGO_API_URL"
OSRM_URL_ENV = "OSRM_API_URL"


class ConfigError(RuntimeError):
    """Raised when the run cannot start because configuration is missing."""


@dataclass(frozen=True)
class ProcessorConfig:
    """Endpoints and output locations shared read-only by every worker."""

    service_key: str
    city_code: str
    raw_dir: Path
    derived_dir: Path
    mapping_file: Path
    tago_base_url: str = TAGO_URL
    osrm_base_url: str = OSRM_URL
    chunk_size: int = OSRM_CHUNK_SIZE


def resolve_url(env_name: str, default: str) -> str:
    """Return the env override for a base URL (trailing slashes stripped)."""
    value = os.environ.get(env_name, "").strip()
    return (value or default).rstrip("/")


def load_config(
    output_dir: str | Path = DEFAULT_OUTPUT_DIR,
    city_code: str = DEFAULT_CITY_CODE,
    chunk_size: int = OSRM_CHUNK_SIZE,
    require_service_key: bool = True,
) -> ProcessorConfig:
    """Build the processor configuration from arguments and the environment.

    Raises ConfigError when the TAGO service key is required but unset.
    """
    service_key = os.environ.get(SERVICE_KEY_ENV, "").strip()
    if require_service_key and not service_key:
        raise ConfigError(f"{SERVICE_KEY_ENV} is missing!")
    if chunk_size < 2:
        raise ConfigError(f"chunk size must be at least 2, got {chunk_size}")

    output_dir = Path(output_dir)
    return ProcessorConfig(
        service_key=service_key,
        city_code=city_code,
        raw_dir=output_dir / RAW_DIR_NAME,
        derived_dir=output_dir / DERIVED_DIR_NAME,
        mapping_file=output_dir / ROUTE_MAP_FILE,
        tago_base_url=resolve_url(TAGO_URL_ENV, TAGO_URL),
        osrm_base_url=resolve_url(OSRM_URL_ENV, OSRM_URL),
        chunk_size=chunk_size,
    )
