#!/usr/bin/env python3
"""
build_routes.py — collect bus routes and derive road-snapped route geometry.

Phases:
  1. Collect — list the city's routes from TAGO, save each route's stop
               sequence to raw_routes/{route_no}_{route_id}.json, then fold
               all routes into routeMap.json
  2. Derive  — for every raw route file, snap stops and the path to roads via
               OSRM and write derived_routes/{route_id}.geojson

Usage:
    python3 build_routes.py                     # all routes, both phases
    python3 build_routes.py -r 34-1             # only route number 34-1
    python3 build_routes.py --station-map-only  # phase 1 only
    python3 build_routes.py --osrm-only         # phase 2 only, from saved raw files
    python3 build_routes.py -o DIR              # write under DIR
    python3 build_routes.py -h                  # show this help

Environment:
    DATA_GO_KR_SERVICE_KEY  TAGO service key (required unless --osrm-only)
    TAGO_API_URL            override the TAGO base URL
    OSRM_API_URL            override the OSRM route endpoint
"""

import argparse
import json
import logging
import sys
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime
from pathlib import Path
from typing import Iterable

import requests

from config import (
    CONCURRENCY_FETCH, CONCURRENCY_SNAP, DEFAULT_CITY_CODE, DEFAULT_OUTPUT_DIR,
    LOG_FILE, OSRM_CHUNK_SIZE, ConfigError, ProcessorConfig, load_config,
)
from models import RawRoute, RouteSummary, validate_derived_feature
from osrm_client import OSRMClient
from route_pipeline import derive_route
from tago_client import TagoAPIError, TagoClient, parse_flexible_string

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False, log_file: str | None = LOG_FILE) -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.insert(0, logging.FileHandler(log_file))
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=handlers,
    )


# ── File I/O ─────────────────────────────────────────────────────────

def ensure_dirs(config: ProcessorConfig) -> None:
    config.raw_dir.mkdir(parents=True, exist_ok=True)
    config.derived_dir.mkdir(parents=True, exist_ok=True)


def save_raw_route(raw: RawRoute, raw_dir: Path) -> Path:
    path = raw_dir / raw.file_name
    path.write_text(json.dumps(raw.to_dict(), ensure_ascii=False, indent=2), encoding="utf-8")
    return path


def load_raw_route(path: Path) -> RawRoute:
    return RawRoute.from_dict(json.loads(path.read_text(encoding="utf-8")))


def fold_route_map(summaries: Iterable[RouteSummary], last_updated: datetime | None = None) -> dict:
    """Merge per-route summaries into the routeMap.json document.

    The result does not depend on the order summaries arrive in.
    """
    route_numbers: dict[str, list[str]] = defaultdict(list)
    route_details: dict[str, dict] = {}
    stations: dict[str, dict] = {}
    for summary in summaries:
        route_numbers[summary.route_no].append(summary.route_id)
        route_details[summary.route_id] = summary.details
        stations.update(summary.stations)

    stamp = last_updated or datetime.now()
    return {
        "lastUpdated": stamp.strftime("%Y-%m-%d %H:%M:%S"),
        "route_numbers": {no: sorted(ids) for no, ids in sorted(route_numbers.items())},
        "route_details": dict(sorted(route_details.items())),
        "stations": dict(sorted(stations.items())),
    }


def save_route_map(route_map: dict, mapping_file: Path) -> None:
    mapping_file.write_text(json.dumps(route_map, ensure_ascii=False, indent=2), encoding="utf-8")
    logger.info(
        f"Route map saved to {mapping_file} ({len(route_map['route_details'])} routes, "
        f"{len(route_map['stations'])} stations)"
    )


def matches_route_filter(file_name: str, route_filter: str | None) -> bool:
    if not route_filter:
        return True
    return file_name.startswith(route_filter) or route_filter in file_name


# ── Phase 1: Collect ─────────────────────────────────────────────────

def fetch_and_save_raw(client: TagoClient, config: ProcessorConfig, route_record: dict) -> RouteSummary | None:
    raw = client.build_raw_route(route_record)
    if raw is None:
        return None
    save_raw_route(raw, config.raw_dir)
    return RouteSummary.from_raw_route(raw)


def collect_raw_routes(
    config: ProcessorConfig,
    route_filter: str | None = None,
    workers: int = CONCURRENCY_FETCH,
    client: TagoClient | None = None,
) -> dict:
    """Fetch every (matching) route, save the raw files and return the route map."""
    client = client or TagoClient(
        service_key=config.service_key,
        city_code=config.city_code,
        base_url=config.tago_base_url,
    )
    routes = client.list_routes()
    if route_filter:
        routes = [r for r in routes if parse_flexible_string(r.get("routeno")) == route_filter]
    logger.info(f"Targeting {len(routes)} routes...")

    summaries: list[RouteSummary] = []
    with ThreadPoolExecutor(max_workers=workers) as pool:
        futures = {pool.submit(fetch_and_save_raw, client, config, r): r for r in routes}
        for future in as_completed(futures):
            record = futures[future]
            try:
                summary = future.result()
            except Exception as e:
                logger.error(f"Failed to fetch route {record.get('routeno')} ({record.get('routeid')}): {e}")
                continue
            if summary is not None:
                summaries.append(summary)
                if len(summaries) % 10 == 0:
                    logger.info(f"  {len(summaries)} raw routes saved")

    logger.info(f"Processed {len(summaries)} raw routes.")
    route_map = fold_route_map(summaries)
    save_route_map(route_map, config.mapping_file)
    return route_map


# ── Phase 2: Derive ──────────────────────────────────────────────────

def process_raw_to_derived(raw_path: Path, config: ProcessorConfig, router) -> Path | None:
    raw = load_raw_route(raw_path)
    feature = derive_route(raw, router, config.chunk_size)
    if feature is None:
        return None
    data = feature.to_geojson()
    errors = validate_derived_feature(data)
    if errors:
        logger.warning(f"{feature.file_name} failed validation: {'; '.join(errors)}")
    output_path = config.derived_dir / feature.file_name
    output_path.write_text(
        json.dumps(data, ensure_ascii=False, separators=(",", ":")),
        encoding="utf-8",
    )
    return output_path


def derive_all(
    config: ProcessorConfig,
    route_filter: str | None = None,
    workers: int = CONCURRENCY_SNAP,
    router=None,
) -> list[Path]:
    """Derive a feature file for every raw route file.  Failed routes are logged and skipped."""
    router = router or OSRMClient(base_url=config.osrm_base_url)
    raw_files = sorted(
        p for p in config.raw_dir.glob("*.json") if matches_route_filter(p.name, route_filter)
    )
    logger.info(f"Deriving {len(raw_files)} routes into {config.derived_dir}")

    written: list[Path] = []
    with ThreadPoolExecutor(max_workers=workers) as pool:
        futures = {pool.submit(process_raw_to_derived, p, config, router): p for p in raw_files}
        for future in as_completed(futures):
            raw_path = futures[future]
            try:
                output = future.result()
            except Exception as e:
                logger.error(f"Processing {raw_path.name} failed: {e}")
                continue
            if output is not None:
                logger.info(f"  {raw_path.name} -> {output.name}")
                written.append(output)
    return written


# ── Main ─────────────────────────────────────────────────────────────

def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        description="Bus route collection and road snapping",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    p.add_argument("--city-code", default=DEFAULT_CITY_CODE,
                   help=f"TAGO city code (default: {DEFAULT_CITY_CODE}, Wonju)")
    p.add_argument("-r", "--route", metavar="NO",
                   help="Only process this route number")
    p.add_argument("-o", "--output-dir", default=DEFAULT_OUTPUT_DIR, metavar="DIR",
                   help=f"Output directory (default: {DEFAULT_OUTPUT_DIR})")
    p.add_argument("--station-map-only", action="store_true",
                   help="Write routeMap.json and skip snapping")
    p.add_argument("--osrm-only", action="store_true",
                   help="Skip the TAGO fetch and snap the saved raw routes")
    p.add_argument("--chunk-size", type=int, default=OSRM_CHUNK_SIZE,
                   help=f"Stops per routing request (default: {OSRM_CHUNK_SIZE})")
    p.add_argument("--workers-fetch", type=int, default=CONCURRENCY_FETCH,
                   help=f"Parallel route fetches (default: {CONCURRENCY_FETCH})")
    p.add_argument("--workers-snap", type=int, default=CONCURRENCY_SNAP,
                   help=f"Parallel route derivations (default: {CONCURRENCY_SNAP})")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return p.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    setup_logging(args.verbose)

    try:
        config = load_config(
            output_dir=args.output_dir,
            city_code=args.city_code,
            chunk_size=args.chunk_size,
            require_service_key=not args.osrm_only,
        )
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        return 1
    ensure_dirs(config)

    if not args.osrm_only:
        logger.info(f"[Phase 1: Fetching raw data to {config.raw_dir}]")
        try:
            collect_raw_routes(config, args.route, args.workers_fetch)
        except (requests.exceptions.RequestException, TagoAPIError) as e:
            logger.error(f"Could not list routes, keeping previous raw files: {e}")
        if args.station_map_only:
            logger.info("Station map generated.")
            return 0

    logger.info(f"[Phase 2: Processing raw data to GeoJSON: {config.derived_dir}]")
    written = derive_all(config, args.route, args.workers_snap)
    logger.info(f"Pipeline complete: {len(written)} routes derived.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
