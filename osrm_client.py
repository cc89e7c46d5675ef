"""
osrm_client.py — road geometry from an OSRM `route` endpoint.

Every failure (network error, non-2xx, bad payload, empty geometry) comes back
as None: callers treat a missing geometry as "keep the raw data" rather than
as an error.
"""

import logging
from typing import Sequence

import requests

from config import OSRM_URL, OSRM_TIMEOUT

logger = logging.getLogger(__name__)

ROUTE_PARAMS = {
    "overview": "full",
    "geometries": "geojson",
    "steps": "false",
    "continue_straight": "true",
}


def format_coordinates(coords: Sequence[Sequence[float]]) -> str:
    """Render [(lon, lat), ...] as OSRM's 'lon,lat;lon,lat' path segment."""
    return ";".join(f"{c[0]:.6f},{c[1]:.6f}" for c in coords)


class OSRMClient:
    """Callable routing client: client(coords) -> [[lon, lat], ...] or None."""

    def __init__(self, base_url: str = OSRM_URL, timeout: float = OSRM_TIMEOUT, session=None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests

    def route(self, coords: Sequence[Sequence[float]]) -> list[list[float]] | None:
        if len(coords) < 2:
            return None

        url = f"{self.base_url}/{format_coordinates(coords)}"
        try:
            response = self.session.get(url, params=ROUTE_PARAMS, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            logger.debug(f"OSRM request failed for {len(coords)} coords: {e}")
            return None

        if not response.ok:
            logger.debug(f"OSRM returned HTTP {response.status_code} for {len(coords)} coords")
            return None

        try:
            payload = response.json()
        except ValueError as e:
            logger.debug(f"OSRM returned undecodable JSON: {e}")
            return None

        if not isinstance(payload, dict):
            logger.debug(f"OSRM returned a {type(payload).__name__} body, expected an object")
            return None

        if payload.get("code", "Ok") != "Ok":
            logger.debug(f"OSRM returned code {payload.get('code')}")
            return None

        try:
            geometry = payload["routes"][0]["geometry"]["coordinates"]
            path = [[float(c[0]), float(c[1])] for c in geometry]
        except (KeyError, IndexError, TypeError, ValueError):
            logger.debug("OSRM response has no usable route geometry")
            return None

        return path or None

    __call__ = route
