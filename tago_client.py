"""
tago_client.py — route listing and stop sequences from the TAGO open API.

Responses follow the data.go.kr envelope:

    {"response": {"header": {"resultCode": "00", ...},
                  "body": {"items": {"item": [...] | {...}} | "",
                           "numOfRows": ..., "pageNo": ..., "totalCount": ...}}}
"""

import logging
from datetime import datetime

import requests

from config import TAGO_URL, TAGO_TIMEOUT, TAGO_PAGE_SIZE, TAGO_STOPS_PAGE_SIZE, DEFAULT_CITY_CODE
from models import RawRoute, Stop

logger = logging.getLogger(__name__)

UNKNOWN = "UNKNOWN"
RESULT_OK = {"00", "0", "000"}


class TagoAPIError(RuntimeError):
    """The TAGO API answered with an error result code or an unreadable body."""


# ── Field parsing ────────────────────────────────────────────────────

def parse_flexible_string(value) -> str:
    """Render an id/number field that the API returns as either text or a number."""
    if isinstance(value, bool) or value is None:
        return UNKNOWN
    if isinstance(value, str):
        return value.strip() or UNKNOWN
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return str(int(value)) if value.is_integer() else str(value)
    return UNKNOWN


def parse_int(value, default: int = 0) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return default
    return default


def parse_float(value, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def extract_body(payload: dict) -> dict:
    """Return the response body, raising TagoAPIError on an error result code."""
    if not isinstance(payload, dict) or "response" not in payload:
        raise TagoAPIError("response envelope missing")
    response = payload["response"]
    if not isinstance(response, dict):
        raise TagoAPIError(f"response envelope is a {type(response).__name__}, expected an object")
    header = response.get("header")
    if not isinstance(header, dict):
        header = {}
    code = str(header.get("resultCode", "00"))
    if code not in RESULT_OK:
        raise TagoAPIError(f"resultCode {code}: {header.get('resultMsg', '')}")
    body = response.get("body")
    return body if isinstance(body, dict) else {}


def extract_items(payload: dict) -> list[dict]:
    """Pull response.body.items.item out as a list.

    The API returns a bare object for a single item and an empty string when
    there are no items at all.
    """
    items = extract_body(payload).get("items")
    if not isinstance(items, dict):
        return []
    item = items.get("item")
    if isinstance(item, list):
        return [i for i in item if isinstance(i, dict)]
    if isinstance(item, dict):
        return [item]
    return []


def parse_stop(item: dict) -> Stop:
    return Stop(
        node_id=parse_flexible_string(item.get("nodeid")),
        name=str(item.get("nodenm") or ""),
        sequence_order=parse_int(item.get("nodeord")),
        direction_code=parse_int(item.get("updowncd")),
        latitude=parse_float(item.get("gpslati")),
        longitude=parse_float(item.get("gpslong")),
        node_no=parse_flexible_string(item.get("nodeno")),
    )


# ── Client ───────────────────────────────────────────────────────────

class TagoClient:
    """Fetches route lists and per-route stop sequences for one city."""

    def __init__(
        self,
        service_key: str,
        city_code: str = DEFAULT_CITY_CODE,
        base_url: str = TAGO_URL,
        timeout: float = TAGO_TIMEOUT,
        page_size: int = TAGO_PAGE_SIZE,
        session=None,
    ):
        self.service_key = service_key
        self.city_code = city_code
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.page_size = page_size
        self.session = session or requests

    def _get(self, operation: str, params: dict) -> dict:
        query = {
            "cityCode": self.city_code,
            "serviceKey": self.service_key,
            "_type": "json",
        }
        query.update(params)
        response = self.session.get(
            f"{self.base_url}/{operation}", params=query, timeout=self.timeout
        )
        response.raise_for_status()
        try:
            return response.json()
        except ValueError as e:
            raise TagoAPIError(f"{operation}: response is not JSON ({e})") from e

    def list_routes(self) -> list[dict]:
        """All route records of the city, following pagination."""
        routes = []
        page = 1
        while True:
            payload = self._get(
                "getRouteNoList", {"numOfRows": self.page_size, "pageNo": page}
            )
            items = extract_items(payload)
            routes.extend(items)
            total = parse_int(extract_body(payload).get("totalCount"), default=len(routes))
            logger.debug(f"Route list page {page}: {len(items)} items ({len(routes)}/{total})")
            if not items or len(routes) >= total:
                break
            page += 1
        logger.info(f"Found {len(routes)} routes for city {self.city_code}")
        return routes

    def fetch_route_stops(self, route_id: str) -> list[Stop]:
        payload = self._get(
            "getRouteAcctoThrghSttnList",
            {"routeId": route_id, "numOfRows": TAGO_STOPS_PAGE_SIZE, "pageNo": 1},
        )
        return [parse_stop(item) for item in extract_items(payload)]

    def build_raw_route(self, route_record: dict) -> RawRoute | None:
        """Fetch a listed route's stops.  None when the record or stop list is unusable."""
        route_id = parse_flexible_string(route_record.get("routeid"))
        route_no = parse_flexible_string(route_record.get("routeno"))
        if route_id == UNKNOWN or route_no == UNKNOWN:
            logger.debug(f"Skipping route record without id/number: {route_record}")
            return None

        stops = self.fetch_route_stops(route_id)
        if not stops:
            logger.debug(f"Route {route_no} ({route_id}) has no stops")
            return None

        return RawRoute(
            route_id=route_id,
            route_number=route_no,
            fetched_at=datetime.now().astimezone().isoformat(),
            stops=unique_stops(stops),
        )


def unique_stops(stops: list[Stop]) -> list[Stop]:
    """Sort by visiting order and keep the first occurrence of each node id."""
    seen = set()
    out = []
    for stop in sorted(stops, key=lambda s: s.sequence_order):
        if stop.node_id in seen:
            logger.debug(f"Dropping repeated stop {stop.node_id} at order {stop.sequence_order}")
            continue
        seen.add(stop.node_id)
        out.append(stop)
    return out
