"""
models.py — typed records passed between pipeline stages.

Raw routes round-trip through JSON files on disk using the upstream field
names; derived features render to a GeoJSON FeatureCollection.
"""

from dataclasses import dataclass, field, replace


@dataclass(frozen=True)
class Stop:
    """A boarding point and its position in the route's visiting order."""

    node_id: str
    name: str
    sequence_order: int
    direction_code: int
    latitude: float
    longitude: float
    node_no: str = ""

    @property
    def coordinate(self) -> tuple[float, float]:
        return self.longitude, self.latitude

    def moved_to(self, lon: float, lat: float) -> "Stop":
        return replace(self, longitude=lon, latitude=lat)

    def to_dict(self) -> dict:
        return {
            "node_id": self.node_id,
            "node_nm": self.name,
            "node_ord": self.sequence_order,
            "node_no": self.node_no,
            "gps_lat": self.latitude,
            "gps_long": self.longitude,
            "up_down_cd": self.direction_code,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Stop":
        return cls(
            node_id=str(data["node_id"]),
            name=data.get("node_nm", ""),
            sequence_order=int(data["node_ord"]),
            direction_code=int(data.get("up_down_cd", 0)),
            latitude=float(data["gps_lat"]),
            longitude=float(data["gps_long"]),
            node_no=str(data.get("node_no", "")),
        )


@dataclass
class RawRoute:
    """One route's stop sequence as fetched from the transit API."""

    route_id: str
    route_number: str
    fetched_at: str
    stops: list[Stop] = field(default_factory=list)

    def __post_init__(self):
        self.stops = sorted(self.stops, key=lambda s: s.sequence_order)
        seen = set()
        for stop in self.stops:
            if stop.node_id in seen:
                raise ValueError(
                    f"route {self.route_id}: duplicate stop node_id {stop.node_id}"
                )
            seen.add(stop.node_id)

    @property
    def file_name(self) -> str:
        return f"{self.route_number}_{self.route_id}.json"

    def to_dict(self) -> dict:
        return {
            "route_id": self.route_id,
            "route_no": self.route_number,
            "fetched_at": self.fetched_at,
            "stops": [s.to_dict() for s in self.stops],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RawRoute":
        for key in ("route_id", "route_no", "stops"):
            if key not in data:
                raise ValueError(f"raw route is missing '{key}'")
        return cls(
            route_id=str(data["route_id"]),
            route_number=str(data["route_no"]),
            fetched_at=data.get("fetched_at", ""),
            stops=[Stop.from_dict(s) for s in data["stops"]],
        )


@dataclass(frozen=True)
class BoundingBox:
    min_lon: float
    min_lat: float
    max_lon: float
    max_lat: float

    def as_list(self) -> list[float]:
        """GeoJSON bbox order: [west, south, east, north]."""
        return [self.min_lon, self.min_lat, self.max_lon, self.max_lat]


@dataclass(frozen=True)
class RouteMetrics:
    bounding_box: BoundingBox | None
    total_distance: float


@dataclass(frozen=True)
class DerivedRouteFeature:
    """Road-snapped geometry of one route plus per-stop lookup data."""

    route_id: str
    route_number: str
    path: tuple[tuple[float, float], ...]
    bounding_box: BoundingBox | None
    total_distance: float
    turn_index: int
    index_map: tuple[int, ...]
    stop_metadata: tuple[dict, ...]
    source_version: str

    @property
    def file_name(self) -> str:
        return f"{self.route_id}.geojson"

    def to_geojson(self) -> dict:
        feature = {
            "type": "Feature",
            "id": self.route_id,
            "bbox": self.bounding_box.as_list() if self.bounding_box else None,
            "geometry": {
                "type": "LineString",
                "coordinates": [[lon, lat] for lon, lat in self.path],
            },
            "properties": {
                "route_id": self.route_id,
                "route_no": self.route_number,
                "stops": [dict(s) for s in self.stop_metadata],
                "indices": {
                    "turn_idx": self.turn_index,
                    "stop_to_coord": list(self.index_map),
                },
                "meta": {
                    "total_dist": self.total_distance,
                    "source_ver": self.source_version,
                },
            },
        }
        return {"type": "FeatureCollection", "features": [feature]}


@dataclass
class RouteSummary:
    """A route's contribution to the aggregate route map."""

    route_id: str
    route_no: str
    details: dict
    stations: dict

    @classmethod
    def from_raw_route(cls, raw: RawRoute) -> "RouteSummary":
        sequence = [
            {"nodeid": s.node_id, "nodeord": s.sequence_order, "updowncd": s.direction_code}
            for s in raw.stops
        ]
        stations = {
            s.node_id: {
                "nodenm": s.name,
                "nodeno": s.node_no,
                "gpslati": s.latitude,
                "gpslong": s.longitude,
            }
            for s in raw.stops
        }
        return cls(
            route_id=raw.route_id,
            route_no=raw.route_number,
            details={"routeno": raw.route_number, "sequence": sequence},
            stations=stations,
        )


def validate_derived_feature(data: dict) -> list[str]:
    """Check a derived GeoJSON document.  Returns a list of error strings (empty if valid)."""
    errors = []
    if data.get("type") != "FeatureCollection":
        errors.append("Root type must be 'FeatureCollection'")
    features = data.get("features")
    if not isinstance(features, list):
        errors.append("Missing 'features' list")
        return errors
    if len(features) != 1:
        errors.append(f"Expected exactly 1 feature per route, found {len(features)}")
        return errors

    feat = features[0]
    geom = feat.get("geometry") or {}
    if geom.get("type") != "LineString":
        errors.append("Geometry type must be 'LineString'")
    coords = geom.get("coordinates") or []
    for i, c in enumerate(coords):
        if not (-180.0 <= c[0] <= 180.0):
            errors.append(f"Coordinate {i}: lon out of range: {c[0]}")
        if not (-90.0 <= c[1] <= 90.0):
            errors.append(f"Coordinate {i}: lat out of range: {c[1]}")
    for i in range(1, len(coords)):
        if coords[i] == coords[i - 1]:
            errors.append(f"Coordinate {i} duplicates its predecessor")

    props = feat.get("properties") or {}
    for key in ("route_id", "route_no", "stops", "indices", "meta"):
        if key not in props:
            errors.append(f"Missing required property '{key}'")
    if errors:
        return errors

    stop_to_coord = props["indices"].get("stop_to_coord", [])
    if len(stop_to_coord) != len(props["stops"]):
        errors.append(
            f"stop_to_coord has {len(stop_to_coord)} entries for {len(props['stops'])} stops"
        )
    for i, idx in enumerate(stop_to_coord):
        if not 0 <= idx < len(coords):
            errors.append(f"stop_to_coord[{i}] = {idx} is out of bounds")
        if i > 0 and idx < stop_to_coord[i - 1]:
            errors.append(f"stop_to_coord[{i}] = {idx} regresses")
    turn_idx = props["indices"].get("turn_idx")
    if coords and not (isinstance(turn_idx, int) and 0 <= turn_idx < len(coords)):
        errors.append(f"turn_idx {turn_idx} is out of bounds")
    return errors
