"""
Zone service: maps a coordinate to a named service zone and a surge multiplier.

Zones are loaded once (JSON file named by ``ZONES_FILE`` or the built-in
defaults), validated, and then only read. Lookups scan zones in a fixed
priority order so a point on a shared border always resolves to the same zone.
"""
import json
import logging
from pathlib import Path

from pydantic import BaseModel, Field, field_validator, model_validator

from dispatch_engine.schemas.schemas import VehicleClassEnum
from dispatch_engine.services.geo import BoundingBox, Point

logger = logging.getLogger(__name__)

_EPSILON = 1e-12


class Zone(BaseModel):
    model_config = {"frozen": True}

    id: str = Field(..., min_length=1, max_length=64)
    name: str
    # Lower value wins when zones overlap or share a border.
    priority: int = 100
    # (lat, lng) vertices; the ring is closed implicitly.
    polygon: tuple[tuple[float, float], ...]
    surge: dict[VehicleClassEnum, float] = Field(default_factory=dict)
    default_surge: float = 1.0

    @field_validator("polygon")
    @classmethod
    def _at_least_a_triangle(cls, v):
        if len(v) < 3:
            raise ValueError("zone polygon needs at least 3 vertices")
        for lat, lng in v:
            if not (-90 <= lat <= 90 and -180 <= lng <= 180):
                raise ValueError(f"vertex ({lat}, {lng}) out of range")
        return v

    @model_validator(mode="after")
    def _surge_not_below_one(self):
        for value in (self.default_surge, *self.surge.values()):
            if value < 1.0:
                raise ValueError(f"surge multiplier {value} below 1.0 in zone {self.id}")
        return self

    @property
    def bounds(self) -> BoundingBox:
        lats = [lat for lat, _ in self.polygon]
        lngs = [lng for _, lng in self.polygon]
        return BoundingBox(min(lats), min(lngs), max(lats), max(lngs))

    def contains(self, point: Point) -> bool:
        box = self.bounds
        if not (box.min_lat <= point.lat <= box.max_lat and box.min_lng <= point.lng <= box.max_lng):
            return False
        return _point_in_polygon(point, self.polygon)

    def surge_for(self, vehicle_class: VehicleClassEnum) -> float:
        return max(1.0, self.surge.get(vehicle_class, self.default_surge))


def _on_segment(p: Point, a: tuple[float, float], b: tuple[float, float]) -> bool:
    (y1, x1), (y2, x2) = a, b
    cross = (p.lng - x1) * (y2 - y1) - (p.lat - y1) * (x2 - x1)
    if abs(cross) > _EPSILON:
        return False
    return min(x1, x2) - _EPSILON <= p.lng <= max(x1, x2) + _EPSILON and \
        min(y1, y2) - _EPSILON <= p.lat <= max(y1, y2) + _EPSILON


def _point_in_polygon(p: Point, polygon: tuple[tuple[float, float], ...]) -> bool:
    """Even-odd ray cast on (lng, lat); edges and vertices count as inside."""
    inside = False
    n = len(polygon)
    for i in range(n):
        a, b = polygon[i], polygon[(i + 1) % n]
        if _on_segment(p, a, b):
            return True
        (lat1, lng1), (lat2, lng2) = a, b
        if (lat1 > p.lat) != (lat2 > p.lat):
            x_cross = lng1 + (p.lat - lat1) * (lng2 - lng1) / (lat2 - lat1)
            if p.lng < x_cross:
                inside = not inside
    return inside


# Kinshasa service areas
DEFAULT_ZONES: list[dict] = [
    {
        "id": "gombe",
        "name": "Gombe",
        "priority": 10,
        "polygon": [(-4.290, 15.270), (-4.290, 15.330), (-4.330, 15.330), (-4.330, 15.270)],
        "surge": {"standard": 1.2, "premium": 1.3},
        "default_surge": 1.0,
    },
    {
        "id": "kinshasa-centre",
        "name": "Kinshasa Centre",
        "priority": 50,
        "polygon": [(-4.280, 15.230), (-4.280, 15.380), (-4.420, 15.380), (-4.420, 15.230)],
        "default_surge": 1.0,
    },
    {
        "id": "kinshasa-east",
        "name": "Kinshasa East",
        "priority": 60,
        "polygon": [(-4.300, 15.380), (-4.300, 15.550), (-4.480, 15.550), (-4.480, 15.380)],
        "default_surge": 1.0,
    },
]


class ZoneService:
    def __init__(self, zones: list[Zone]):
        ids = [z.id for z in zones]
        if len(ids) != len(set(ids)):
            raise ValueError("duplicate zone ids")
        self._zones: tuple[Zone, ...] = tuple(sorted(zones, key=lambda z: (z.priority, z.id)))

    @classmethod
    def from_config(cls, zones_file: str | None = None) -> "ZoneService":
        if zones_file:
            raw = json.loads(Path(zones_file).read_text(encoding="utf-8"))
            logger.info("Loaded %d zones from %s", len(raw), zones_file)
        else:
            raw = DEFAULT_ZONES
        return cls([Zone.model_validate(z) for z in raw])

    @property
    def zones(self) -> tuple[Zone, ...]:
        return self._zones

    def get(self, zone_id: str) -> Zone | None:
        return next((z for z in self._zones if z.id == zone_id), None)

    def locate(self, point: Point) -> Zone | None:
        for zone in self._zones:
            if zone.contains(point):
                return zone
        return None

    def surge_multiplier(self, point: Point, vehicle_class: VehicleClassEnum) -> float:
        zone = self.locate(point)
        return zone.surge_for(vehicle_class) if zone else 1.0
