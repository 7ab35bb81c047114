"""
Great-circle helpers shared by intake, candidate search and the fraud detector.
"""
from math import radians, degrees, sin, cos, sqrt, atan2
from typing import NamedTuple

EARTH_RADIUS_KM = 6371.0


class Point(NamedTuple):
    lat: float
    lng: float


class BoundingBox(NamedTuple):
    min_lat: float
    min_lng: float
    max_lat: float
    max_lng: float


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    phi1, phi2 = radians(lat1), radians(lat2)
    dphi = radians(lat2 - lat1)
    dlambda = radians(lng2 - lng1)
    a = sin(dphi / 2) ** 2 + cos(phi1) * cos(phi2) * sin(dlambda / 2) ** 2
    return 2 * EARTH_RADIUS_KM * atan2(sqrt(a), sqrt(1 - a))


def distance_km(a: Point, b: Point) -> float:
    return haversine_km(a.lat, a.lng, b.lat, b.lng)


def bounding_box(center: Point, radius_km: float) -> BoundingBox:
    """
    Lat/lng box enclosing the circle. Used only as an index-friendly SQL
    prefilter; the exact cut is still done with haversine.
    """
    dlat = degrees(radius_km / EARTH_RADIUS_KM)
    cos_lat = cos(radians(center.lat))
    # Near the poles the longitude span degenerates; take the whole band.
    dlng = 180.0 if cos_lat < 1e-6 else min(180.0, degrees(radius_km / (EARTH_RADIUS_KM * cos_lat)))
    return BoundingBox(
        min_lat=max(-90.0, center.lat - dlat),
        min_lng=center.lng - dlng,
        max_lat=min(90.0, center.lat + dlat),
        max_lng=center.lng + dlng,
    )


def is_valid_coordinate(lat: float | None, lng: float | None) -> bool:
    if lat is None or lng is None:
        return False
    return -90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0
