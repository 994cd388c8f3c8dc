"""
Geo helpers for discovery: coordinate hygiene, great-circle distance,
radius ↔ bounding-box conversion and cache tile bucketing.
"""
from __future__ import annotations

import math
from typing import Any, Optional

from nearby.core.contracts import Bounds, DiscoveryQuery, LatLng
from nearby.core.settings import settings

METERS_PER_DEGREE_LAT = 111_320.0
EARTH_RADIUS_M = 6_371_000.0


def sanitize_coordinate(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        v = float(value)
        return v if math.isfinite(v) else None
    if isinstance(value, str):
        try:
            v = float(value.strip())
        except ValueError:
            return None
        return v if math.isfinite(v) else None
    return None


def round_coordinate(value: float, precision: int = 6) -> float:
    if value is None or not math.isfinite(value):
        return 0.0
    return round(float(value), precision)


def normalize_radius(value: Optional[float]) -> int:
    if value is None or not isinstance(value, (int, float)) or not math.isfinite(value):
        return int(settings.discovery_default_radius_m)
    lo = int(settings.discovery_min_radius_m)
    hi = int(settings.discovery_max_radius_m)
    return min(max(int(round(value)), lo), hi)


def haversine_m(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Distance in metres between two (lat, lng) points."""
    p1, p2 = math.radians(lat1), math.radians(lat2)
    dlat = p2 - p1
    dlng = math.radians(lng2 - lng1)
    x = math.sin(dlat / 2) ** 2 + math.cos(p1) * math.cos(p2) * math.sin(dlng / 2) ** 2
    return 2.0 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(x)))


def _clamp_lat(v: float) -> float:
    return min(max(v, -90.0), 90.0)


def _clamp_lng(v: float) -> float:
    return min(max(v, -180.0), 180.0)


def clamp_point(p: LatLng) -> LatLng:
    return LatLng(lat=_clamp_lat(p.lat), lng=_clamp_lng(p.lng))


def _finite_or_zero(v: float) -> float:
    return v if v is not None and math.isfinite(v) else 0.0


def normalize_bounds(b: Bounds) -> Bounds:
    sw_lat, sw_lng = _finite_or_zero(b.sw.lat), _finite_or_zero(b.sw.lng)
    ne_lat, ne_lng = _finite_or_zero(b.ne.lat), _finite_or_zero(b.ne.lng)
    return Bounds(
        sw=LatLng(
            lat=round_coordinate(_clamp_lat(min(sw_lat, ne_lat))),
            lng=round_coordinate(_clamp_lng(min(sw_lng, ne_lng))),
        ),
        ne=LatLng(
            lat=round_coordinate(_clamp_lat(max(sw_lat, ne_lat))),
            lng=round_coordinate(_clamp_lng(max(sw_lng, ne_lng))),
        ),
    )


def bounds_for_radius(lat: float, lng: float, radius_m: float) -> Bounds:
    dlat = radius_m / METERS_PER_DEGREE_LAT
    cosv = math.cos(math.radians(lat))
    if abs(cosv) < 0.0001:
        cosv = 0.0001
    dlng = radius_m / (METERS_PER_DEGREE_LAT * cosv)
    return normalize_bounds(
        Bounds(
            sw=LatLng(lat=lat - dlat, lng=lng - dlng),
            ne=LatLng(lat=lat + dlat, lng=lng + dlng),
        )
    )


def resolve_bounds(query: DiscoveryQuery) -> Bounds:
    """
    The authoritative search area: explicit bounds when given, otherwise an
    equirectangular box around centre+radius. Always returns a box.
    """
    if query.bounds is not None:
        return normalize_bounds(query.bounds)
    lat = _finite_or_zero(query.center.lat)
    lng = _finite_or_zero(query.center.lng)
    return bounds_for_radius(lat, lng, normalize_radius(query.radius_m))


def point_in_bounds(lat: float, lng: float, b: Bounds) -> bool:
    return b.sw.lat <= lat <= b.ne.lat and b.sw.lng <= lng <= b.ne.lng


def compute_tile_key(center: LatLng, step_deg: Optional[float] = None) -> str:
    # Floor onto a fixed grid so nearby centres share one cache partition.
    step = float(step_deg or settings.discovery_tile_step_deg)
    lat_cell = math.floor(_finite_or_zero(center.lat) / step + 1e-9)
    lng_cell = math.floor(_finite_or_zero(center.lng) / step + 1e-9)
    return f"tile:{step}:{round(lat_cell * step, 6)},{round(lng_cell * step, 6)}"
