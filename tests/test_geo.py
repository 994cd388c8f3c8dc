from __future__ import annotations

import math

import pytest

from nearby.core.contracts import Bounds, DiscoveryQuery, LatLng
from nearby.core.geo import (
    bounds_for_radius,
    compute_tile_key,
    haversine_m,
    normalize_bounds,
    normalize_radius,
    point_in_bounds,
    resolve_bounds,
    sanitize_coordinate,
)


def test_haversine_zero_and_one_degree():
    assert haversine_m(10.0, 20.0, 10.0, 20.0) == 0.0
    assert haversine_m(0.0, 0.0, 1.0, 0.0) == pytest.approx(111_195, rel=1e-3)


@pytest.mark.parametrize(
    "raw,expected",
    [
        (None, 2000),
        (float("nan"), 2000),
        (5, 100),
        (1e9, 100_000),
        (2500.4, 2500),
    ],
)
def test_normalize_radius_clamps(raw, expected):
    assert normalize_radius(raw) == expected


def test_sanitize_coordinate():
    assert sanitize_coordinate("12.5") == 12.5
    assert sanitize_coordinate(3) == 3.0
    assert sanitize_coordinate("north") is None
    assert sanitize_coordinate(True) is None
    assert sanitize_coordinate(math.inf) is None
    assert sanitize_coordinate(None) is None


def test_normalize_bounds_orders_corners():
    b = normalize_bounds(Bounds(sw=LatLng(lat=2.0, lng=5.0), ne=LatLng(lat=1.0, lng=4.0)))
    assert (b.sw.lat, b.sw.lng, b.ne.lat, b.ne.lng) == (1.0, 4.0, 2.0, 5.0)


def test_bounds_for_radius_at_equator():
    b = bounds_for_radius(0.0, 0.0, 1113.2)
    assert b.sw.lat == pytest.approx(-0.01)
    assert b.ne.lat == pytest.approx(0.01)
    assert b.ne.lng == pytest.approx(0.01)


def test_resolve_bounds_prefers_explicit_bounds():
    explicit = Bounds(sw=LatLng(lat=1.0, lng=1.0), ne=LatLng(lat=2.0, lng=2.0))
    q = DiscoveryQuery(center=LatLng(lat=1.5, lng=1.5), radius_m=50_000, bounds=explicit)
    assert resolve_bounds(q) == explicit

    q2 = DiscoveryQuery(center=LatLng(lat=1.5, lng=1.5), radius_m=1000)
    b = resolve_bounds(q2)
    assert point_in_bounds(1.5, 1.5, b)
    assert not point_in_bounds(1.6, 1.5, b)


def test_tile_key_groups_nearby_centres():
    a = compute_tile_key(LatLng(lat=1.001, lng=1.001))
    b = compute_tile_key(LatLng(lat=1.019, lng=1.019))
    c = compute_tile_key(LatLng(lat=1.021, lng=1.001))
    assert a == b
    assert a != c


def test_tile_key_negative_coordinates_floor_down():
    assert compute_tile_key(LatLng(lat=-0.001, lng=0.0)) != compute_tile_key(LatLng(lat=0.001, lng=0.0))
